from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass

from tradevault.domain.models import RequestState, StorageTransfer, TradeKind, TradeRequest

# How many settled requests the book remembers.
SETTLED_MEMORY = 10_000


@dataclass(frozen=True)
class BookCounts:
    deposits_active: int
    deposits_queued: int
    withdraws_active: int
    withdraws_queued: int
    withdraws_pending: int
    transfers: int


class TradeBook:
    """
    Shared request lists, guarded by one lock.

    - `queued`: requests with a sent offer, produced by intake only.
    - `active`: requests under reconciliation; reconciliation drains `queued` into it.
    - `pending`: withdraws parked by intake until the ledger can cover them.
    - `transfers`: storage rebalance offers owned by reconciliation.
    - `reserved`: ledger row ids promised to a withdraw that has not been sent yet.
    - `waiting`: parked withdraws that could be covered once storage transfers finish.
    - `settled`: requests that reached Accepted or Declined, most recent last.
    """

    def __init__(self, settled_memory: int = SETTLED_MEMORY):
        self._lock = threading.Lock()
        self._queued: list[TradeRequest] = []
        self._active: list[TradeRequest] = []
        self._pending: dict[str, TradeRequest] = {}
        self._transfers: list[StorageTransfer] = []
        self._reserved: dict[str, set[int]] = {}
        self._waiting: set[str] = set()
        self._settled: OrderedDict[str, TradeRequest] = OrderedDict()
        self._settled_memory = settled_memory
        self._rebalancing = False

    # ----- intake side -----

    def enqueue(self, request: TradeRequest) -> None:
        with self._lock:
            self._pending.pop(request.request_id, None)
            self._waiting.discard(request.request_id)
            self._queued.append(request)

    def park(self, request: TradeRequest, waiting_for_storage: bool = False) -> None:
        """Hold a withdraw for a later cycle; `waiting_for_storage` makes rebalancing yield to it."""
        with self._lock:
            self._pending[request.request_id] = request
            if waiting_for_storage:
                self._waiting.add(request.request_id)
            else:
                self._waiting.discard(request.request_id)

    def unpark(self, request_id: str) -> TradeRequest | None:
        with self._lock:
            return self._pending.pop(request_id, None)

    def drop_pending(self, request_id: str) -> TradeRequest | None:
        with self._lock:
            self._waiting.discard(request_id)
            return self._pending.pop(request_id, None)

    def pending(self) -> list[TradeRequest]:
        with self._lock:
            return list(self._pending.values())

    def knows(self, request_id: str) -> bool:
        """True when the request is queued or under reconciliation (already has an offer)."""
        with self._lock:
            return any(r.request_id == request_id for r in self._queued) or any(
                r.request_id == request_id for r in self._active
            )

    def settle(self, request: TradeRequest) -> None:
        """Remember a request that reached a terminal state."""
        with self._lock:
            self._waiting.discard(request.request_id)
            self._settled[request.request_id] = request
            self._settled.move_to_end(request.request_id)
            while len(self._settled) > self._settled_memory:
                self._settled.popitem(last=False)

    def settled(self, request_id: str) -> TradeRequest | None:
        with self._lock:
            return self._settled.get(request_id)

    def reserve(self, request_id: str, item_ids: list[int]) -> bool:
        """Claim rows for a withdraw; refused while a storage rebalance is outstanding."""
        with self._lock:
            if self._rebalancing or self._transfers:
                return False
            self._reserved[request_id] = set(item_ids)
            self._waiting.discard(request_id)
            return True

    def release(self, request_id: str) -> None:
        with self._lock:
            self._reserved.pop(request_id, None)
            self._waiting.discard(request_id)

    def reserved_ids(self, exclude: str | None = None) -> set[int]:
        with self._lock:
            out: set[int] = set()
            for rid, ids in self._reserved.items():
                if rid != exclude:
                    out |= ids
            return out

    # ----- reconciliation side -----

    def drain_queue(self) -> list[TradeRequest]:
        """Move everything queued into the active list; returns the active list snapshot."""
        with self._lock:
            self._active.extend(self._queued)
            self._queued.clear()
            return list(self._active)

    def active(self) -> list[TradeRequest]:
        with self._lock:
            return list(self._active)

    def retire(self, request: TradeRequest) -> None:
        with self._lock:
            self._active = [r for r in self._active if r is not request]
            self._reserved.pop(request.request_id, None)
        if request.state in (RequestState.ACCEPTED, RequestState.DECLINED):
            self.settle(request)

    def begin_rebalance(self) -> bool:
        """
        Claim the rebalance slot. Refused while a transfer is open, while a withdraw
        holds reserved rows, or while a parked withdraw waits for storage to settle.
        """
        with self._lock:
            if self._rebalancing or self._transfers or self._reserved or self._waiting:
                return False
            self._rebalancing = True
            return True

    def end_rebalance(self) -> None:
        with self._lock:
            self._rebalancing = False

    def add_transfer(self, transfer: StorageTransfer) -> None:
        with self._lock:
            self._transfers.append(transfer)

    def remove_transfer(self, transfer: StorageTransfer) -> None:
        with self._lock:
            self._transfers = [t for t in self._transfers if t is not transfer]

    def transfers(self) -> list[StorageTransfer]:
        with self._lock:
            return list(self._transfers)

    # ----- control side -----

    def remove_by_request_id(self, request_id: str) -> TradeRequest | None:
        """Drop a request from every list; returns what was removed."""
        with self._lock:
            found = None
            for lst in (self._queued, self._active):
                for r in list(lst):
                    if r.request_id == request_id:
                        lst.remove(r)
                        found = found or r
            parked = self._pending.pop(request_id, None)
            self._reserved.pop(request_id, None)
            self._waiting.discard(request_id)
            return found or parked

    def clear(self) -> list[TradeRequest]:
        """Empty the queued and active lists; returns the dropped requests."""
        with self._lock:
            dropped = self._queued + self._active
            for r in dropped:
                self._reserved.pop(r.request_id, None)
            self._queued = []
            self._active = []
            return dropped

    def storage_busy(self) -> bool:
        """A rebalance is being started or a transfer is still in flight."""
        with self._lock:
            return self._rebalancing or bool(self._transfers)

    def counts(self) -> BookCounts:
        with self._lock:
            def n(lst, kind):
                return sum(1 for r in lst if r.kind == kind)

            return BookCounts(
                deposits_active=n(self._active, TradeKind.DEPOSIT),
                deposits_queued=n(self._queued, TradeKind.DEPOSIT),
                withdraws_active=n(self._active, TradeKind.WITHDRAW),
                withdraws_queued=n(self._queued, TradeKind.WITHDRAW),
                withdraws_pending=len(self._pending),
                transfers=len(self._transfers),
            )

    def snapshot(self) -> dict[str, list[dict]]:
        with self._lock:
            return {
                "queued": [r.to_dict() for r in self._queued],
                "active": [r.to_dict() for r in self._active],
                "pending": [r.to_dict() for r in self._pending.values()],
                "transfers": [t.to_dict() for t in self._transfers],
            }
