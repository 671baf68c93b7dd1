from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable

from tradevault.domain.models import (
    InventoryItem,
    ItemState,
    LedgerItem,
    OfferSpec,
    OfferState,
    RequestState,
    TradeKind,
    TradeRequest,
)
from tradevault.ports.custodian import ESCROW_UNKNOWN
from tradevault.ports.work_queue import NotifierPort, WorkQueuePort
from tradevault.trader.book import TradeBook
from tradevault.trader.loop import DeskLoop, alert
from tradevault.trader.session import INTAKE, SessionGate
from tradevault.trader.settings import DeskSettings
from tradevault.trading.allocation import allocate
from tradevault.trading.custodian_pool import Custodian, CustodianPool
from tradevault.utils import database as db
from tradevault.utils.retry import call_with_retry

logger = logging.getLogger(__name__)


def offer_message(prefix: str, kind: str, token: str) -> str:
    return f"{prefix} {kind} | {token}"


class IntakeLoop(DeskLoop):
    """
    Pull pending requests from the work queue and turn each into a sent offer
    (or a decline). Sent requests are handed to reconciliation through the book.
    """

    name = INTAKE

    def __init__(
        self,
        pool: CustodianPool,
        book: TradeBook,
        queue: WorkQueuePort,
        notifier: NotifierPort,
        gate: SessionGate,
        settings: DeskSettings,
        clock: Callable[[], float] = time.time,
        on_exit=None,
    ):
        super().__init__(gate, settings.intake_interval_seconds, on_exit=on_exit)
        self.pool = pool
        self.book = book
        self.queue = queue
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    def run_cycle(self) -> None:
        fresh, processed = self._collect()
        for request in fresh:
            try:
                self.process(request)
            except Exception as e:
                logger.exception("Request %s failed during intake", request.request_id)
                self.book.release(request.request_id)
                db.log_event("ERROR", f"intake failed: {type(e).__name__}: {e}", subject=request.request_id, step="intake")
                continue
            if request.state != RequestState.PENDING:
                processed.append(request)

        if processed:
            call_with_retry(self.queue.push_status, processed, attempts=1, what="queue.push_status")

        coordinator = self.pool.coordinator
        self.pool.call(coordinator, "confirm_pending_offers", attempts=1)

    def _collect(self) -> tuple[list[TradeRequest], list[TradeRequest]]:
        """
        Split the queue listing into requests to work on and already settled ones
        whose final status the queue has not taken yet. Parked withdraws keep their
        in-memory state.
        """
        fetched = call_with_retry(self.queue.fetch_pending, attempts=1, what="queue.fetch_pending")
        if fetched is None:
            return [], []

        fresh: list[TradeRequest] = []
        settled: list[TradeRequest] = []
        seen: set[str] = set()
        for request in fetched:
            rid = request.request_id
            if rid in seen or self.book.knows(rid):
                continue
            seen.add(rid)
            done = self.book.settled(rid)
            if done is not None:
                logger.info("%s %s already %s; status pushed again", done.kind.value, rid, done.state.value)
                settled.append(done)
                continue
            fresh.append(self.book.unpark(rid) or request)

        # Parked withdraws the queue no longer lists were withdrawn upstream.
        for stale in self.book.pending():
            if stale.request_id not in seen:
                self.book.drop_pending(stale.request_id)
                logger.info("Withdraw %s no longer queued upstream; dropped", stale.request_id)
        return fresh, settled

    def process(self, request: TradeRequest) -> None:
        db.update_live_status(request.request_id, f"{request.kind.value} intake")
        if not request.escrow_checked and not self._check_escrow(request):
            return
        if request.kind == TradeKind.DEPOSIT:
            self._deposit(request)
        else:
            self._withdraw(request)

    def _check_escrow(self, request: TradeRequest) -> bool:
        coordinator = self.pool.coordinator
        days = self.pool.call(
            coordinator, "get_escrow_days", request.counterparty_id, request.token, attempts=1
        )
        if days is None:
            logger.warning("Escrow lookup failed for %s; left pending", request.request_id)
            return False
        if int(days) == ESCROW_UNKNOWN:
            self._decline(request, "escrow could not be determined")
            return False
        if int(days) != 0:
            self._decline(request, f"counterparty has a {days} day trade hold")
            return False
        request.escrow_checked = True
        return True

    def _decline(self, request: TradeRequest, reason: str) -> None:
        request.state = RequestState.DECLINED
        self.book.drop_pending(request.request_id)
        self.book.release(request.request_id)
        self.book.settle(request)
        logger.info("%s %s declined: %s", request.kind.value, request.request_id, reason)
        db.log_event("INFO", f"declined: {reason}", subject=request.request_id, step=request.kind.value)

    def _mark_sent(self, request: TradeRequest, offer_id: str) -> None:
        request.offer_id = str(offer_id)
        request.state = RequestState.SENT
        request.sent_at = self.clock()
        self.book.enqueue(request)
        logger.info("%s %s sent as offer %s", request.kind.value, request.request_id, offer_id)
        db.log_event("INFO", f"offer {offer_id} sent", subject=request.request_id, step=request.kind.value)

    # ----- deposit -----

    def _deposit(self, request: TradeRequest) -> None:
        if not request.requested:
            self._decline(request, "no items listed")
            return
        coordinator = self.pool.coordinator
        spec = OfferSpec(
            partner_id=request.counterparty_id,
            token=request.token,
            message=offer_message(self.settings.offer_message_prefix, "DEPOSIT", request.security_token),
            receive=tuple(request.requested),
        )
        offer_id = self.pool.call(coordinator, "send_offer", spec)
        if not offer_id:
            self._decline(request, "offer could not be sent")
            return
        self._mark_sent(request, offer_id)

    # ----- withdraw -----

    def _withdraw(self, request: TradeRequest) -> None:
        type_ids = [i.type_id for i in request.requested]
        if not type_ids:
            self._decline(request, "no items listed")
            return

        # Rebalance transfers move coordinator rows; a withdraw waits for them and
        # rebalancing yields to it afterwards.
        if self.book.storage_busy():
            logger.info("Withdraw %s waits for a storage transfer", request.request_id)
            self.book.park(request, waiting_for_storage=True)
            return

        reserved = self.book.reserved_ids(exclude=request.request_id)
        candidates = [
            row
            for row in db.find_items("type_id", sorted(set(type_ids)), states=[ItemState.ACTIVE])
            if row.id not in reserved
        ]
        picked = allocate(candidates, type_ids, db.used_handles())
        if len(picked) < len(type_ids):
            logger.info(
                "Withdraw %s short: %s/%s items available; left pending",
                request.request_id,
                len(picked),
                len(type_ids),
            )
            self.book.park(request)
            return

        if not self.book.reserve(request.request_id, [row.id for row in picked]):
            logger.info("Withdraw %s waits for a storage transfer", request.request_id)
            self.book.park(request, waiting_for_storage=True)
            return

        try:
            self._send_withdraw(request, picked)
        finally:
            self.book.release(request.request_id)

    def _send_withdraw(self, request: TradeRequest, picked: list[LedgerItem]) -> None:
        coordinator = self.pool.coordinator
        rows_by_id = {row.id: row for row in picked}

        groups: dict[str, list[LedgerItem]] = {}
        for row in picked:
            if row.custodian_id != coordinator.id:
                groups.setdefault(row.custodian_id, []).append(row)

        for custodian_id, rows in groups.items():
            source = self.pool.get(custodian_id)
            if source is None:
                self._decline(request, f"items held by unknown custodian {custodian_id}")
                return
            landed = self._consolidate(request, source, rows)
            if landed is None:
                self._decline(request, f"could not move items from {source.name}")
                return
            for row in landed:
                rows_by_id[row.id] = row

        final_rows = [rows_by_id[row.id] for row in picked]
        handles = self.pool.locate_items(coordinator, final_rows)
        if handles is None:
            self._decline(request, "items not found in coordinator inventory")
            return

        give = tuple(InventoryItem(asset_handle=h, type_id=row.type_id) for h, row in zip(handles, final_rows))
        spec = OfferSpec(
            partner_id=request.counterparty_id,
            token=request.token,
            message=offer_message(self.settings.offer_message_prefix, "WITHDRAW", request.security_token),
            give=give,
        )
        offer_id = self.pool.call(coordinator, "send_offer", spec)
        if not offer_id:
            self._decline(request, "offer could not be sent")
            return

        if not db.commit_transfer([row.id for row in final_rows], handles, ItemState.SENT):
            self.pool.call(coordinator, "cancel_offer", offer_id)
            self._decline(request, "ledger rejected the withdraw")
            return

        request.items = [
            replace(row, asset_handle=h, state=ItemState.SENT) for h, row in zip(handles, final_rows)
        ]
        self._mark_sent(request, offer_id)

    def _consolidate(self, request: TradeRequest, source: Custodian, rows: list[LedgerItem]) -> list[LedgerItem] | None:
        """
        Move `rows` from a storage custodian to the coordinator. Returns the rows as they
        now stand (coordinator, fresh handle, Active), or None if the move failed.
        """
        coordinator = self.pool.coordinator
        ids = [row.id for row in rows]

        handles = self.pool.locate_items(source, rows)
        if handles is None:
            return None

        spec = OfferSpec(
            partner_id=coordinator.id,
            token=coordinator.trade_token,
            message=offer_message(self.settings.offer_message_prefix, "STORAGE", request.request_id),
            give=tuple(InventoryItem(asset_handle=h, type_id=row.type_id) for h, row in zip(handles, rows)),
        )
        offer_id = self.pool.call(source, "send_offer", spec)
        if not offer_id:
            return None

        if not db.commit_transfer(ids, handles, ItemState.ON_HOLD):
            self.pool.call(source, "cancel_offer", offer_id)
            return None
        held = [replace(row, asset_handle=h, state=ItemState.ON_HOLD) for h, row in zip(handles, rows)]

        self.pool.call(source, "confirm_pending_offers", attempts=1)
        self.pool.call(coordinator, "accept_offer", offer_id)

        arrived = call_with_retry(
            self.pool.locate_items,
            coordinator,
            held,
            attempts=self.settings.send_attempts,
            delay_seconds=self.settings.send_retry_delay_seconds,
            what=f"arrival of {source.name} offer {offer_id}",
        )
        if arrived is None:
            self._abandon_consolidation(source, str(offer_id), held)
            return None

        if not db.update_item_custodians(ids, coordinator.id, arrived, state=ItemState.ACTIVE):
            self._notify(f"Offer {offer_id} from {source.name} landed but ledger rows {ids} were not updated")
            return None

        logger.info("Moved %s item(s) from %s to coordinator (offer %s)", len(ids), source.name, offer_id)
        return [
            replace(row, custodian_id=coordinator.id, asset_handle=h, state=ItemState.ACTIVE)
            for h, row in zip(arrived, held)
        ]

    def _abandon_consolidation(self, source: Custodian, offer_id: str, held: list[LedgerItem]) -> None:
        ids = [row.id for row in held]
        snapshot = self.pool.call(source, "get_offer", offer_id, attempts=1)
        if snapshot is not None and snapshot.state == OfferState.ACCEPTED:
            self._notify(
                f"Offer {offer_id} from {source.name} was accepted but the items are not visible yet; "
                f"rows {ids} left OnHold for manual review"
            )
            return
        self.pool.call(source, "cancel_offer", offer_id, attempts=1)
        if db.update_item_states(ids, ItemState.ACTIVE):
            self._notify(
                f"Offer {offer_id} from {source.name} did not complete; rows {ids} returned to Active "
                f"but their handles are used and they will not be allocated again"
            )
        else:
            self._notify(f"Offer {offer_id} from {source.name} did not complete and rows {ids} could not be released")

    def _notify(self, text: str) -> None:
        alert(self.notifier, text, step=self.name)
