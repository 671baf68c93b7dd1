from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from tradevault.domain.models import ConnectionState, CustodianRole, InventoryItem, ItemState, LedgerItem
from tradevault.ports.custodian import CustodianPort
from tradevault.trading.allocation import resolve_handles
from tradevault.utils import database as db
from tradevault.utils.retry import call_with_retry

logger = logging.getLogger(__name__)


class StartupError(RuntimeError):
    """The desk cannot start with the configured custodians."""


@dataclass(frozen=True)
class Custodian:
    name: str
    id: str
    role: CustodianRole
    trade_token: str
    client: CustodianPort

    @property
    def is_coordinator(self) -> bool:
        return self.role == CustodianRole.COORDINATOR


class CustodianPool:
    """
    One coordinator plus any number of storage custodians.

    The coordinator faces end users; storage custodians only ever trade with it.
    """

    def __init__(self, custodians: Sequence[Custodian], attempts: int = 3, delay_seconds: float = 3.0):
        coordinators = [c for c in custodians if c.is_coordinator]
        if not coordinators:
            raise StartupError("No coordinator custodian configured")
        if len(coordinators) > 1:
            raise StartupError(f"Exactly one coordinator allowed; got {', '.join(c.name for c in coordinators)}")
        self._custodians = list(custodians)
        self._by_id = {c.id: c for c in custodians}
        self.coordinator = coordinators[0]
        self.attempts = int(attempts)
        self.delay_seconds = float(delay_seconds)

    def __iter__(self):
        return iter(self._custodians)

    def __len__(self) -> int:
        return len(self._custodians)

    def storage(self) -> list[Custodian]:
        return [c for c in self._custodians if not c.is_coordinator]

    def get(self, custodian_id: str) -> Custodian | None:
        return self._by_id.get(str(custodian_id))

    def call(self, custodian: Custodian, op: str, *args, attempts: int | None = None):
        """Invoke `op` on the custodian's client through the shared retry policy."""
        func: Callable = getattr(custodian.client, op)
        return call_with_retry(
            func,
            *args,
            attempts=self.attempts if attempts is None else attempts,
            delay_seconds=self.delay_seconds,
            what=f"{custodian.name}.{op}",
        )

    def connect_all(self) -> dict[str, ConnectionState]:
        return self._each("connect")

    def reconnect_all(self) -> dict[str, ConnectionState]:
        return self._each("reconnect")

    def disconnect_all(self) -> dict[str, ConnectionState]:
        return self._each("disconnect")

    def states(self) -> dict[str, ConnectionState]:
        return self._each("connection_state")

    def _each(self, op: str) -> dict[str, ConnectionState]:
        out: dict[str, ConnectionState] = {}
        for c in self._custodians:
            try:
                out[c.name] = getattr(c.client, op)()
            except Exception as e:
                logger.warning("%s.%s failed: %s", c.name, op, e)
                out[c.name] = ConnectionState.ERROR
        return out

    def inventory(self, custodian: Custodian) -> list[InventoryItem] | None:
        # An empty inventory is a valid answer; only None means the call failed.
        return self.call(custodian, "get_inventory")

    def locate_items(self, custodian: Custodian, rows: Sequence[LedgerItem]) -> list[str] | None:
        """
        Resolve live handles for `rows` on `custodian`'s inventory.

        Handles already used, or owned by other open ledger rows at this custodian,
        are never claimed. Returns None when the inventory cannot be read or does
        not yet show every row.
        """
        if not rows:
            return []
        inventory = self.inventory(custodian)
        if inventory is None:
            return None
        blocked = self.blocked_handles(custodian, exclude_ids={r.id for r in rows})
        handles = resolve_handles(inventory, rows, blocked)
        if any(h is None for h in handles):
            logger.info(
                "%s inventory shows %s/%s wanted items",
                custodian.name,
                sum(1 for h in handles if h is not None),
                len(rows),
            )
            return None
        return [str(h) for h in handles]

    def blocked_handles(self, custodian: Custodian, exclude_ids: Iterable[int] = ()) -> set[str]:
        excluded = set(exclude_ids)
        blocked = db.used_handles()
        open_states = [ItemState.ACTIVE, ItemState.ON_HOLD, ItemState.SENT]
        for row in db.find_items("custodian_id", custodian.id, states=open_states):
            if row.id not in excluded:
                blocked.add(row.asset_handle)
        return blocked
