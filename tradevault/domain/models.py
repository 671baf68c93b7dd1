from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping


class ItemState(str, Enum):
    ACTIVE = "Active"
    ON_HOLD = "OnHold"
    SENT = "Sent"
    ACCEPTED = "Accepted"


# Accepted is terminal: it never appears as a source state.
ALLOWED_TRANSITIONS: dict[ItemState, frozenset[ItemState]] = {
    ItemState.ACTIVE: frozenset({ItemState.SENT, ItemState.ON_HOLD}),
    ItemState.ON_HOLD: frozenset({ItemState.ACTIVE, ItemState.ACCEPTED}),
    ItemState.SENT: frozenset({ItemState.ACTIVE, ItemState.ACCEPTED}),
    ItemState.ACCEPTED: frozenset(),
}


class LedgerError(Exception):
    """Raised inside a ledger transaction to abort and roll back the whole batch."""


def can_transition(current: ItemState | str, new: ItemState | str) -> bool:
    return ItemState(new) in ALLOWED_TRANSITIONS[ItemState(current)]


def validate_transitions(current: Mapping[int, str], ids: Iterable[int], new_state: ItemState | str) -> None:
    """
    Check that every row in `ids` exists and may move to `new_state`.

    `current` maps row id -> stored state as read inside the same transaction.
    """
    for row_id in ids:
        if row_id not in current:
            raise LedgerError(f"item {row_id} not found")
        if not can_transition(current[row_id], new_state):
            raise LedgerError(f"item {row_id}: illegal transition {current[row_id]} -> {ItemState(new_state).value}")


class TradeKind(str, Enum):
    DEPOSIT = "Deposit"
    WITHDRAW = "Withdraw"


class RequestState(str, Enum):
    PENDING = "Pending"
    DECLINED = "Declined"
    SENT = "Sent"
    ACCEPTED = "Accepted"


class OfferState(str, Enum):
    NEEDS_CONFIRMATION = "NeedsConfirmation"
    ACTIVE = "Active"
    ACCEPTED = "Accepted"
    DECLINED = "Declined"
    COUNTERED = "Countered"
    CANCELED = "Canceled"
    EXPIRED = "Expired"
    INVALID_ITEMS = "InvalidItems"
    UNKNOWN = "Unknown"


FAILED_OFFER_STATES = frozenset(
    {
        OfferState.DECLINED,
        OfferState.COUNTERED,
        OfferState.CANCELED,
        OfferState.EXPIRED,
        OfferState.INVALID_ITEMS,
    }
)


class ConnectionState(str, Enum):
    UNKNOWN = "Unknown"
    ERROR = "Error"
    DISCONNECTED = "Disconnected"
    CONNECTED = "Connected"


class SessionState(str, Enum):
    ACTIVE = "Active"
    PAUSED = "Paused"
    LOCKED = "Locked"


class CustodianRole(str, Enum):
    COORDINATOR = "coordinator"
    STORAGE = "storage"


_STATUS_CODES: dict[tuple[TradeKind, RequestState], int] = {
    (TradeKind.DEPOSIT, RequestState.PENDING): 1,
    (TradeKind.DEPOSIT, RequestState.DECLINED): 2,
    (TradeKind.DEPOSIT, RequestState.SENT): 3,
    (TradeKind.DEPOSIT, RequestState.ACCEPTED): 4,
    (TradeKind.WITHDRAW, RequestState.PENDING): 6,
    (TradeKind.WITHDRAW, RequestState.DECLINED): 7,
    (TradeKind.WITHDRAW, RequestState.SENT): 8,
    (TradeKind.WITHDRAW, RequestState.ACCEPTED): 9,
}
_STATUS_BY_CODE = {code: key for key, code in _STATUS_CODES.items()}


@dataclass(frozen=True)
class RequestStatus:
    """Request status as a (kind, state) pair; integer codes exist only on the wire."""

    kind: TradeKind
    state: RequestState

    @property
    def code(self) -> int:
        return _STATUS_CODES[(self.kind, self.state)]

    @classmethod
    def from_code(cls, code: int) -> "RequestStatus":
        try:
            kind, state = _STATUS_BY_CODE[int(code)]
        except KeyError:
            raise ValueError(f"unknown status code: {code}") from None
        return cls(kind=kind, state=state)

    def __str__(self) -> str:
        return f"{self.kind.value}({self.state.value})"


@dataclass(frozen=True)
class LedgerItem:
    id: int
    custodian_id: str
    asset_handle: str
    type_id: str
    state: ItemState
    owner_id: str | None = None
    request_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": int(self.id),
            "custodian_id": self.custodian_id,
            "asset_handle": self.asset_handle,
            "type_id": self.type_id,
            "state": self.state.value,
            "owner_id": self.owner_id,
            "request_id": self.request_id,
        }


@dataclass(frozen=True)
class NewItem:
    custodian_id: str
    asset_handle: str
    type_id: str
    owner_id: str | None = None
    request_id: str | None = None
    state: ItemState = ItemState.ACTIVE


@dataclass(frozen=True)
class InventoryItem:
    asset_handle: str
    type_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"asset_handle": self.asset_handle, "type_id": self.type_id}


@dataclass(frozen=True)
class OfferSpec:
    partner_id: str
    token: str
    message: str
    give: tuple[InventoryItem, ...] = ()
    receive: tuple[InventoryItem, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "partner_id": self.partner_id,
            "token": self.token,
            "message": self.message,
            "give": [i.to_dict() for i in self.give],
            "receive": [i.to_dict() for i in self.receive],
        }


@dataclass(frozen=True)
class OfferSnapshot:
    offer_id: str
    state: OfferState
    created_at: float


@dataclass
class TradeRequest:
    request_id: str
    counterparty_id: str
    token: str
    security_token: str
    kind: TradeKind
    requested: list[InventoryItem] = field(default_factory=list)
    items: list[LedgerItem] = field(default_factory=list)
    state: RequestState = RequestState.PENDING
    offer_id: str | None = None
    error_count: int = 0
    escrow_checked: bool = False
    sent_at: float | None = None

    @property
    def status(self) -> RequestStatus:
        return RequestStatus(kind=self.kind, state=self.state)

    @property
    def item_ids(self) -> list[int]:
        return [i.id for i in self.items]

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "counterparty_id": self.counterparty_id,
            "kind": self.kind.value,
            "state": self.state.value,
            "status_code": self.status.code,
            "offer_id": self.offer_id,
            "error_count": int(self.error_count),
            "requested": [i.to_dict() for i in self.requested],
            "items": [i.to_dict() for i in self.items],
            "sent_at": self.sent_at,
        }


@dataclass
class StorageTransfer:
    offer_id: str
    source_id: str
    destination_id: str
    items: list[LedgerItem]
    sent_at: float
    error_count: int = 0

    @property
    def item_ids(self) -> list[int]:
        return [i.id for i in self.items]

    def to_dict(self) -> dict[str, Any]:
        return {
            "offer_id": self.offer_id,
            "source_id": self.source_id,
            "destination_id": self.destination_id,
            "item_ids": self.item_ids,
            "sent_at": self.sent_at,
            "error_count": int(self.error_count),
        }
