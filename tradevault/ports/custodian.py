from __future__ import annotations

from typing import Protocol

from tradevault.domain.models import ConnectionState, InventoryItem, OfferSnapshot, OfferSpec

# Returned by get_escrow_days when the hold period could not be determined.
ESCROW_UNKNOWN = 123


class CustodianPort(Protocol):
    def connect(self) -> ConnectionState: ...

    def reconnect(self) -> ConnectionState: ...

    def disconnect(self) -> ConnectionState: ...

    def connection_state(self) -> ConnectionState: ...

    def send_offer(self, spec: OfferSpec) -> str | None: ...

    def get_offer(self, offer_id: str) -> OfferSnapshot | None: ...

    def cancel_offer(self, offer_id: str) -> bool: ...

    def decline_offer(self, offer_id: str) -> bool: ...

    def accept_offer(self, offer_id: str) -> bool: ...

    def get_inventory(self) -> list[InventoryItem]: ...

    def confirm_pending_offers(self) -> int: ...

    def get_escrow_days(self, partner_id: str, token: str) -> int: ...

    def get_auth_code(self) -> str: ...
