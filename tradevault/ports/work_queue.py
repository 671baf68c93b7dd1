from __future__ import annotations

from typing import Protocol, Sequence

from tradevault.domain.models import TradeRequest


class WorkQueuePort(Protocol):
    def fetch_pending(self) -> list[TradeRequest]: ...

    def push_status(self, requests: Sequence[TradeRequest]) -> bool: ...


class NotifierPort(Protocol):
    def post_message(self, text: str) -> None: ...
