from __future__ import annotations

import json
import logging
from typing import Any, Sequence

import requests

from tradevault.domain.models import InventoryItem, TradeKind, TradeRequest

logger = logging.getLogger(__name__)


def parse_item_ref(raw: str) -> InventoryItem | None:
    """`"<asset handle>;<type id>"` -> InventoryItem; None when malformed."""
    parts = str(raw or "").split(";")
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        return None
    return InventoryItem(asset_handle=parts[0].strip(), type_id=parts[1].strip())


def parse_request(entry: dict[str, Any], kind: TradeKind) -> TradeRequest | None:
    request_id = str(entry.get("QueId") or "").strip()
    counterparty = str(entry.get("SteamId") or "").strip()
    if not request_id or not counterparty:
        logger.warning("Skipping %s entry without QueId/SteamId: %s", kind.value, entry)
        return None

    requested: list[InventoryItem] = []
    for raw in entry.get("item_Ids") or []:
        item = parse_item_ref(raw)
        if item is None:
            logger.warning("Request %s: malformed item reference %r skipped", request_id, raw)
            continue
        requested.append(item)

    return TradeRequest(
        request_id=request_id,
        counterparty_id=counterparty,
        token=str(entry.get("RU_Token") or ""),
        security_token=str(entry.get("SecurityToken") or ""),
        kind=kind,
        requested=requested,
    )


def parse_pending(doc: dict[str, Any]) -> list[TradeRequest]:
    out: list[TradeRequest] = []
    for key, kind in (("Deposits", TradeKind.DEPOSIT), ("withdrawal", TradeKind.WITHDRAW)):
        for entry in doc.get(key) or []:
            if not isinstance(entry, dict):
                continue
            request = parse_request(entry, kind)
            if request is not None:
                out.append(request)
    return out


def status_payload(requests_: Sequence[TradeRequest]) -> str:
    trades = [
        {
            "Id": r.request_id,
            "SteamId": r.counterparty_id,
            "Status": str(r.status.code),
            "Tradelink": r.offer_id or "",
        }
        for r in requests_
    ]
    return json.dumps({"Trades": trades})


class WebsiteWorkQueue:
    """The site's trade queue: pending requests in, status callbacks out."""

    def __init__(self, fetch_url: str, callback_url: str, timeout: float = 20.0):
        self.fetch_url = fetch_url
        self.callback_url = callback_url
        self.timeout = float(timeout)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "tradevault/1.0"})

    def fetch_pending(self) -> list[TradeRequest]:
        resp = self.session.get(self.fetch_url, timeout=self.timeout)
        resp.raise_for_status()
        if not resp.text.strip():
            return []
        doc = resp.json()
        if not isinstance(doc, dict):
            raise ValueError(f"Unexpected queue payload: {type(doc).__name__}")
        return parse_pending(doc)

    def push_status(self, requests_: Sequence[TradeRequest]) -> bool:
        if not requests_:
            return True
        try:
            resp = self.session.post(
                self.callback_url,
                data={"action": "invtradecallback", "Status": status_payload(requests_)},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Status callback for %s request(s) failed: %s", len(requests_), e)
            return False
        return bool(resp.text.strip())
