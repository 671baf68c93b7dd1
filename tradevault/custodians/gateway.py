"""
HTTP client for a per-bot trading gateway.

Each custodian identity runs behind a small gateway process that owns the platform
session (login, two-factor, trade confirmations). This client is the synchronous
face of that session used by the desk.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

import requests

from tradevault.domain.models import ConnectionState, InventoryItem, OfferSnapshot, OfferSpec, OfferState
from tradevault.ports.custodian import ESCROW_UNKNOWN

logger = logging.getLogger(__name__)

_RE_THEIR_ESCROW = re.compile(r"g_daysTheirEscrow(?:[\s=]+)(?P<days>\d+);", re.IGNORECASE)

# 64-bit account ids are offset from the 32-bit partner id used in trade URLs.
_ACCOUNT_ID_BASE = 76561197960265728


def parse_escrow_days(page: str | None) -> int:
    """Counterparty hold days from the new-offer page; ESCROW_UNKNOWN when absent."""
    if not page or not page.strip():
        return ESCROW_UNKNOWN
    m = _RE_THEIR_ESCROW.search(page)
    if not m:
        return ESCROW_UNKNOWN
    return int(m.group("days"))


def partner_account_id(partner_id: str) -> str:
    s = str(partner_id).strip()
    if s.isdigit() and int(s) > _ACCOUNT_ID_BASE:
        return str(int(s) - _ACCOUNT_ID_BASE)
    return s


def _parse_state(value) -> OfferState:
    try:
        return OfferState(str(value))
    except ValueError:
        return OfferState.UNKNOWN


def _parse_timestamp(value) -> float:
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class GatewayCustodian:
    def __init__(self, name: str, base_url: str, api_key: str = "", timeout: float = 20.0):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "tradevault/1.0"})
        if api_key:
            self.session.headers.update({"X-Api-Key": api_key})
        self._state = ConnectionState.UNKNOWN

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _get(self, path: str, **params):
        resp = self.session.get(self._url(path), params=params or None, timeout=self.timeout)
        resp.raise_for_status()
        return resp

    def _post(self, path: str, body: dict | None = None):
        resp = self.session.post(self._url(path), json=body or {}, timeout=self.timeout)
        resp.raise_for_status()
        return resp

    # ----- session -----

    def _session_call(self, path: str, post: bool = True) -> ConnectionState:
        try:
            resp = self._post(path) if post else self._get(path)
            state = ConnectionState(str(resp.json().get("state") or ConnectionState.UNKNOWN.value))
        except (requests.RequestException, ValueError) as e:
            logger.warning("%s: %s failed: %s", self.name, path, e)
            state = ConnectionState.ERROR
        self._state = state
        return state

    def connect(self) -> ConnectionState:
        return self._session_call("/session/connect")

    def reconnect(self) -> ConnectionState:
        return self._session_call("/session/reconnect")

    def disconnect(self) -> ConnectionState:
        return self._session_call("/session/disconnect")

    def connection_state(self) -> ConnectionState:
        return self._session_call("/session", post=False)

    # ----- offers -----

    def send_offer(self, spec: OfferSpec) -> str | None:
        body = spec.to_dict()
        body["partner_account_id"] = partner_account_id(spec.partner_id)
        data = self._post("/offers", body).json()
        offer_id = data.get("offer_id")
        return str(offer_id) if offer_id else None

    def get_offer(self, offer_id: str) -> OfferSnapshot | None:
        data = self._get(f"/offers/{offer_id}").json()
        if not data:
            return None
        return OfferSnapshot(
            offer_id=str(data.get("offer_id") or offer_id),
            state=_parse_state(data.get("state")),
            created_at=_parse_timestamp(data.get("created_at")),
        )

    def _offer_action(self, offer_id: str, action: str) -> bool:
        data = self._post(f"/offers/{offer_id}/{action}").json()
        return bool(data.get("ok"))

    def cancel_offer(self, offer_id: str) -> bool:
        return self._offer_action(offer_id, "cancel")

    def decline_offer(self, offer_id: str) -> bool:
        return self._offer_action(offer_id, "decline")

    def accept_offer(self, offer_id: str) -> bool:
        return self._offer_action(offer_id, "accept")

    # ----- inventory / misc -----

    def get_inventory(self) -> list[InventoryItem]:
        data = self._get("/inventory").json()
        items = []
        for row in data.get("items") or []:
            handle = row.get("asset_handle") or row.get("assetid")
            type_id = row.get("type_id") or row.get("classid")
            if handle is None or type_id is None:
                continue
            items.append(InventoryItem(asset_handle=str(handle), type_id=str(type_id)))
        return items

    def confirm_pending_offers(self) -> int:
        data = self._post("/confirmations").json()
        return int(data.get("confirmed") or 0)

    def get_escrow_days(self, partner_id: str, token: str) -> int:
        resp = self._get("/escrow", partner=partner_account_id(partner_id), token=token)
        return parse_escrow_days(resp.text)

    def get_auth_code(self) -> str:
        data = self._get("/auth-code").json()
        return str(data.get("code") or "")
