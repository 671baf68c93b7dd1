import os
from dataclasses import dataclass
from types import SimpleNamespace

import pytest

# Unit tests should not require PostgreSQL (or psycopg2) unless explicitly requested.
os.environ.pop("TRADEVAULT_DATABASE_URL", None)
os.environ.pop("DATABASE_URL", None)

from tradevault.domain.models import (  # noqa: E402
    ConnectionState,
    CustodianRole,
    InventoryItem,
    OfferSnapshot,
    OfferSpec,
    OfferState,
    RequestState,
    TradeKind,
    TradeRequest,
)
from tradevault.trader.book import TradeBook  # noqa: E402
from tradevault.trader.intake import IntakeLoop  # noqa: E402
from tradevault.trader.reconcile import ReconciliationLoop  # noqa: E402
from tradevault.trader.session import SessionGate  # noqa: E402
from tradevault.trader.settings import CustodianConfig, DeskSettings  # noqa: E402
from tradevault.trading.custodian_pool import Custodian, CustodianPool  # noqa: E402
from tradevault.utils import database_sqlite  # noqa: E402

USER_ID = "76561198000000042"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


@dataclass
class FakeOffer:
    offer_id: str
    sender: "FakeCustodian"
    spec: OfferSpec
    created_at: float
    state: OfferState = OfferState.ACTIVE


class FakeNetwork:
    """
    In-memory trading platform shared by every fake custodian. Accepting an offer
    moves items between inventories and gives every moved item a fresh handle.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.offers: dict[str, FakeOffer] = {}
        self.by_id: dict[str, "FakeCustodian"] = {}
        self._offer_seq = 0
        self._handle_seq = 0

    def register(self, custodian_id: str, custodian: "FakeCustodian") -> None:
        self.by_id[custodian_id] = custodian

    def new_offer_id(self) -> str:
        self._offer_seq += 1
        return f"offer-{self._offer_seq}"

    def new_handle(self) -> str:
        self._handle_seq += 1
        return f"h{self._handle_seq}"

    def complete(self, offer_id: str) -> None:
        """The partner accepts: items change hands and are re-issued with fresh handles."""
        offer = self.offers[offer_id]
        sender = offer.sender
        give = {i.asset_handle for i in offer.spec.give}
        sender.inventory = [i for i in sender.inventory if i.asset_handle not in give]
        partner = self.by_id.get(offer.spec.partner_id)
        if partner is not None:
            partner.inventory += [InventoryItem(self.new_handle(), i.type_id) for i in offer.spec.give]
        sender.inventory += [InventoryItem(self.new_handle(), i.type_id) for i in offer.spec.receive]
        offer.state = OfferState.ACCEPTED

    def set_state(self, offer_id: str, state: OfferState) -> None:
        self.offers[offer_id].state = state


class FakeCustodian:
    def __init__(self, name: str, network: FakeNetwork, inventory=()):
        self.name = name
        self.network = network
        self.inventory: list[InventoryItem] = list(inventory)
        self.state = ConnectionState.DISCONNECTED
        self.escrow_days = 0
        self.accepts_incoming = True
        self.fail_sends = False
        self.fail_inventory = False
        self.sent: list[OfferSpec] = []
        self.canceled: list[str] = []
        self.declined: list[str] = []
        self.confirm_calls = 0
        self.auth_code = f"{name.upper()}-CODE"

    def connect(self) -> ConnectionState:
        self.state = ConnectionState.CONNECTED
        return self.state

    def reconnect(self) -> ConnectionState:
        self.state = ConnectionState.CONNECTED
        return self.state

    def disconnect(self) -> ConnectionState:
        self.state = ConnectionState.DISCONNECTED
        return self.state

    def connection_state(self) -> ConnectionState:
        return self.state

    def send_offer(self, spec: OfferSpec) -> str | None:
        if self.fail_sends:
            return None
        offer_id = self.network.new_offer_id()
        self.network.offers[offer_id] = FakeOffer(offer_id, self, spec, created_at=self.network.clock())
        self.sent.append(spec)
        return offer_id

    def get_offer(self, offer_id: str) -> OfferSnapshot | None:
        offer = self.network.offers.get(str(offer_id))
        if offer is None or offer.sender is not self:
            return None
        return OfferSnapshot(offer_id=offer.offer_id, state=offer.state, created_at=offer.created_at)

    def _close(self, offer_id: str, state: OfferState) -> bool:
        offer = self.network.offers.get(str(offer_id))
        if offer is None or offer.state not in (OfferState.ACTIVE, OfferState.NEEDS_CONFIRMATION, OfferState.COUNTERED):
            return False
        offer.state = state
        return True

    def cancel_offer(self, offer_id: str) -> bool:
        self.canceled.append(str(offer_id))
        return self._close(offer_id, OfferState.CANCELED)

    def decline_offer(self, offer_id: str) -> bool:
        self.declined.append(str(offer_id))
        return self._close(offer_id, OfferState.DECLINED)

    def accept_offer(self, offer_id: str) -> bool:
        offer = self.network.offers.get(str(offer_id))
        if offer is None or offer.state != OfferState.ACTIVE or not self.accepts_incoming:
            return False
        if self.network.by_id.get(offer.spec.partner_id) is not self:
            return False
        self.network.complete(offer.offer_id)
        return True

    def get_inventory(self) -> list[InventoryItem]:
        if self.fail_inventory:
            raise ConnectionError(f"{self.name} inventory unavailable")
        return list(self.inventory)

    def confirm_pending_offers(self) -> int:
        self.confirm_calls += 1
        return 0

    def get_escrow_days(self, partner_id: str, token: str) -> int:
        return self.escrow_days

    def get_auth_code(self) -> str:
        return self.auth_code


class FakeWorkQueue:
    """Pending requests go out as listed; a pushed status removes a request from the listing."""

    def __init__(self):
        self.pending: list[TradeRequest] = []
        self.pushed: list[list[tuple[str, int]]] = []
        self.fail_fetch = False

    def add(self, request: TradeRequest) -> TradeRequest:
        self.pending.append(request)
        return request

    def fetch_pending(self) -> list[TradeRequest]:
        if self.fail_fetch:
            raise ConnectionError("queue unavailable")
        return list(self.pending)

    def push_status(self, requests) -> bool:
        done = {r.request_id for r in requests}
        self.pushed.append([(r.request_id, r.status.code) for r in requests])
        self.pending = [r for r in self.pending if r.request_id not in done]
        return True

    def codes(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for batch in self.pushed:
            out.update(dict(batch))
        return out


class RecordingNotifier:
    def __init__(self):
        self.messages: list[str] = []

    def post_message(self, text: str) -> None:
        self.messages.append(text)


def make_request(
    request_id: str,
    kind: TradeKind,
    items: list[tuple[str, str]],
    counterparty_id: str = USER_ID,
) -> TradeRequest:
    return TradeRequest(
        request_id=request_id,
        counterparty_id=counterparty_id,
        token="tok",
        security_token=f"sec-{request_id}",
        kind=kind,
        requested=[InventoryItem(asset_handle=h, type_id=t) for h, t in items],
        state=RequestState.PENDING,
    )


def make_settings(**overrides) -> DeskSettings:
    values = dict(
        intake_interval_seconds=0.01,
        reconcile_interval_seconds=0.01,
        offer_expire_seconds=600,
        send_attempts=3,
        send_retry_delay_seconds=0,
        offer_message_prefix="TRADEVAULT",
        gateway_timeout_seconds=5,
        host_item_limit=100,
        item_limit_per_bot=10,
        storage_offer_max_items=2,
        storage_offer_expire_seconds=900,
        queue_fetch_url="http://queue.test/pending",
        queue_callback_url="http://queue.test/callback",
        queue_timeout_seconds=5,
        api_enabled=False,
        api_host="127.0.0.1",
        api_port=8000,
        admin_token="",
        webhook_url="",
        restart_grace_seconds=0,
        lock_timeout_seconds=2,
        custodians=(
            CustodianConfig("host", "100", CustodianRole.COORDINATOR, "http://gw.test/host", "tok-host"),
            CustodianConfig("vault-1", "200", CustodianRole.STORAGE, "http://gw.test/vault-1", "tok-v1"),
        ),
    )
    values.update(overrides)
    return DeskSettings(**values)


@pytest.fixture
def ledger(tmp_path, monkeypatch):
    """A fresh SQLite ledger per test."""
    database_sqlite.close_write_conn()
    monkeypatch.setattr(database_sqlite, "DB_PATH", str(tmp_path / "tradevault.db"))
    database_sqlite.init_db()
    yield database_sqlite
    database_sqlite.close_write_conn()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def desk_parts(ledger, clock, settings):
    """Coordinator `host` (id 100) plus storage `vault-1` (id 200) wired to both loops."""
    network = FakeNetwork(clock)
    host = FakeCustodian("host", network)
    vault = FakeCustodian("vault-1", network)
    network.register("100", host)
    network.register("200", vault)

    pool = CustodianPool(
        [
            Custodian("host", "100", CustodianRole.COORDINATOR, "tok-host", host),
            Custodian("vault-1", "200", CustodianRole.STORAGE, "tok-v1", vault),
        ],
        attempts=settings.send_attempts,
        delay_seconds=0,
    )
    book = TradeBook()
    gate = SessionGate()
    queue = FakeWorkQueue()
    notifier = RecordingNotifier()
    intake = IntakeLoop(pool, book, queue, notifier, gate, settings, clock=clock)
    reconcile = ReconciliationLoop(pool, book, queue, notifier, gate, settings, clock=clock)
    return SimpleNamespace(
        network=network,
        host=host,
        vault=vault,
        pool=pool,
        book=book,
        gate=gate,
        queue=queue,
        notifier=notifier,
        intake=intake,
        reconcile=reconcile,
        clock=clock,
        settings=settings,
        ledger=ledger,
    )
