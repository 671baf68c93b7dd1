import pytest
from conftest import FakeCustodian, FakeNetwork, make_settings

from tradevault.domain.models import ConnectionState, CustodianRole
from tradevault.trader.desk import TradeDesk
from tradevault.trading.custodian_pool import Custodian, CustodianPool, StartupError
from tradevault.utils import database as db


def _desk(parts):
    return TradeDesk(parts.pool, parts.queue, parts.notifier, make_settings(), clock=parts.clock)


def test_pool_requires_exactly_one_coordinator(clock):
    network = FakeNetwork(clock)
    storage = Custodian("vault-1", "200", CustodianRole.STORAGE, "t", FakeCustodian("vault-1", network))
    with pytest.raises(StartupError):
        CustodianPool([storage])

    a = Custodian("a", "1", CustodianRole.COORDINATOR, "t", FakeCustodian("a", network))
    b = Custodian("b", "2", CustodianRole.COORDINATOR, "t", FakeCustodian("b", network))
    with pytest.raises(StartupError):
        CustodianPool([a, b, storage])


def test_pool_reports_failing_client_as_error(desk_parts):
    def _boom():
        raise ConnectionError("no route")

    desk_parts.vault.connect = _boom
    states = desk_parts.pool.connect_all()
    assert states == {"host": ConnectionState.CONNECTED, "vault-1": ConnectionState.ERROR}


def test_start_and_stop(desk_parts):
    desk = _desk(desk_parts)

    states = desk.start()
    try:
        assert states == {"host": ConnectionState.CONNECTED, "vault-1": ConnectionState.CONNECTED}
        assert all(loop.is_alive() for loop in desk.loops)
    finally:
        desk.stop(timeout=5)

    assert not any(loop.is_alive() for loop in desk.loops)
    assert not desk.failed
    assert desk_parts.host.state == ConnectionState.DISCONNECTED


def test_crashed_loop_takes_the_desk_down(desk_parts):
    desk = _desk(desk_parts)

    def _explode():
        raise RuntimeError("ledger exploded")

    desk.intake.run_cycle = _explode
    desk.start()
    try:
        assert desk.wait(timeout=5)
    finally:
        desk.stop(timeout=5)

    assert desk.failed
    assert desk.crashed_loop == "intake"
    assert isinstance(desk.intake.crashed, RuntimeError)
    assert any("intake loop stopped" in m for m in desk_parts.notifier.messages)
    db.force_commit()
    events = db.get_events(limit=50)
    assert any("intake loop crashed" in m for m in events["message"].tolist())


def test_request_shutdown_releases_wait(desk_parts):
    desk = _desk(desk_parts)
    assert not desk.wait(timeout=0.01)
    desk.request_shutdown()
    assert desk.wait(timeout=0.01)
    assert not desk.failed
