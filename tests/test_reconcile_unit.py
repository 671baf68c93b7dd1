import dataclasses

from conftest import USER_ID, make_request

from tradevault.domain.models import InventoryItem, ItemState, NewItem, OfferState, RequestState, TradeKind


def _stock(parts, custodian, custodian_id, items):
    custodian.inventory += [InventoryItem(h, t) for h, t in items]
    assert parts.ledger.insert_items([NewItem(custodian_id=custodian_id, asset_handle=h, type_id=t) for h, t in items])


def _sent_deposit(parts, request_id="d-1", items=(("u1", "5"), ("u2", "6"))):
    request = parts.queue.add(make_request(request_id, TradeKind.DEPOSIT, list(items)))
    parts.intake.run_cycle()
    assert request.state == RequestState.SENT
    return request


def _sent_withdraw(parts, request_id="w-1", items=(("x", "5"),)):
    request = parts.queue.add(make_request(request_id, TradeKind.WITHDRAW, list(items)))
    parts.intake.run_cycle()
    assert request.state == RequestState.SENT
    return request


def test_accepted_deposit_creates_ledger_rows(desk_parts):
    parts = desk_parts
    request = _sent_deposit(parts)
    parts.network.complete(request.offer_id)

    parts.reconcile.run_cycle()

    assert parts.queue.codes()["d-1"] == 4
    rows = parts.ledger.find_items("request_id", "d-1")
    assert [(r.custodian_id, r.type_id, r.state, r.owner_id) for r in rows] == [
        ("100", "5", ItemState.ACTIVE, USER_ID),
        ("100", "6", ItemState.ACTIVE, USER_ID),
    ]
    assert {r.asset_handle for r in rows} == {i.asset_handle for i in parts.host.inventory}
    assert parts.book.active() == []


def test_deposit_settlement_is_idempotent(desk_parts):
    parts = desk_parts
    request = _sent_deposit(parts)
    parts.network.complete(request.offer_id)
    parts.reconcile.run_cycle()

    assert parts.reconcile.reconcile_request(request)
    assert len(parts.ledger.find_items("request_id", "d-1")) == 2


def test_deposit_waits_until_items_are_visible(desk_parts):
    parts = desk_parts
    request = _sent_deposit(parts)
    parts.network.set_state(request.offer_id, OfferState.ACCEPTED)

    parts.reconcile.run_cycle()

    assert request.state == RequestState.SENT
    assert request.error_count == 1
    assert parts.ledger.find_items("request_id", "d-1") == []
    assert len(parts.book.active()) == 1


def test_old_deposit_expires_but_old_withdraw_does_not(desk_parts):
    parts = desk_parts
    _stock(parts, parts.host, "100", [("a", "5")])
    deposit = _sent_deposit(parts)
    withdraw = _sent_withdraw(parts)

    parts.clock.advance(parts.settings.offer_expire_seconds + 1)
    parts.reconcile.run_cycle()

    assert parts.host.canceled == [deposit.offer_id]
    assert deposit.state == RequestState.DECLINED
    assert parts.queue.codes()["d-1"] == 2
    assert withdraw.state == RequestState.SENT
    assert parts.book.active() == [withdraw]
    assert parts.ledger.find_items("asset_handle", "a")[0].state == ItemState.SENT


def test_fresh_deposit_is_left_alone(desk_parts):
    parts = desk_parts
    deposit = _sent_deposit(parts)

    parts.clock.advance(60)
    parts.reconcile.run_cycle()

    assert deposit.state == RequestState.SENT
    assert parts.host.canceled == []


def test_accepted_withdraw_retires_rows(desk_parts):
    parts = desk_parts
    _stock(parts, parts.host, "100", [("a", "5")])
    request = _sent_withdraw(parts)
    parts.network.complete(request.offer_id)

    parts.reconcile.run_cycle()

    assert parts.queue.codes()["w-1"] == 9
    assert parts.ledger.find_items("asset_handle", "a")[0].state == ItemState.ACCEPTED


def test_countered_withdraw_is_declined_and_rows_released(desk_parts):
    parts = desk_parts
    _stock(parts, parts.host, "100", [("a", "5")])
    request = _sent_withdraw(parts)
    parts.network.set_state(request.offer_id, OfferState.COUNTERED)

    parts.reconcile.run_cycle()

    assert parts.host.declined == [request.offer_id]
    assert parts.queue.codes()["w-1"] == 7
    row = parts.ledger.find_items("asset_handle", "a")[0]
    assert row.state == ItemState.ACTIVE
    assert parts.ledger.is_used("a")
    assert parts.notifier.messages


def test_unsettled_offer_stays_in_flight(desk_parts):
    parts = desk_parts
    request = _sent_deposit(parts)
    parts.network.set_state(request.offer_id, OfferState.NEEDS_CONFIRMATION)

    parts.reconcile.run_cycle()
    parts.reconcile.run_cycle()

    assert request.error_count == 2
    assert request.state == RequestState.SENT
    assert parts.book.active() == [request]


def test_round_trip_leaves_no_active_rows(desk_parts):
    parts = desk_parts
    deposit = _sent_deposit(parts)
    parts.network.complete(deposit.offer_id)
    parts.reconcile.run_cycle()
    handles = {r.asset_handle for r in parts.ledger.find_items("request_id", "d-1")}

    withdraw = _sent_withdraw(parts, items=(("x", "5"), ("y", "6")))
    parts.network.complete(withdraw.offer_id)
    parts.reconcile.run_cycle()

    assert parts.queue.codes() == {"d-1": 4, "w-1": 9}
    rows = parts.ledger.find_items("request_id", "d-1")
    assert all(r.state == ItemState.ACCEPTED for r in rows)
    assert parts.ledger.find_items("type_id", ["5", "6"], states=[ItemState.ACTIVE]) == []
    assert handles <= parts.ledger.used_handles()


def _rebalance_parts(parts):
    # Three usable items reach the threshold; vault-1 already holds seven of another type.
    parts.reconcile.settings = dataclasses.replace(
        parts.settings, host_item_limit=3, item_limit_per_bot=10, storage_offer_max_items=2
    )
    _stock(parts, parts.host, "100", [("a", "5"), ("b", "5"), ("c", "6")])
    parts.vault.inventory = [InventoryItem(f"v{i}", "99") for i in range(7)]


def test_rebalance_holds_and_burns_handles_before_confirmation(desk_parts):
    parts = desk_parts
    _rebalance_parts(parts)
    parts.vault.accepts_incoming = False

    transfer = parts.reconcile.rebalance()

    assert transfer is not None
    assert transfer.destination_id == "200"
    spec = parts.host.sent[0]
    assert (spec.partner_id, spec.token) == ("200", "tok-v1")
    assert spec.give == (InventoryItem("a", "5"), InventoryItem("b", "5"))
    held = parts.ledger.find_items("asset_handle", ["a", "b"])
    assert all(r.state == ItemState.ON_HOLD for r in held)
    assert parts.ledger.used_handles() == {"a", "b"}
    assert parts.book.transfers() == [transfer]
    assert parts.reconcile.rebalance() is None


def test_rebalance_transfer_lands_at_storage(desk_parts):
    parts = desk_parts
    _rebalance_parts(parts)
    parts.vault.accepts_incoming = False
    transfer = parts.reconcile.rebalance()

    parts.vault.accepts_incoming = True
    parts.reconcile.run_cycle()  # destination accepts
    parts.reconcile.run_cycle()  # landing is recorded

    rows = parts.ledger.find_items("id", transfer.item_ids)
    assert all(r.custodian_id == "200" and r.state == ItemState.ACTIVE for r in rows)
    vault_handles = {i.asset_handle for i in parts.vault.inventory if i.type_id == "5"}
    assert {r.asset_handle for r in rows} == vault_handles
    assert parts.book.transfers() == []
    assert not parts.book.storage_busy()


def test_unconfirmed_rebalance_expires_and_releases(desk_parts):
    parts = desk_parts
    _rebalance_parts(parts)
    parts.vault.accepts_incoming = False
    transfer = parts.reconcile.rebalance()

    parts.clock.advance(parts.settings.storage_offer_expire_seconds + 1)
    parts.reconcile.run_cycle()

    assert parts.host.canceled == [transfer.offer_id]
    rows = parts.ledger.find_items("id", transfer.item_ids)
    assert all(r.custodian_id == "100" and r.state == ItemState.ACTIVE for r in rows)
    assert parts.book.transfers() == []
    assert any(transfer.offer_id in m for m in parts.notifier.messages)
    # Released rows keep used handles, so the coordinator is back under the threshold.
    assert parts.ledger.count_items([ItemState.ACTIVE], custodian_id="100", usable_only=True) == 1


def test_rebalance_waits_for_reserved_withdraw(desk_parts):
    parts = desk_parts
    _rebalance_parts(parts)
    assert parts.book.reserve("w-1", [1])

    assert parts.reconcile.rebalance() is None
    assert parts.host.sent == []


def test_rebalance_skips_full_storage(desk_parts):
    parts = desk_parts
    _rebalance_parts(parts)
    parts.vault.inventory = [InventoryItem(f"v{i}", "99") for i in range(10)]

    assert parts.reconcile.rebalance() is None
    assert not parts.book.storage_busy()


def test_requests_keep_flowing_while_rebalancing(desk_parts):
    parts = desk_parts
    parts.reconcile.settings = dataclasses.replace(
        parts.settings, host_item_limit=2, item_limit_per_bot=100, storage_offer_max_items=2
    )
    _stock(parts, parts.host, "100", [(f"s{i}", "5") for i in range(8)])
    parts.queue.add(make_request("dep-1", TradeKind.DEPOSIT, [("u1", "7")]))

    parts.reconcile.run_cycle()
    assert parts.book.transfers()
    parts.intake.run_cycle()

    assert parts.queue.codes() == {"dep-1": 3}

    # A withdraw arriving mid-rebalance is sent once the open transfer lands.
    parts.queue.add(make_request("wd-1", TradeKind.WITHDRAW, [("x", "5")]))
    for _ in range(3):
        parts.reconcile.run_cycle()
        parts.intake.run_cycle()

    assert parts.queue.codes()["wd-1"] == 8


def test_accepted_withdraw_listed_again_is_not_sent_twice(desk_parts):
    parts = desk_parts
    parts.queue.push_status = lambda requests: False
    _stock(parts, parts.host, "100", [("a", "5"), ("b", "5")])
    request = _sent_withdraw(parts, "wd-1")
    parts.network.complete(request.offer_id)
    parts.reconcile.run_cycle()
    assert request.state == RequestState.ACCEPTED

    parts.intake.run_cycle()

    withdraws = [s for s in parts.host.sent if s.message == "TRADEVAULT WITHDRAW | sec-wd-1"]
    assert len(withdraws) == 1
    assert parts.ledger.find_items("asset_handle", "b")[0].state == ItemState.ACTIVE
