from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable

from tradevault.domain.models import (
    FAILED_OFFER_STATES,
    InventoryItem,
    ItemState,
    LedgerItem,
    NewItem,
    OfferSnapshot,
    OfferSpec,
    OfferState,
    RequestState,
    StorageTransfer,
    TradeKind,
    TradeRequest,
)
from tradevault.ports.work_queue import NotifierPort, WorkQueuePort
from tradevault.trader.book import TradeBook
from tradevault.trader.intake import offer_message
from tradevault.trader.loop import DeskLoop, alert
from tradevault.trader.session import RECONCILE, SessionGate
from tradevault.trader.settings import DeskSettings
from tradevault.trading.custodian_pool import Custodian, CustodianPool
from tradevault.utils import database as db
from tradevault.utils.retry import call_with_retry

logger = logging.getLogger(__name__)

_UNSETTLED = (OfferState.NEEDS_CONFIRMATION, OfferState.UNKNOWN)


class ReconciliationLoop(DeskLoop):
    """
    Track every sent offer to a terminal outcome and apply it to the ledger.
    Also owns storage rebalancing from the coordinator to storage custodians.
    """

    name = RECONCILE

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
        super().__init__(gate, settings.reconcile_interval_seconds, on_exit=on_exit)
        self.pool = pool
        self.book = book
        self.queue = queue
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    def run_cycle(self) -> None:
        changed: list[TradeRequest] = []
        for request in self.book.drain_queue():
            try:
                if self.reconcile_request(request):
                    changed.append(request)
            except Exception as e:
                logger.exception("Reconciling %s failed", request.request_id)
                db.log_event("ERROR", f"reconcile failed: {type(e).__name__}: {e}", subject=request.request_id, step="reconcile")

        for transfer in self.book.transfers():
            try:
                self.reconcile_transfer(transfer)
            except Exception as e:
                logger.exception("Reconciling storage offer %s failed", transfer.offer_id)
                db.log_event("ERROR", f"transfer reconcile failed: {e}", subject=transfer.offer_id, step="storage")

        self.rebalance()

        if changed:
            call_with_retry(self.queue.push_status, changed, attempts=1, what="queue.push_status")

    # ----- user offers -----

    def reconcile_request(self, request: TradeRequest) -> bool:
        """Apply the offer's current state; True when the request status changed."""
        coordinator = self.pool.coordinator
        snapshot: OfferSnapshot | None = self.pool.call(coordinator, "get_offer", request.offer_id, attempts=1)
        if snapshot is None or snapshot.state in _UNSETTLED:
            request.error_count += 1
            return False

        if snapshot.state == OfferState.ACCEPTED:
            if request.kind == TradeKind.DEPOSIT:
                return self._settle_deposit(request)
            return self._settle_withdraw(request)

        if snapshot.state == OfferState.ACTIVE:
            if request.kind != TradeKind.DEPOSIT:
                return False
            created = snapshot.created_at or request.sent_at or self.clock()
            if self.clock() - created <= self.settings.offer_expire_seconds:
                return False
            if not self.pool.call(coordinator, "cancel_offer", request.offer_id, attempts=1):
                request.error_count += 1
                return False
            self._fail(request, "offer expired")
            return True

        if snapshot.state in FAILED_OFFER_STATES:
            if snapshot.state == OfferState.COUNTERED:
                self.pool.call(coordinator, "decline_offer", request.offer_id, attempts=1)
            if request.kind == TradeKind.WITHDRAW:
                self._return_withdraw_rows(request, snapshot.state)
            self._fail(request, f"offer {snapshot.state.value}")
            return True

        request.error_count += 1
        return False

    def _settle_deposit(self, request: TradeRequest) -> bool:
        coordinator = self.pool.coordinator
        existing = db.find_items("request_id", request.request_id)
        if not existing:
            wanted = [
                LedgerItem(
                    id=-(idx + 1),
                    custodian_id=coordinator.id,
                    asset_handle=item.asset_handle,
                    type_id=item.type_id,
                    state=ItemState.ACTIVE,
                )
                for idx, item in enumerate(request.requested)
            ]
            handles = self.pool.locate_items(coordinator, wanted)
            if handles is None:
                # Items not visible yet; try again next cycle.
                request.error_count += 1
                return False
            rows = [
                NewItem(
                    custodian_id=coordinator.id,
                    asset_handle=h,
                    type_id=w.type_id,
                    owner_id=request.counterparty_id,
                    request_id=request.request_id,
                )
                for h, w in zip(handles, wanted)
            ]
            if not db.insert_items(rows):
                request.error_count += 1
                return False
            existing = db.find_items("request_id", request.request_id)

        request.items = existing
        self._complete(request)
        return True

    def _settle_withdraw(self, request: TradeRequest) -> bool:
        if not db.update_item_states(request.item_ids, ItemState.ACCEPTED):
            request.error_count += 1
            return False
        request.items = [replace(row, state=ItemState.ACCEPTED) for row in request.items]
        self._complete(request)
        return True

    def _return_withdraw_rows(self, request: TradeRequest, state: OfferState) -> None:
        ids = request.item_ids
        if db.update_item_states(ids, ItemState.ACTIVE):
            request.items = [replace(row, state=ItemState.ACTIVE) for row in request.items]
            self._notify(
                f"Withdraw {request.request_id} offer {request.offer_id} {state.value}; rows {ids} are Active again "
                f"but their handles are used and they will not be allocated again"
            )
        else:
            self._notify(f"Withdraw {request.request_id} offer {request.offer_id} {state.value}; rows {ids} could not be released")

    def _complete(self, request: TradeRequest) -> None:
        request.state = RequestState.ACCEPTED
        self.book.retire(request)
        logger.info("%s %s accepted (%s items)", request.kind.value, request.request_id, len(request.items))
        db.log_event("INFO", f"offer {request.offer_id} accepted", subject=request.request_id, step=request.kind.value)

    def _fail(self, request: TradeRequest, reason: str) -> None:
        request.state = RequestState.DECLINED
        self.book.retire(request)
        logger.info("%s %s declined: %s", request.kind.value, request.request_id, reason)
        db.log_event("INFO", f"declined: {reason}", subject=request.request_id, step=request.kind.value)

    # ----- storage transfers -----

    def reconcile_transfer(self, transfer: StorageTransfer) -> None:
        source = self.pool.get(transfer.source_id)
        destination = self.pool.get(transfer.destination_id)
        if source is None or destination is None:
            self._release_transfer(transfer, "custodian no longer configured")
            return

        snapshot = self.pool.call(source, "get_offer", transfer.offer_id, attempts=1)
        if snapshot is None or snapshot.state in _UNSETTLED:
            transfer.error_count += 1
            if snapshot is not None and snapshot.state == OfferState.NEEDS_CONFIRMATION:
                self.pool.call(source, "confirm_pending_offers", attempts=1)
            return

        if snapshot.state == OfferState.ACCEPTED:
            handles = self.pool.locate_items(destination, transfer.items)
            if handles is None:
                transfer.error_count += 1
                return
            if not db.update_item_custodians(transfer.item_ids, destination.id, handles, state=ItemState.ACTIVE):
                transfer.error_count += 1
                return
            self.book.remove_transfer(transfer)
            logger.info("Storage offer %s landed at %s (%s items)", transfer.offer_id, destination.name, len(handles))
            db.log_event("INFO", f"{len(handles)} items moved to {destination.name}", subject=transfer.offer_id, step="storage")
            return

        if snapshot.state == OfferState.ACTIVE:
            created = snapshot.created_at or transfer.sent_at
            if self.clock() - created > self.settings.storage_offer_expire_seconds:
                if self.pool.call(source, "cancel_offer", transfer.offer_id, attempts=1):
                    self._release_transfer(transfer, "not accepted in time")
                else:
                    transfer.error_count += 1
                return
            self.pool.call(destination, "accept_offer", transfer.offer_id, attempts=1)
            return

        self._release_transfer(transfer, snapshot.state.value)

    def _release_transfer(self, transfer: StorageTransfer, reason: str) -> None:
        ids = transfer.item_ids
        released = db.update_item_states(ids, ItemState.ACTIVE)
        self.book.remove_transfer(transfer)
        if released:
            self._notify(
                f"Storage offer {transfer.offer_id} failed ({reason}); rows {ids} back to Active at the coordinator "
                f"but their handles are used and they will not be allocated again"
            )
        else:
            self._notify(f"Storage offer {transfer.offer_id} failed ({reason}); rows {ids} could not be released")

    def rebalance(self) -> StorageTransfer | None:
        """
        Move a batch of coordinator items to the first storage custodian with room,
        once the coordinator holds at least `host_item_limit` usable items.
        """
        coordinator = self.pool.coordinator
        held = db.count_items([ItemState.ACTIVE], custodian_id=coordinator.id, usable_only=True)
        if held < self.settings.host_item_limit:
            return None
        if not self.book.begin_rebalance():
            return None
        try:
            for destination in self.pool.storage():
                inventory = self.pool.inventory(destination)
                if inventory is None:
                    continue
                free = self.settings.item_limit_per_bot - len(inventory)
                if free <= 0:
                    continue
                return self._start_transfer(coordinator, destination, min(free, self.settings.storage_offer_max_items))
            logger.warning("Coordinator holds %s items but no storage custodian has room", held)
            return None
        finally:
            self.book.end_rebalance()

    def _start_transfer(self, coordinator: Custodian, destination: Custodian, batch: int) -> StorageTransfer | None:
        rows = db.list_usable_items(coordinator.id, batch)
        if not rows:
            return None
        handles = self.pool.locate_items(coordinator, rows)
        if handles is None:
            logger.warning("Rebalance to %s skipped: coordinator inventory does not match the ledger", destination.name)
            return None

        spec = OfferSpec(
            partner_id=destination.id,
            token=destination.trade_token,
            message=offer_message(self.settings.offer_message_prefix, "STORAGE", destination.name),
            give=tuple(InventoryItem(asset_handle=h, type_id=row.type_id) for h, row in zip(handles, rows)),
        )
        offer_id = self.pool.call(coordinator, "send_offer", spec)
        if not offer_id:
            return None

        # Hold and burn the handles before the destination confirms, so no withdraw can pick them.
        if not db.commit_transfer([row.id for row in rows], handles, ItemState.ON_HOLD):
            self.pool.call(coordinator, "cancel_offer", offer_id)
            return None

        transfer = StorageTransfer(
            offer_id=str(offer_id),
            source_id=coordinator.id,
            destination_id=destination.id,
            items=[replace(row, asset_handle=h, state=ItemState.ON_HOLD) for h, row in zip(handles, rows)],
            sent_at=self.clock(),
        )
        self.book.add_transfer(transfer)
        self.pool.call(coordinator, "confirm_pending_offers", attempts=1)
        self.pool.call(destination, "accept_offer", offer_id, attempts=1)
        logger.info("Rebalance: %s items to %s (offer %s)", len(rows), destination.name, offer_id)
        db.log_event("INFO", f"{len(rows)} items sent to {destination.name}", subject=str(offer_id), step="storage")
        return transfer

    def _notify(self, text: str) -> None:
        alert(self.notifier, text, step=self.name)
