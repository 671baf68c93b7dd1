from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from tradevault.domain.models import ConnectionState
from tradevault.ports.work_queue import NotifierPort, WorkQueuePort
from tradevault.trader.book import TradeBook
from tradevault.trader.intake import IntakeLoop
from tradevault.trader.loop import DeskLoop
from tradevault.trader.reconcile import ReconciliationLoop
from tradevault.trader.session import SessionGate
from tradevault.trader.settings import DeskSettings
from tradevault.trading.custodian_pool import CustodianPool
from tradevault.utils.database import log_event

logger = logging.getLogger(__name__)


class TradeDesk:
    """
    Wires the custodian pool, trade book and session gate to the two loops and
    owns their lifecycle. A loop that dies takes the desk down with it.
    """

    def __init__(
        self,
        pool: CustodianPool,
        queue: WorkQueuePort,
        notifier: NotifierPort,
        settings: DeskSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.pool = pool
        self.queue = queue
        self.notifier = notifier
        self.settings = settings
        self.clock = clock
        self.book = TradeBook()
        self.gate = SessionGate()
        self.started_at: float | None = None
        self._done = threading.Event()
        self._stopping = False
        self.crashed_loop: str | None = None

        self.intake = IntakeLoop(
            pool, self.book, queue, notifier, self.gate, settings, clock=clock, on_exit=self._loop_exited
        )
        self.reconcile = ReconciliationLoop(
            pool, self.book, queue, notifier, self.gate, settings, clock=clock, on_exit=self._loop_exited
        )

    @property
    def loops(self) -> tuple[DeskLoop, DeskLoop]:
        return (self.intake, self.reconcile)

    def start(self) -> dict[str, ConnectionState]:
        states = self.pool.connect_all()
        for name, state in states.items():
            level = logging.INFO if state == ConnectionState.CONNECTED else logging.WARNING
            logger.log(level, "Custodian %s: %s", name, state.value)
        self.started_at = self.clock()
        for loop in self.loops:
            loop.start()
        log_event("INFO", "Desk started", subject="desk", step="start")
        return states

    def stop(self, timeout: float = 30.0) -> None:
        self._stopping = True
        for loop in self.loops:
            loop.stop()
        for loop in self.loops:
            loop.join(timeout=timeout)
        self.pool.disconnect_all()
        log_event("INFO", "Desk stopped", subject="desk", step="stop")

    @property
    def failed(self) -> bool:
        return self.crashed_loop is not None

    def request_shutdown(self) -> None:
        self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until a loop dies or shutdown is requested; False on timeout."""
        return self._done.wait(timeout)

    def uptime_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        return max(0.0, self.clock() - self.started_at)

    def _loop_exited(self, loop: DeskLoop) -> None:
        if self._stopping or loop.stopping:
            return
        reason = f"{type(loop.crashed).__name__}: {loop.crashed}" if loop.crashed else "exited unexpectedly"
        text = f"{loop.name} loop stopped ({reason}); the desk is shutting down"
        logger.error(text)
        try:
            self.notifier.post_message(text)
        except Exception as e:
            logger.warning("Admin notification failed: %s", e)
        self.crashed_loop = loop.name
        self._done.set()
