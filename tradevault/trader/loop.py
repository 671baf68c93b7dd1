from __future__ import annotations

import logging
import threading
from typing import Callable

from tradevault.trader.session import SessionGate
from tradevault.utils.database import force_commit, log_event, update_live_status

logger = logging.getLogger(__name__)


def alert(notifier, text: str, step: str) -> None:
    """Log a custody problem an operator must look at and forward it to the admin channel."""
    logger.warning(text)
    log_event("WARNING", text, subject="custody", step=step)
    try:
        notifier.post_message(text)
    except Exception as e:
        logger.warning("Admin notification failed: %s", e)


class DeskLoop:
    """
    A long-lived worker thread: wait for the session gate, run one cycle, sleep.

    Subclasses implement `run_cycle`. An exception escaping a cycle ends the loop;
    it is logged, written to the event stream and reported through `on_exit`.
    """

    name = "loop"

    def __init__(
        self,
        gate: SessionGate,
        interval_seconds: float,
        on_exit: Callable[["DeskLoop"], None] | None = None,
    ):
        self.gate = gate
        self.interval_seconds = float(interval_seconds)
        self.on_exit = on_exit
        self.cycles = 0
        self.crashed: BaseException | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def run_cycle(self) -> None:
        raise NotImplementedError

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=f"tradevault-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def run_once(self) -> bool:
        """Run a single gated cycle in the calling thread. False if the gate held it back."""
        if not self.gate.try_enter(self.name):
            return False
        try:
            self.run_cycle()
            self.cycles += 1
        finally:
            self.gate.mark_idle(self.name)
            force_commit()
        return True

    def _run(self) -> None:
        logger.info("%s loop started (interval %.1fs)", self.name, self.interval_seconds)
        try:
            while not self._stop_event.is_set():
                if not self.gate.wait_until_open(self.name, self._stop_event):
                    break
                try:
                    update_live_status(self.name, "Running cycle")
                    self.run_cycle()
                    self.cycles += 1
                finally:
                    self.gate.mark_idle(self.name)
                    force_commit()
                self._stop_event.wait(self.interval_seconds)
        except Exception as e:
            self.crashed = e
            logger.exception("%s loop crashed", self.name)
            log_event("ERROR", f"{self.name} loop crashed: {type(e).__name__}: {e}", subject=self.name, step="crash")
            force_commit()
        finally:
            self.gate.mark_idle(self.name)
            logger.info("%s loop stopped after %s cycle(s)", self.name, self.cycles)
            if self.on_exit is not None:
                self.on_exit(self)
