from __future__ import annotations

import logging
import threading

from tradevault.domain.models import SessionState

logger = logging.getLogger(__name__)

INTAKE = "intake"
RECONCILE = "reconcile"


class GateTimeout(RuntimeError):
    pass


class SessionGate:
    """
    Process-wide Active/Paused/Locked switch shared by the loops and the control surface.

    Paused holds back intake only; Locked holds back both loops. Each loop reports
    itself idle between cycles, while blocked and after it exits, which is what
    `lock_and_wait` waits for.
    """

    def __init__(self, loops: tuple[str, ...] = (INTAKE, RECONCILE)):
        self._cond = threading.Condition()
        self._state = SessionState.ACTIVE
        self._idle = {name: True for name in loops}

    @property
    def state(self) -> SessionState:
        with self._cond:
            return self._state

    def set_state(self, state: SessionState) -> SessionState:
        """Switch state; returns the previous one."""
        with self._cond:
            previous = self._state
            self._state = SessionState(state)
            self._cond.notify_all()
        if previous != state:
            logger.info("Session state %s -> %s", previous.value, SessionState(state).value)
        return previous

    def _blocks(self, name: str) -> bool:
        if self._state == SessionState.LOCKED:
            return True
        return self._state == SessionState.PAUSED and name == INTAKE

    def wait_until_open(self, name: str, stop_event: threading.Event, poll_seconds: float = 0.5) -> bool:
        """
        Block while the session holds back `name`. Returns False if `stop_event`
        was set meanwhile, True once the loop may run a cycle (it is then busy).
        """
        with self._cond:
            while self._blocks(name) and not stop_event.is_set():
                if not self._idle[name]:
                    self._idle[name] = True
                    self._cond.notify_all()
                self._cond.wait(poll_seconds)
            if stop_event.is_set():
                self._idle[name] = True
                self._cond.notify_all()
                return False
            self._idle[name] = False
            return True

    def try_enter(self, name: str) -> bool:
        """Non-blocking variant of wait_until_open."""
        with self._cond:
            if self._blocks(name):
                self._idle[name] = True
                self._cond.notify_all()
                return False
            self._idle[name] = False
            return True

    def blocks(self, name: str) -> bool:
        with self._cond:
            return self._blocks(name)

    def mark_idle(self, name: str) -> None:
        with self._cond:
            self._idle[name] = True
            self._cond.notify_all()

    def is_idle(self, name: str) -> bool:
        with self._cond:
            return self._idle[name]

    def lock_and_wait(self, timeout: float) -> SessionState:
        """
        Lock the session and wait until every loop is idle.

        Returns the state that was in force before locking. On timeout the previous
        state is restored and GateTimeout is raised.
        """
        with self._cond:
            previous = self._state
            self._state = SessionState.LOCKED
            self._cond.notify_all()
            if not self._cond.wait_for(lambda: all(self._idle.values()), timeout):
                self._state = previous
                self._cond.notify_all()
                busy = sorted(n for n, idle in self._idle.items() if not idle)
                raise GateTimeout(f"loops still busy after {timeout:.0f}s: {', '.join(busy)}")
        logger.info("Session locked (was %s); all loops idle", previous.value)
        return previous
