"""Lifecycle primitives: signals, states and single-fire completions."""

import enum
import signal
import threading
from typing import Optional


class LifecycleSignal(enum.Enum):
    """Platform-independent lifecycle request."""

    RESTART = "restart"
    GRACEFUL_SHUTDOWN = "shutdown"
    TERMINATE = "terminate"

    @classmethod
    def from_signum(cls, signum: int) -> Optional["LifecycleSignal"]:
        """Map an OS signal number; None for signals we do not handle."""
        return _SIGNUM_MAP.get(signum)


_SIGNUM_MAP = {
    signal.SIGHUP: LifecycleSignal.RESTART,
    signal.SIGTERM: LifecycleSignal.GRACEFUL_SHUTDOWN,
    signal.SIGINT: LifecycleSignal.TERMINATE,
}

HANDLED_SIGNALS = tuple(_SIGNUM_MAP)


class State(enum.Enum):
    """Coordinator state.

    CREATED -> RUNNING -> DRAINING -> RESTARTING (SIGHUP)
                       -> DRAINING -> TERMINATED (SIGTERM)
                       -> TERMINATED (SIGINT)
    """

    CREATED = "created"
    RUNNING = "running"
    DRAINING = "draining"
    RESTARTING = "restarting"
    TERMINATED = "terminated"


class Completion:
    """One-shot notification between the coordinator and the driver.

    fire() sets the completion exactly once; later calls return False and do
    nothing. Waiters are released on the first fire.
    """

    def __init__(self, name: str):
        self.name = name
        self._event = threading.Event()
        self._lock = threading.Lock()

    def fire(self) -> bool:
        """Fire the completion. Returns False if it already fired."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            return True

    def is_fired(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until fired or timeout. Returns True if fired."""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"Completion({self.name!r}, fired={self.is_fired()})"
