"""Shared daemon state passed to every component."""

from __future__ import annotations

import logging
import threading
import time

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DaemonContext"]


class DaemonContext:
    """Hold the rebuild state and the shutdown event for one daemon run.

    The rebuild flag is the only mutable state shared between the watcher
    thread, the debounce thread and the main thread. It is only changed
    through :meth:`try_begin_rebuild` and :meth:`end_rebuild`.

    Attributes:
        stop_event (threading.Event): Set when the daemon should shut down.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rebuilding = False
        self._rebuild_started = 0.0
        self.stop_event = threading.Event()

    @property
    def is_rebuilding(self) -> bool:
        with self._lock:
            return self._rebuilding

    def try_begin_rebuild(self) -> bool:
        """Move from idle to in-progress.

        Returns:
            bool: True if the caller now owns the rebuild, False if one is
            already running.
        """
        with self._lock:
            if self._rebuilding:
                return False
            self._rebuilding = True
            self._rebuild_started = time.monotonic()
            return True

    def end_rebuild(self) -> float:
        """Return to idle unconditionally.

        Returns:
            float: Seconds the rebuild was in progress (0.0 if it was idle).
        """
        with self._lock:
            elapsed = 0.0
            if self._rebuilding:
                elapsed = max(0.0, time.monotonic() - self._rebuild_started)
            self._rebuilding = False
            return elapsed

    def request_stop(self) -> None:
        self.stop_event.set()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def __repr__(self) -> str:
        return f"<DaemonContext rebuilding={self.is_rebuilding} stopping={self.stopping}>"
