"""Tick scheduling for the render loop and the encoder timeslice.

The engine never sleeps or spins its own timers.  Everything periodic
goes through a :class:`Scheduler`:

* :class:`QtScheduler` — ``QTimer``-backed, for a host running a Qt
  event loop.
* :class:`ManualScheduler` — a virtual clock advanced explicitly, so
  tests (and offline tooling) can drive ticks deterministically.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from PySide6.QtCore import QObject, QTimer, Qt

logger = logging.getLogger(__name__)

# Tolerance for float drift when comparing virtual due times
_EPS = 1e-9


class Scheduler:
    """Interface: periodic callbacks plus a monotonic clock (seconds)."""

    def tick(self, callback: Callable[[], None], interval_ms: float):
        """Call *callback* every *interval_ms*; returns a handle for ``cancel``."""
        raise NotImplementedError

    def cancel(self, handle) -> None:
        raise NotImplementedError

    def now(self) -> float:
        raise NotImplementedError


class QtScheduler(Scheduler):
    """Scheduler on top of ``QTimer`` (requires a running Qt event loop)."""

    def __init__(self, parent: QObject | None = None) -> None:
        self._parent = parent
        self._timers: List[QTimer] = []

    def tick(self, callback: Callable[[], None], interval_ms: float) -> QTimer:
        timer = QTimer(self._parent)
        timer.setTimerType(Qt.TimerType.PreciseTimer)
        timer.setInterval(max(1, int(round(interval_ms))))
        timer.timeout.connect(callback)
        timer.start()
        self._timers.append(timer)
        return timer

    def cancel(self, handle: QTimer) -> None:
        if handle in self._timers:
            self._timers.remove(handle)
        handle.stop()
        handle.deleteLater()

    def now(self) -> float:
        return time.monotonic()


class _ManualTimer:
    __slots__ = ("callback", "interval", "due")

    def __init__(self, callback: Callable[[], None], interval: float, due: float) -> None:
        self.callback = callback
        self.interval = interval
        self.due = due


class ManualScheduler(Scheduler):
    """Deterministic scheduler driven by :meth:`advance`.

    Timers fire in due-time order; the virtual clock is set to each
    timer's due time while its callback runs.  Callbacks may cancel
    timers (including their own) or register new ones.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._timers: Dict[int, _ManualTimer] = {}
        self._next_id = 1

    def tick(self, callback: Callable[[], None], interval_ms: float) -> int:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        interval = interval_ms / 1000.0
        handle = self._next_id
        self._next_id += 1
        self._timers[handle] = _ManualTimer(callback, interval, self._now + interval)
        return handle

    def cancel(self, handle: int) -> None:
        self._timers.pop(handle, None)

    def now(self) -> float:
        return self._now

    @property
    def active_timers(self) -> int:
        return len(self._timers)

    def _next_due(self) -> Optional[int]:
        if not self._timers:
            return None
        return min(self._timers, key=lambda h: (self._timers[h].due, h))

    def advance(self, seconds: float) -> None:
        """Move the clock forward by *seconds*, firing every due timer."""
        target = self._now + seconds
        while True:
            handle = self._next_due()
            if handle is None:
                break
            timer = self._timers[handle]
            if timer.due > target + _EPS:
                break
            self._now = timer.due
            timer.due += timer.interval
            timer.callback()
        self._now = target

    def run_ticks(self, count: int, interval_ms: float) -> None:
        """Advance by *count* intervals of *interval_ms*."""
        self.advance(count * interval_ms / 1000.0)
