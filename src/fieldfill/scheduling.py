"""
Clocks and the single-threaded task queue.

Debounced detection, batched storage writes and step stall timers all run
on one TaskQueue. The host drives it by calling run_due() from its own loop
(or tests advance a ManualClock), so ordering and cancellation are
deterministic and never depend on a real browser event loop.
"""

import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Clock:
    """Millisecond clock interface."""

    def now_ms(self) -> float:
        raise NotImplementedError


class SystemClock(Clock):
    """Monotonic wall clock."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0


class ManualClock(Clock):
    """Clock that only moves when told to. Used by tests and simulations."""

    def __init__(self, start_ms: float = 0.0):
        self._now = float(start_ms)

    def now_ms(self) -> float:
        return self._now

    def advance(self, ms: float) -> float:
        self._now += ms
        return self._now

    def set(self, ms: float) -> None:
        self._now = float(ms)


@dataclass(order=True)
class TimerHandle:
    """A scheduled callback. Ordered by due time, then insertion order."""
    due_ms: float
    seq: int
    callback: Callable[[], Any] = field(compare=False)
    label: str = field(default="", compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class TaskQueue:
    """
    Explicit timer queue for cooperative single-threaded execution.

    Callbacks never run from call_later() itself; they run only when the
    owner calls run_due(). A callback that raises is logged and does not
    stop the remaining due callbacks.
    """

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self._heap: list[TimerHandle] = []
        self._counter = itertools.count()

    def call_later(self, delay_ms: float, callback: Callable[[], Any], label: str = "") -> TimerHandle:
        """Schedule callback to run delay_ms from now."""
        handle = TimerHandle(
            due_ms=self.clock.now_ms() + max(0.0, delay_ms),
            seq=next(self._counter),
            callback=callback,
            label=label,
        )
        heapq.heappush(self._heap, handle)
        return handle

    def cancel(self, handle: TimerHandle | None) -> None:
        if handle is not None:
            handle.cancel()

    def run_due(self) -> int:
        """Run every callback whose due time has passed. Returns count run."""
        ran = 0
        now = self.clock.now_ms()
        while self._heap and self._heap[0].due_ms <= now:
            handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            try:
                handle.callback()
            except Exception as e:
                logger.error(f"Scheduled task '{handle.label}' failed: {e}")
            ran += 1
            # Callbacks may have scheduled zero-delay work
            now = self.clock.now_ms()
        return ran

    def next_due_ms(self) -> float | None:
        """Due time of the next live timer, if any."""
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0].due_ms if self._heap else None

    def pending(self) -> int:
        return sum(1 for h in self._heap if not h.cancelled)

    def advance(self, ms: float) -> int:
        """
        Advance a ManualClock and run what became due.

        The clock stops at each timer's due time in turn, so callbacks see
        the time they were scheduled for.
        """
        if not isinstance(self.clock, ManualClock):
            raise TypeError("advance() requires a ManualClock")
        target = self.clock.now_ms() + ms
        ran = 0
        while True:
            due = self.next_due_ms()
            if due is None or due > target:
                break
            self.clock.set(max(due, self.clock.now_ms()))
            ran += self.run_due()
        self.clock.set(target)
        return ran + self.run_due()
