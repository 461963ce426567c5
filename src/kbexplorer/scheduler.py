"""Timer scheduling for debouncing and polling.

``AsyncioScheduler`` runs on the event loop clock. ``VirtualScheduler``
keeps its own clock that only moves when ``advance`` is awaited, so timing
behavior can be tested without real delays.
"""

import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from typing import Callable, Optional


class TimerHandle:
    """A cancellable reference to a scheduled callback."""

    def __init__(self, when: float, on_cancel: Optional[Callable[[], None]] = None):
        self.when = when
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()


class Scheduler(ABC):
    """Clock plus delayed callbacks."""

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` after ``delay`` seconds."""

    @abstractmethod
    async def sleep(self, delay: float) -> None:
        """Suspend the calling task for ``delay`` seconds."""


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = loop.call_later(max(delay, 0.0), callback)
        return TimerHandle(loop.time() + delay, on_cancel=handle.cancel)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(delay, 0.0))


class VirtualScheduler(Scheduler):
    """Deterministic scheduler whose clock is advanced explicitly."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle, Callable[[], None]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        when = self._now + max(delay, 0.0)
        handle = TimerHandle(when)
        heapq.heappush(self._queue, (when, next(self._seq), handle, callback))
        return handle

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        self.call_later(delay, wake)
        await future

    @property
    def pending_timers(self) -> int:
        """Number of scheduled, not yet cancelled callbacks."""
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due callbacks in time order.

        The event loop gets a turn after every callback so tasks it spawned
        can make progress before later timers fire. Tasks that are already
        ready run first, so timers they register count toward this window.
        """
        await _yield_loop()
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = when
            callback()
            await _yield_loop()
        self._now = target
        await _yield_loop()


async def _yield_loop(turns: int = 5) -> None:
    for _ in range(turns):
        await asyncio.sleep(0)


class Debouncer:
    """Delays a callback until calls stop arriving for ``delay`` seconds.

    Every ``trigger`` restarts the quiet period.
    """

    def __init__(self, scheduler: Scheduler, delay: float, callback: Callable[[], None]):
        self.scheduler = scheduler
        self.delay = delay
        self.callback = callback
        self._handle: Optional[TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None and not self._handle.cancelled

    def trigger(self) -> None:
        self.cancel()
        self._handle = self.scheduler.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> None:
        """Fire immediately if a call is waiting."""
        if self.pending:
            self.cancel()
            self.callback()

    def _fire(self) -> None:
        self._handle = None
        self.callback()
