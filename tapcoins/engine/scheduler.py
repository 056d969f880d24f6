"""
tapcoins.engine.scheduler — Cancellable Timers
===============================================

Every delayed action in the engine (debounced flushes, refill polling,
popup auto-clear) goes through a :class:`Scheduler` instead of ad hoc
timers, so a session can be shut down without orphaned callbacks and
tests can drive time by hand.

Two implementations:

* :class:`LoopScheduler` — wraps ``loop.call_later`` on the running
  asyncio loop and reads the wall clock.
* :class:`ManualScheduler` — a virtual clock; :meth:`ManualScheduler.advance`
  fires due callbacks in time order.

Usage::

    scheduler = ManualScheduler(start=1_700_000_000.0)
    task = scheduler.call_later(0.5, flush)
    scheduler.advance(0.4)   # nothing fires
    task.cancel()            # flush never runs
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from typing import Any

__all__ = ["LoopScheduler", "ManualScheduler", "ScheduledTask", "Scheduler"]

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle to a pending callback; :meth:`cancel` is idempotent."""

    __slots__ = ("_cancel_hook", "cancelled", "due")

    def __init__(self, due: float, cancel_hook: Callable[[], None] | None = None) -> None:
        self.due = due
        self.cancelled = False
        self._cancel_hook = cancel_hook

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._cancel_hook is not None:
            self._cancel_hook()
            self._cancel_hook = None

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "pending"
        return f"<ScheduledTask due={self.due:.3f} {state}>"


class Scheduler(ABC):
    """Clock plus one-shot / repeating callbacks plus background coroutines."""

    def __init__(self) -> None:
        self._background: set[asyncio.Task] = set()

    @abstractmethod
    def now(self) -> float:
        """Current time in epoch seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], object]) -> ScheduledTask:
        """Run *callback* once after *delay* seconds."""

    def call_every(self, interval: float, callback: Callable[[], object]) -> ScheduledTask:
        """Run *callback* every *interval* seconds until the handle is cancelled."""
        if interval <= 0:
            raise ValueError("interval must be positive")

        handle = ScheduledTask(self.now() + interval)
        inner: ScheduledTask | None = None

        def _tick() -> None:
            nonlocal inner
            if handle.cancelled:
                return
            try:
                callback()
            finally:
                if not handle.cancelled:
                    inner = self.call_later(interval, _tick)
                    handle.due = inner.due

        def _stop() -> None:
            if inner is not None:
                inner.cancel()

        handle._cancel_hook = _stop
        inner = self.call_later(interval, _tick)
        return handle

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        """Start *coro* as a background task on the running loop.

        The scheduler keeps a strong reference until the task finishes.
        """
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @property
    def pending_background(self) -> int:
        return len(self._background)

    async def wait_background(self) -> None:
        """Await every background task spawned so far (and any they spawn)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


# ---------------------------------------------------------------------------
# asyncio-backed scheduler
# ---------------------------------------------------------------------------
class LoopScheduler(Scheduler):
    """Real-time scheduler on an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        super().__init__()
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], object]) -> ScheduledTask:
        timer = self.loop.call_later(max(delay, 0.0), callback)
        return ScheduledTask(self.now() + delay, timer.cancel)


# ---------------------------------------------------------------------------
# Virtual-clock scheduler
# ---------------------------------------------------------------------------
class ManualScheduler(Scheduler):
    """Deterministic scheduler whose clock only moves on :meth:`advance`."""

    def __init__(self, start: float = 0.0) -> None:
        super().__init__()
        self._now = start
        self._queue: list[tuple[float, int, ScheduledTask, Callable[[], object]]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], object]) -> ScheduledTask:
        task = ScheduledTask(self._now + max(delay, 0.0))
        heapq.heappush(self._queue, (task.due, next(self._seq), task, callback))
        return task

    @property
    def pending(self) -> int:
        """Number of scheduled, not-yet-cancelled callbacks."""
        return sum(1 for _, _, task, _ in self._queue if not task.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due callbacks; returns how many fired.

        A callback that raises is logged and the remaining callbacks still
        fire, matching how the asyncio loop treats ``call_later`` handlers.
        """
        if seconds < 0:
            raise ValueError("cannot move the clock backwards")
        target = self._now + seconds
        fired = 0
        try:
            while self._queue and self._queue[0][0] <= target:
                due, _, task, callback = heapq.heappop(self._queue)
                if task.cancelled:
                    continue
                self._now = due
                fired += 1
                try:
                    callback()
                except Exception:
                    logger.exception("Scheduled callback %r failed", callback)
        finally:
            self._now = target
        return fired
