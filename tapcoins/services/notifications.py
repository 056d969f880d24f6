"""
tapcoins.services.notifications — Transient Achievement Popups
===============================================================

At most one achievement notification is visible at a time.  Showing a new
one replaces the current popup and restarts its auto-clear timer; listeners
receive the achievement on show and ``None`` on clear.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from tapcoins.constants import POPUP_SECONDS

if TYPE_CHECKING:
    from tapcoins.engine.achievements import Achievement
    from tapcoins.engine.scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)

Listener = Callable[["Achievement | None"], None]


class AchievementNotifier:
    """Single-slot notification stream with timed auto-clear."""

    def __init__(self, scheduler: Scheduler, *, duration: float = POPUP_SECONDS) -> None:
        self._scheduler = scheduler
        self.duration = duration
        self.current: Achievement | None = None
        self._timer: ScheduledTask | None = None
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def show(self, achievement: Achievement) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self.current = achievement
        self._timer = self._scheduler.call_later(self.duration, self.clear)
        self._emit(achievement)

    def clear(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.current is None:
            return
        self.current = None
        self._emit(None)

    def close(self) -> None:
        self.clear()
        self._listeners.clear()

    def _emit(self, achievement: Achievement | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(achievement)
            except Exception:
                logger.exception("Achievement listener %r failed", listener)
