"""
tapcoins.engine.energy — Energy Refill Decisions & Polling
===========================================================

Energy is refilled to the maximum once a fixed period has passed since the
last refill.  No external timer callback is guaranteed, so the
:class:`EnergyRegenerator` polls on a short interval and hands each due
decision back to the session, which applies it between taps.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tapcoins.constants import REFILL_PERIOD_SECONDS, REFILL_POLL_SECONDS

if TYPE_CHECKING:
    from tapcoins.engine.scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)

__all__ = ["EnergyRegenerator", "RefillDecision", "check_refill", "format_remaining"]


@dataclass(frozen=True, slots=True)
class RefillDecision:
    """Result of a refill check.

    ``refill=True`` carries the values to apply; otherwise ``remaining``
    is the number of seconds until the next refill is due.
    """

    refill: bool
    new_energy: int | None = None
    new_last_refresh_at: float | None = None
    remaining: float = 0.0


def check_refill(
    now: float,
    last_refresh_at: float,
    max_energy: int,
    period: float = REFILL_PERIOD_SECONDS,
) -> RefillDecision:
    """Decide whether energy is due for a refill at *now* (epoch seconds)."""
    elapsed = now - last_refresh_at
    if elapsed >= period:
        return RefillDecision(refill=True, new_energy=max_energy, new_last_refresh_at=now)
    return RefillDecision(refill=False, remaining=period - elapsed)


def format_remaining(decision: RefillDecision) -> str:
    """Human countdown, e.g. ``"1h 59m until refresh"``."""
    if decision.refill or decision.remaining <= 0:
        return "Ready to refresh!"
    total_minutes = int(decision.remaining // 60)
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m until refresh"


class EnergyRegenerator:
    """Polls for due refills through a :class:`Scheduler`.

    *poll* is invoked once on :meth:`start` and then every *interval*
    seconds until :meth:`stop`.  It runs on the scheduler's thread of
    control, so it never interleaves with a tap.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        poll: Callable[[], object],
        *,
        interval: float = REFILL_POLL_SECONDS,
    ) -> None:
        self._scheduler = scheduler
        self._poll = poll
        self.interval = interval
        self._task: ScheduledTask | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.cancelled

    def start(self) -> None:
        if self.running:
            return
        self._safe_poll()
        self._task = self._scheduler.call_every(self.interval, self._safe_poll)
        logger.debug("Energy regenerator polling every %.0fs", self.interval)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def _safe_poll(self) -> None:
        try:
            self._poll()
        except Exception:
            logger.exception("Energy refill poll failed")
