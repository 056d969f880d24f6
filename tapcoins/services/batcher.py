"""
tapcoins.services.batcher — Debounced Write Accumulation
=========================================================

Taps never wait on the store.  Each accepted tap adds its deltas to a
:class:`PendingWriteBatch` and re-arms a short debounce timer; once the
timer elapses with no newer tap, the whole batch goes out as a single
:class:`~tapcoins.services.gateway.IncrementalUpdate`.

Rules:

* Deltas that arrive while a flush is in flight stay in the accumulator and
  form the next batch, sent after the in-flight flush settles.
* A failed flush puts its deltas back into the accumulator.  It is not
  retried on its own; the next tap's timer sends it again.
* Overwrite fields (level, rank, achievement list) are read from the
  session's *latest* state when the flush starts, and only sent when they
  differ from what the store last acknowledged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from tapcoins.constants import FLUSH_DELAY_SECONDS
from tapcoins.errors import PersistenceUnavailable, UserNotFound
from tapcoins.services.gateway import IncrementalUpdate

if TYPE_CHECKING:
    from tapcoins.engine.scheduler import ScheduledTask, Scheduler
    from tapcoins.services.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

OVERWRITE_FIELDS: tuple[str, ...] = ("level", "rank", "achievements")


@dataclass(slots=True)
class PendingWriteBatch:
    """Not-yet-persisted deltas since the last successful flush."""

    coins_delta: int = 0
    taps_delta: int = 0
    energy_delta: int = 0
    depletions_delta: int = 0
    energy_reset: int | None = None
    energy_refreshed_at: float | None = None

    def is_empty(self) -> bool:
        return (
            not self.coins_delta
            and not self.taps_delta
            and not self.energy_delta
            and not self.depletions_delta
            and self.energy_reset is None
        )

    def absorb_older(self, older: PendingWriteBatch) -> PendingWriteBatch:
        """Merge a batch that was taken out *before* this one.

        Counters add up.  A refill recorded in this (newer) batch supersedes
        the older batch's energy movement.
        """
        merged = PendingWriteBatch(
            coins_delta=older.coins_delta + self.coins_delta,
            taps_delta=older.taps_delta + self.taps_delta,
            depletions_delta=older.depletions_delta + self.depletions_delta,
        )
        if self.energy_reset is not None:
            merged.energy_reset = self.energy_reset
            merged.energy_refreshed_at = self.energy_refreshed_at
            merged.energy_delta = self.energy_delta
        else:
            merged.energy_reset = older.energy_reset
            merged.energy_refreshed_at = older.energy_refreshed_at
            merged.energy_delta = older.energy_delta + self.energy_delta
        return merged


class WriteBatcher:
    """Debounce-with-accumulation writer for one user document.

    Parameters
    ----------
    gateway : Store receiving the batched updates.
    identity : User document the batches apply to.
    scheduler : Source of timers and background tasks.
    delay : Debounce delay in seconds.
    overwrites : Returns the latest ``{"level", "rank", "achievements"}``
        values; called when a flush starts.
    after_flush : Awaited after every successful flush (leaderboard push).
        Returning ``False`` marks it as failed; it is then retried on the
        next flush, even one with nothing else to send.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        identity: str,
        scheduler: Scheduler,
        *,
        delay: float = FLUSH_DELAY_SECONDS,
        overwrites: Callable[[], dict[str, Any]] | None = None,
        after_flush: Callable[[], Awaitable[bool | None]] | None = None,
    ) -> None:
        self._gateway = gateway
        self.identity = identity
        self._scheduler = scheduler
        self.delay = delay
        self._overwrites = overwrites
        self._after_flush = after_flush

        self.pending = PendingWriteBatch()
        self._timer: ScheduledTask | None = None
        self._inflight: asyncio.Task | None = None
        self._rerun = False
        self._acknowledged: dict[str, Any] = {}
        self._after_flush_failed = False
        self._closed = False

        self.flush_count = 0
        self.failure_count = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def flushing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None and not self._timer.cancelled

    def acknowledge(self, **values: Any) -> None:
        """Record overwrite values the store is known to hold already."""
        self._acknowledged.update(values)

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------
    def add(
        self,
        *,
        coins: int = 0,
        taps: int = 0,
        energy: int = 0,
        depletions: int = 0,
    ) -> None:
        """Accumulate deltas and restart the debounce timer."""
        if self._closed:
            raise RuntimeError("WriteBatcher is closed")
        self.pending.coins_delta += coins
        self.pending.taps_delta += taps
        self.pending.energy_delta += energy
        self.pending.depletions_delta += depletions
        self._arm()

    def mark_refill(self, energy: int, at: float) -> None:
        """Replace stored energy with *energy*; earlier energy deltas are void."""
        if self._closed:
            raise RuntimeError("WriteBatcher is closed")
        self.pending.energy_reset = energy
        self.pending.energy_refreshed_at = at
        self.pending.energy_delta = 0
        self._arm()

    def touch(self) -> None:
        """Restart the timer without new deltas (overwrite fields changed)."""
        if not self._closed:
            self._arm()

    def _arm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._scheduler.call_later(self.delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self.flushing:
            self._rerun = True
            return
        self._inflight = self._scheduler.spawn(
            self._flush_loop(), name=f"flush-{self.identity}",
        )

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------
    async def _flush_loop(self) -> None:
        try:
            while True:
                self._rerun = False
                await self._flush_once()
                if not self._rerun:
                    break
        finally:
            self._inflight = None

    def _changed_overwrites(self) -> dict[str, Any]:
        if self._overwrites is None:
            return {}
        latest = self._overwrites()
        return {
            key: value
            for key, value in latest.items()
            if key in OVERWRITE_FIELDS and self._acknowledged.get(key) != value
        }

    async def _flush_once(self) -> bool:
        batch = self.pending
        overwrites = self._changed_overwrites()
        if batch.is_empty() and not overwrites:
            if self._after_flush_failed:
                await self._run_after_flush()
            return True

        self.pending = PendingWriteBatch()
        update = IncrementalUpdate(
            coins_delta=batch.coins_delta,
            taps_delta=batch.taps_delta,
            energy_delta=batch.energy_delta,
            energy_depletions_delta=batch.depletions_delta,
            energy_reset=batch.energy_reset,
            energy_refreshed_at=batch.energy_refreshed_at,
            touched_at=self._scheduler.now(),
            **overwrites,
        )
        try:
            await self._gateway.apply_incremental_update(self.identity, update)
        except (PersistenceUnavailable, UserNotFound) as exc:
            self.failure_count += 1
            self.pending = self.pending.absorb_older(batch)
            logger.warning(
                "Flush for %s failed, %d coins / %d energy kept pending: %s",
                self.identity, self.pending.coins_delta, self.pending.energy_delta, exc,
            )
            return False

        self.flush_count += 1
        self._acknowledged.update(overwrites)
        logger.debug(
            "Flushed %s: coins%+d taps%+d energy%+d depletions%+d %s",
            self.identity, update.coins_delta, update.taps_delta,
            update.energy_delta, update.energy_depletions_delta, sorted(overwrites),
        )
        await self._run_after_flush()
        return True

    async def _run_after_flush(self) -> None:
        if self._after_flush is not None:
            self._after_flush_failed = await self._after_flush() is False

    async def drain(self) -> None:
        """Wait for the in-flight flush (and any re-run it chains) to settle."""
        while self._inflight is not None:
            task = self._inflight
            await asyncio.gather(task, return_exceptions=True)
            if self._inflight is task:
                # cancelled before its first step, so _flush_loop never cleared it
                self._inflight = None

    async def flush_now(self) -> None:
        """Cancel the timer and flush whatever is pending, waiting for the result."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await self.drain()
        self._inflight = self._scheduler.spawn(
            self._flush_loop(), name=f"flush-{self.identity}",
        )
        await self.drain()

    async def close(self, *, flush: bool = True) -> None:
        """Cancel the pending timer; optionally send the remaining batch first."""
        if self._closed:
            return
        if flush:
            await self.flush_now()
        else:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            await self.drain()
        self._closed = True
        if not self.pending.is_empty():
            logger.warning(
                "Session for %s closed with unsent deltas (coins%+d)",
                self.identity, self.pending.coins_delta,
            )
