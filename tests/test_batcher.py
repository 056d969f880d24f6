"""
tests/test_batcher.py — Debounced Write Batching
=================================================

Drives :class:`WriteBatcher` with a :class:`ManualScheduler` so debounce
timing is exact, against an :class:`InMemoryGateway` that records every
applied update.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import T0

from tapcoins.engine.scheduler import ManualScheduler
from tapcoins.services.batcher import PendingWriteBatch, WriteBatcher
from tapcoins.services.memory_gateway import InMemoryGateway


def run_async(coro):
    """Run an async coroutine in a fresh event loop."""
    return asyncio.run(coro)


class GatedGateway(InMemoryGateway):
    """Holds every incremental update until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.started = 0

    async def apply_incremental_update(self, identity, update):
        self.started += 1
        await self.gate.wait()
        await super().apply_incremental_update(identity, update)


def _setup(gateway=None, **kwargs):
    gw = gateway or InMemoryGateway()
    gw.users["u1"] = {
        "identity": "u1", "coins": 0, "totalTaps": 0, "energy": 4104, "maxEnergy": 4104,
    }
    scheduler = ManualScheduler(start=T0)
    batcher = WriteBatcher(gw, "u1", scheduler, delay=0.5, **kwargs)
    return gw, scheduler, batcher


# ---------------------------------------------------------------------------
# Accumulation and debounce
# ---------------------------------------------------------------------------
class TestDebounce:
    def test_burst_becomes_one_update(self):
        async def _go():
            gw, scheduler, batcher = _setup()
            for _ in range(3):
                batcher.add(coins=1, taps=1, energy=-1)
                scheduler.advance(0.25)
            scheduler.advance(0.5)
            await batcher.drain()
            return gw, batcher

        gw, batcher = run_async(_go())
        assert len(gw.updates) == 1
        _, update = gw.updates[0]
        assert (update.coins_delta, update.taps_delta, update.energy_delta) == (3, 3, -3)
        assert batcher.flush_count == 1
        assert gw.users["u1"]["coins"] == 3

    def test_each_add_restarts_the_timer(self):
        async def _go():
            gw, scheduler, batcher = _setup()
            batcher.add(coins=1)
            scheduler.advance(0.25)
            batcher.add(coins=1)
            scheduler.advance(0.25)
            assert gw.updates == []
            assert batcher.timer_armed
            scheduler.advance(0.25)
            await batcher.drain()
            return gw

        gw = run_async(_go())
        assert len(gw.updates) == 1

    def test_touched_at_is_flush_time(self):
        async def _go():
            gw, scheduler, batcher = _setup()
            batcher.add(coins=1)
            scheduler.advance(0.5)
            await batcher.drain()
            return gw

        _, update = run_async(_go()).updates[0]
        assert update.touched_at == T0 + 0.5

    def test_empty_timer_sends_nothing(self):
        async def _go():
            gw, scheduler, batcher = _setup()
            batcher.touch()
            scheduler.advance(1)
            await batcher.drain()
            return gw

        assert run_async(_go()).updates == []


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------
class TestFailure:
    def test_failed_batch_is_kept_and_not_retried_alone(self):
        async def _go():
            gw, scheduler, batcher = _setup()
            gw.fail_next()
            batcher.add(coins=101, taps=1, energy=-1)
            scheduler.advance(0.5)
            await batcher.drain()
            assert batcher.failure_count == 1
            assert batcher.pending.coins_delta == 101

            scheduler.advance(60)
            await batcher.drain()
            assert gw.updates == []

            batcher.add(coins=1, taps=1, energy=-1)
            scheduler.advance(0.5)
            await batcher.drain()
            return gw, batcher

        gw, batcher = run_async(_go())
        assert len(gw.updates) == 1
        _, update = gw.updates[0]
        assert (update.coins_delta, update.taps_delta, update.energy_delta) == (102, 2, -2)
        assert batcher.pending.is_empty()

    def test_failure_is_logged(self, caplog):
        async def _go():
            gw, scheduler, batcher = _setup()
            gw.available = False
            batcher.add(coins=1)
            scheduler.advance(0.5)
            await batcher.drain()

        run_async(_go())
        assert "Flush for u1 failed" in caplog.text


# ---------------------------------------------------------------------------
# In-flight flushes
# ---------------------------------------------------------------------------
class TestInFlight:
    def test_deltas_during_flight_form_the_next_batch(self):
        async def _go():
            gw, scheduler, batcher = _setup(GatedGateway())
            batcher.add(coins=1, taps=1, energy=-1)
            scheduler.advance(0.5)
            await asyncio.sleep(0)
            assert batcher.flushing

            batcher.add(coins=5, taps=5, energy=-5)
            scheduler.advance(0.5)
            assert gw.started == 1

            gw.gate.set()
            await batcher.drain()
            return gw, batcher

        gw, batcher = run_async(_go())
        deltas = [u.coins_delta for _, u in gw.updates]
        assert deltas == [1, 5]
        assert batcher.flush_count == 2
        assert gw.users["u1"]["coins"] == 6

    def test_failed_flush_merges_with_deltas_added_during_flight(self):
        async def _go():
            gw, scheduler, batcher = _setup(GatedGateway())
            gw.fail_next()
            batcher.add(coins=3, taps=3, energy=-3)
            scheduler.advance(0.5)
            await asyncio.sleep(0)
            batcher.add(coins=2, taps=2, energy=-2)
            gw.gate.set()
            await batcher.drain()
            return batcher

        batcher = run_async(_go())
        assert batcher.pending.coins_delta == 5
        assert batcher.pending.taps_delta == 5
        assert batcher.pending.energy_delta == -5


# ---------------------------------------------------------------------------
# Overwrites, refills, hooks
# ---------------------------------------------------------------------------
class TestOverwrites:
    def test_latest_overwrites_sent_only_when_changed(self):
        state = {"level": 1, "rank": "Beginner", "achievements": ()}

        async def _go():
            gw, scheduler, batcher = _setup(overwrites=lambda: dict(state))
            batcher.acknowledge(level=1, rank="Beginner", achievements=())
            batcher.add(coins=1)
            scheduler.advance(0.5)
            await batcher.drain()

            state["achievements"] = ("first_tap",)
            batcher.add(coins=100)
            state["level"] = 2
            scheduler.advance(0.5)
            await batcher.drain()

            batcher.add(coins=1)
            scheduler.advance(0.5)
            await batcher.drain()
            return gw

        first, second, third = (u for _, u in run_async(_go()).updates)
        assert first.level is None and first.achievements is None
        assert second.level == 2
        assert second.achievements == ("first_tap",)
        assert second.rank is None
        assert third.level is None and third.achievements is None

    def test_refill_supersedes_earlier_energy_deltas(self):
        async def _go():
            gw, scheduler, batcher = _setup()
            batcher.add(coins=2, taps=2, energy=-2)
            batcher.mark_refill(4104, T0 + 7200)
            batcher.add(coins=1, taps=1, energy=-1)
            scheduler.advance(0.5)
            await batcher.drain()
            return gw

        gw = run_async(_go())
        _, update = gw.updates[0]
        assert update.energy_reset == 4104
        assert update.energy_delta == -1
        assert update.coins_delta == 3
        assert gw.users["u1"]["energy"] == 4103

    def test_after_flush_runs_on_success_only(self):
        hook = AsyncMock()

        async def _go():
            gw, scheduler, batcher = _setup(after_flush=hook)
            gw.fail_next()
            batcher.add(coins=1)
            scheduler.advance(0.5)
            await batcher.drain()
            assert hook.await_count == 0
            batcher.add(coins=1)
            scheduler.advance(0.5)
            await batcher.drain()

        run_async(_go())
        assert hook.await_count == 1

    def test_failed_after_flush_retries_with_empty_batch(self):
        hook = AsyncMock(side_effect=[False, True])

        async def _go():
            gw, scheduler, batcher = _setup(after_flush=hook)
            batcher.add(coins=1)
            scheduler.advance(0.5)
            await batcher.drain()
            await batcher.flush_now()
            await batcher.flush_now()
            return gw

        gw = run_async(_go())
        assert hook.await_count == 2
        assert len(gw.updates) == 1


class TestPendingBatch:
    def test_absorb_older_adds_counters(self):
        newer = PendingWriteBatch(coins_delta=2, energy_delta=-2)
        merged = newer.absorb_older(PendingWriteBatch(coins_delta=3, energy_delta=-3))
        assert (merged.coins_delta, merged.energy_delta) == (5, -5)

    def test_newer_refill_wins(self):
        newer = PendingWriteBatch(energy_delta=-1, energy_reset=100, energy_refreshed_at=T0)
        merged = newer.absorb_older(PendingWriteBatch(energy_delta=-50))
        assert merged.energy_reset == 100
        assert merged.energy_delta == -1

    def test_older_refill_kept_when_newer_has_none(self):
        newer = PendingWriteBatch(energy_delta=-1)
        merged = newer.absorb_older(PendingWriteBatch(energy_reset=100, energy_refreshed_at=T0))
        assert merged.energy_reset == 100
        assert merged.energy_delta == -1


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------
class TestClose:
    def test_close_flushes_pending(self):
        async def _go():
            gw, scheduler, batcher = _setup()
            batcher.add(coins=4)
            await batcher.close()
            return gw, scheduler

        gw, scheduler = run_async(_go())
        assert [u.coins_delta for _, u in gw.updates] == [4]
        assert scheduler.pending == 0

    def test_close_without_flush_drops_timer(self, caplog):
        async def _go():
            gw, scheduler, batcher = _setup()
            batcher.add(coins=4)
            await batcher.close(flush=False)
            scheduler.advance(1)
            await asyncio.sleep(0)
            return gw

        assert run_async(_go()).updates == []
        assert "unsent deltas" in caplog.text

    def test_add_after_close_raises(self):
        async def _go():
            _, _, batcher = _setup()
            await batcher.close()
            with pytest.raises(RuntimeError):
                batcher.add(coins=1)
            await batcher.close()

        run_async(_go())

