"""
tests/test_gateways.py — Contract Tests for Every PersistenceGateway
=====================================================================

The same scenarios run against the in-memory, JSON-file and SQL stores.
Uses an in-memory SQLite database via the shared conftest fixtures.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import patch

import pytest
from conftest import T0, make_progress
from sqlalchemy.exc import OperationalError

from tapcoins.errors import PersistenceUnavailable, UserNotFound
from tapcoins.services.gateway import (
    IncrementalUpdate,
    progress_from_document,
    progress_to_document,
)
from tapcoins.services.memory_gateway import InMemoryGateway, JsonFileGateway
from tapcoins.services.sql_gateway import SqlGateway


def run_async(coro):
    """Run an async coroutine in a fresh event loop."""
    return asyncio.run(coro)


@pytest.fixture(params=["memory", "file", "sql"])
def gateway(request, tmp_path, db_engine):
    if request.param == "memory":
        return InMemoryGateway()
    if request.param == "file":
        return JsonFileGateway(tmp_path / "store.json")
    return SqlGateway(db_engine)


async def _seed(gateway, identity="u1", **overrides):
    state = make_progress(identity, **overrides)
    await gateway.create_user(state)
    return state


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class TestUsers:
    def test_load_missing_raises_user_not_found(self, gateway):
        with pytest.raises(UserNotFound):
            run_async(gateway.load_user("ghost"))

    def test_create_then_load_round_trip(self, gateway):
        async def _go():
            state = await _seed(gateway, achievements=("first_tap",), coins=101, total_taps=1)
            return state, await gateway.load_user("u1")

        created, loaded = run_async(_go())
        assert loaded == created

    def test_incremental_update_adds_deltas_and_overwrites(self, gateway):
        async def _go():
            await _seed(gateway)
            await gateway.apply_incremental_update("u1", IncrementalUpdate(
                coins_delta=105, taps_delta=5, energy_delta=-5,
                level=1, rank="Beginner", achievements=("first_tap",),
                touched_at=T0 + 1,
            ))
            await gateway.apply_incremental_update("u1", IncrementalUpdate(
                coins_delta=2, taps_delta=2, energy_delta=-2,
            ))
            return await gateway.load_user("u1")

        loaded = run_async(_go())
        assert loaded.coins == 107
        assert loaded.total_taps == 7
        assert loaded.energy == 4104 - 7
        assert loaded.achievements == ("first_tap",)
        assert loaded.last_active_at == T0 + 1

    def test_energy_reset_applies_before_deltas(self, gateway):
        async def _go():
            await _seed(gateway, energy=10)
            await gateway.apply_incremental_update("u1", IncrementalUpdate(
                energy_reset=4104, energy_refreshed_at=T0 + 7200, energy_delta=-3,
            ))
            return await gateway.load_user("u1")

        loaded = run_async(_go())
        assert loaded.energy == 4101
        assert loaded.last_energy_refresh_at == T0 + 7200

    def test_energy_is_clamped(self, gateway):
        async def _go():
            await _seed(gateway, energy=2)
            await gateway.apply_incremental_update("u1", IncrementalUpdate(energy_delta=-5))
            low = (await gateway.load_user("u1")).energy
            await gateway.apply_incremental_update("u1", IncrementalUpdate(energy_delta=10_000))
            return low, (await gateway.load_user("u1")).energy

        assert run_async(_go()) == (0, 4104)

    def test_update_for_missing_user(self, gateway):
        with pytest.raises(UserNotFound):
            run_async(gateway.apply_incremental_update("ghost", IncrementalUpdate(coins_delta=1)))

    def test_touch_and_refresh(self, gateway):
        async def _go():
            await _seed(gateway, energy=3)
            await gateway.touch_user("u1", display_name="New Name", username="newbie", at=T0 + 5)
            await gateway.refresh_energy("u1", energy=4104, at=T0 + 7200)
            return await gateway.load_user("u1")

        loaded = run_async(_go())
        assert loaded.display_name == "New Name"
        assert loaded.username == "newbie"
        assert loaded.last_active_at == T0 + 5
        assert loaded.energy == 4104
        assert loaded.last_energy_refresh_at == T0 + 7200

    def test_credit_referral(self, gateway):
        async def _go():
            referrer = await _seed(gateway, "ref")
            credited = await gateway.credit_referral(referrer.referral_code)
            unknown = await gateway.credit_referral("NOPE00000")
            return credited, unknown, await gateway.load_user("ref")

        credited, unknown, loaded = run_async(_go())
        assert credited == "ref"
        assert unknown is None
        assert loaded.referral_count == 1


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------
class TestLeaderboard:
    def test_top_ordered_by_coins_with_positions(self, gateway):
        async def _go():
            for identity, coins in (("a", 10), ("b", 30), ("c", 20)):
                await gateway.upsert_leaderboard_entry(
                    identity, coins=coins, total_taps=coins, display_name=identity, username=None,
                )
            return await gateway.query_top_leaderboard(2)

        top = run_async(_go())
        assert [(e.identity, e.position) for e in top] == [("b", 1), ("c", 2)]

    def test_upsert_overwrites_and_ties_follow_update_order(self, gateway):
        async def _go():
            for identity in ("a", "b"):
                await gateway.upsert_leaderboard_entry(
                    identity, coins=5, total_taps=5, display_name=identity, username=None,
                )
            await gateway.upsert_leaderboard_entry(
                "a", coins=5, total_taps=6, display_name="A!", username="a",
            )
            return await gateway.query_top_leaderboard(10)

        top = run_async(_go())
        assert [e.identity for e in top] == ["b", "a"]
        assert top[1].display_name == "A!"
        assert top[1].total_taps == 6


# ---------------------------------------------------------------------------
# Store-specific behaviour
# ---------------------------------------------------------------------------
class TestInMemoryFailures:
    def test_fail_next_raises_then_recovers(self):
        gw = InMemoryGateway()

        async def _go():
            await _seed(gw)
            gw.fail_next()
            with pytest.raises(PersistenceUnavailable) as exc_info:
                await gw.load_user("u1")
            assert isinstance(exc_info.value.cause, ConnectionError)
            return await gw.load_user("u1")

        assert run_async(_go()).identity == "u1"

    def test_offline_store_records_nothing(self):
        gw = InMemoryGateway()

        async def _go():
            await _seed(gw)
            gw.available = False
            with pytest.raises(PersistenceUnavailable):
                await gw.apply_incremental_update("u1", IncrementalUpdate(coins_delta=1))

        run_async(_go())
        assert gw.updates == []
        assert gw.users["u1"]["coins"] == 0


class TestJsonFile:
    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "store.json"

        async def _write():
            gw = JsonFileGateway(path)
            await _seed(gw)
            await gw.apply_incremental_update("u1", IncrementalUpdate(coins_delta=7))
            await gw.upsert_leaderboard_entry(
                "u1", coins=7, total_taps=7, display_name="P", username=None,
            )

        async def _read():
            gw = JsonFileGateway(path)
            await gw.upsert_leaderboard_entry(
                "u2", coins=7, total_taps=7, display_name="Q", username=None,
            )
            return await gw.load_user("u1"), await gw.query_top_leaderboard(5)

        run_async(_write())
        loaded, top = run_async(_read())
        assert loaded.coins == 7
        assert [e.identity for e in top] == ["u1", "u2"]
        assert json.loads(path.read_text(encoding="utf-8"))["users"]["u1"]["coins"] == 7

    def test_write_failure_keeps_previous_document(self, tmp_path):
        gw = JsonFileGateway(tmp_path / "store.json")

        async def _go():
            await _seed(gw)
            with patch("tapcoins.services.memory_gateway.os.replace", side_effect=OSError("disk")):
                with pytest.raises(PersistenceUnavailable):
                    await gw.apply_incremental_update("u1", IncrementalUpdate(coins_delta=3))
            return await gw.load_user("u1")

        assert run_async(_go()).coins == 0

    def test_failed_create_leaves_no_user_behind(self, tmp_path):
        path = tmp_path / "store.json"
        gw = JsonFileGateway(path)

        async def _go():
            with patch("tapcoins.services.memory_gateway.os.replace", side_effect=OSError("disk")):
                with pytest.raises(PersistenceUnavailable):
                    await gw.create_user(make_progress())
            with pytest.raises(UserNotFound):
                await gw.load_user("u1")

        run_async(_go())
        assert gw.users == {}
        assert not path.exists()

    def test_failed_referral_credit_is_not_counted(self, tmp_path):
        gw = JsonFileGateway(tmp_path / "store.json")

        async def _go():
            referrer = await _seed(gw)
            with patch("tapcoins.services.memory_gateway.os.replace", side_effect=OSError("disk")):
                with pytest.raises(PersistenceUnavailable):
                    await gw.credit_referral(referrer.referral_code)
            await gw.credit_referral(referrer.referral_code)
            return await gw.load_user("u1")

        assert run_async(_go()).referral_count == 1

    def test_failed_touch_and_board_writes_roll_back(self, tmp_path):
        gw = JsonFileGateway(tmp_path / "store.json")

        async def _go():
            await _seed(gw)
            with patch("tapcoins.services.memory_gateway.os.replace", side_effect=OSError("disk")):
                with pytest.raises(PersistenceUnavailable):
                    await gw.touch_user("u1", display_name="New", username=None, at=T0 + 5)
                with pytest.raises(PersistenceUnavailable):
                    await gw.refresh_energy("u1", energy=1, at=T0 + 5)
                with pytest.raises(PersistenceUnavailable):
                    await gw.upsert_leaderboard_entry(
                        "u1", coins=9, total_taps=9, display_name="New", username=None,
                    )
            return await gw.load_user("u1"), await gw.query_top_leaderboard(5)

        loaded, top = run_async(_go())
        assert loaded.display_name != "New"
        assert loaded.energy == make_progress().energy
        assert top == []


class TestSqlErrors:
    def test_sqlalchemy_errors_become_persistence_unavailable(self, db_engine):
        gw = SqlGateway(db_engine)
        with patch(
            "tapcoins.services.sql_gateway.load_user_row",
            side_effect=OperationalError("SELECT", {}, Exception("db down")),
        ):
            with pytest.raises(PersistenceUnavailable) as exc_info:
                run_async(gw.load_user("u1"))
        assert exc_info.value.operation == "load_user"


class TestDocumentMapping:
    def test_camel_case_keys(self):
        doc = progress_to_document(make_progress(coins=3, total_taps=3))
        assert doc["totalTaps"] == 3
        assert doc["lastEnergyRefresh"] == T0
        assert progress_from_document(doc) == make_progress(coins=3, total_taps=3)

    def test_missing_fields_take_defaults(self):
        state = progress_from_document({"identity": "x"}, now=T0)
        assert state.energy == state.max_energy == 4104
        assert state.level == 1
        assert state.rank == "Beginner"
        assert state.last_energy_refresh_at == T0
