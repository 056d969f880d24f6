"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import random

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from tapcoins.database.models import Base
from tapcoins.engine.economy import UserProgress, new_user_progress
from tapcoins.engine.scheduler import ManualScheduler

# Binary-exact epoch so repeated 0.25 / 0.5 steps never drift
T0 = 1_700_000_000.0


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all TapCoins tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler(start=T0)


def make_progress(identity: str = "u1", **overrides) -> UserProgress:
    """Fresh progress at ``T0`` with *overrides* applied.  Usable as a factory."""
    from dataclasses import replace

    base = new_user_progress(
        identity,
        overrides.pop("display_name", f"Player {identity}"),
        username=overrides.pop("username", "player"),
        now=T0,
        max_energy=overrides.pop("max_energy", 4104),
        rng=random.Random(7),
    )
    return replace(base, **overrides) if overrides else base


@pytest.fixture
def progress() -> UserProgress:
    return make_progress()
