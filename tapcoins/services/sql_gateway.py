"""
tapcoins.services.sql_gateway — SQLAlchemy-Backed Store
========================================================

Real-store adapter over the ``users`` and ``leaderboard_entries`` tables.
Each gateway call opens one session on a worker thread via
:func:`~tapcoins.database.engine.run_db` and commits once, so a batched
update is all-or-nothing.  Counter deltas are written as
``column = column + :delta`` so concurrent writers never lose increments.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tapcoins.database.engine import get_session, run_db
from tapcoins.database.models import LeaderboardRow, User
from tapcoins.engine.economy import UserProgress
from tapcoins.engine.leaderboard import LeaderboardEntry
from tapcoins.errors import PersistenceUnavailable, UserNotFound
from tapcoins.services.gateway import IncrementalUpdate, PersistenceGateway

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


def _row_to_progress(row: User) -> UserProgress:
    return UserProgress(
        identity=row.id,
        display_name=row.display_name,
        username=row.username,
        coins=row.coins,
        total_taps=row.total_taps,
        energy=row.energy,
        max_energy=row.max_energy,
        last_energy_refresh_at=row.last_energy_refresh_at,
        energy_depletions=row.energy_depletions,
        level=row.level,
        rank=row.rank,
        achievements=tuple(dict.fromkeys(row.achievements or ())),
        referral_code=row.referral_code,
        referral_count=row.referral_count,
        referred_by=row.referred_by,
        created_at=row.created_at,
        last_active_at=row.last_active_at,
    )


# ---------------------------------------------------------------------------
# Synchronous workers (run on a thread via run_db)
# ---------------------------------------------------------------------------
def load_user_row(engine: Engine, identity: str) -> UserProgress:
    with Session(engine) as session:
        row = session.get(User, identity)
        if row is None:
            raise UserNotFound(identity)
        return _row_to_progress(row)


def insert_user_row(engine: Engine, progress: UserProgress) -> None:
    with get_session(engine) as session:
        session.add(User(
            id=progress.identity,
            display_name=progress.display_name,
            username=progress.username,
            coins=progress.coins,
            total_taps=progress.total_taps,
            energy=progress.energy,
            max_energy=progress.max_energy,
            last_energy_refresh_at=progress.last_energy_refresh_at,
            energy_depletions=progress.energy_depletions,
            level=progress.level,
            rank=progress.rank,
            achievements=list(progress.achievements),
            referral_code=progress.referral_code,
            referral_count=progress.referral_count,
            referred_by=progress.referred_by,
            created_at=progress.created_at,
            last_active_at=progress.last_active_at,
        ))


def apply_update_row(engine: Engine, identity: str, upd: IncrementalUpdate) -> None:
    energy_base = literal(upd.energy_reset) if upd.energy_reset is not None else User.energy
    energy = energy_base + upd.energy_delta
    values: dict = {
        "coins": User.coins + upd.coins_delta,
        "total_taps": User.total_taps + upd.taps_delta,
        "energy_depletions": User.energy_depletions + upd.energy_depletions_delta,
        "energy": case(
            (energy < 0, 0),
            (energy > User.max_energy, User.max_energy),
            else_=energy,
        ),
    }
    if upd.energy_refreshed_at is not None:
        values["last_energy_refresh_at"] = upd.energy_refreshed_at
    if upd.level is not None:
        values["level"] = upd.level
    if upd.rank is not None:
        values["rank"] = upd.rank
    if upd.achievements is not None:
        values["achievements"] = list(upd.achievements)
    if upd.touched_at is not None:
        values["last_active_at"] = upd.touched_at

    with get_session(engine) as session:
        result = session.execute(
            update(User)
            .where(User.id == identity)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise UserNotFound(identity)


def touch_user_row(
    engine: Engine, identity: str, display_name: str, username: str | None, at: float,
) -> None:
    with get_session(engine) as session:
        row = session.get(User, identity)
        if row is None:
            raise UserNotFound(identity)
        row.display_name = display_name
        if username:
            row.username = username
        row.last_active_at = at


def refresh_energy_row(engine: Engine, identity: str, energy: int, at: float) -> None:
    with get_session(engine) as session:
        result = session.execute(
            update(User)
            .where(User.id == identity)
            .values(energy=energy, last_energy_refresh_at=at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise UserNotFound(identity)


def credit_referral_row(engine: Engine, referral_code: str) -> str | None:
    with get_session(engine) as session:
        row = session.scalar(select(User).where(User.referral_code == referral_code))
        if row is None:
            return None
        row.referral_count += 1
        return row.id


def upsert_leaderboard_row(
    engine: Engine,
    identity: str,
    coins: int,
    total_taps: int,
    display_name: str,
    username: str | None,
) -> None:
    with get_session(engine) as session:
        revision = (session.scalar(select(func.max(LeaderboardRow.revision))) or 0) + 1
        row = session.get(LeaderboardRow, identity)
        if row is None:
            row = LeaderboardRow(user_id=identity)
            session.add(row)
        row.coins = coins
        row.total_taps = total_taps
        row.display_name = display_name
        row.username = username
        row.revision = revision
        row.updated_at = time.time()


def top_leaderboard_rows(engine: Engine, limit: int) -> list[LeaderboardEntry]:
    with Session(engine) as session:
        rows = session.scalars(
            select(LeaderboardRow)
            .order_by(LeaderboardRow.coins.desc(), LeaderboardRow.revision.asc())
            .limit(limit)
        ).all()
        return [
            LeaderboardEntry(
                identity=row.user_id,
                display_name=row.display_name,
                username=row.username,
                coins=row.coins,
                total_taps=row.total_taps,
                position=position,
            )
            for position, row in enumerate(rows, start=1)
        ]


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------
class SqlGateway(PersistenceGateway):
    """Gateway over a SQLAlchemy :class:`Engine`.

    Every :class:`SQLAlchemyError` is converted into
    :class:`PersistenceUnavailable`; :class:`UserNotFound` passes through.
    """

    name = "sql"

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def _call(self, operation: str, fn, *args):
        try:
            return await run_db(fn, self.engine, *args)
        except SQLAlchemyError as exc:
            raise PersistenceUnavailable(operation, exc) from exc

    async def load_user(self, identity: str) -> UserProgress:
        return await self._call("load_user", load_user_row, identity)

    async def create_user(self, progress: UserProgress) -> None:
        await self._call("create_user", insert_user_row, progress)

    async def apply_incremental_update(self, identity: str, update: IncrementalUpdate) -> None:
        await self._call("apply_incremental_update", apply_update_row, identity, update)

    async def touch_user(
        self, identity: str, *, display_name: str, username: str | None, at: float,
    ) -> None:
        await self._call("touch_user", touch_user_row, identity, display_name, username, at)

    async def refresh_energy(self, identity: str, *, energy: int, at: float) -> None:
        await self._call("refresh_energy", refresh_energy_row, identity, energy, at)

    async def credit_referral(self, referral_code: str) -> str | None:
        return await self._call("credit_referral", credit_referral_row, referral_code)

    async def upsert_leaderboard_entry(
        self,
        identity: str,
        *,
        coins: int,
        total_taps: int,
        display_name: str,
        username: str | None,
    ) -> None:
        await self._call(
            "upsert_leaderboard_entry", upsert_leaderboard_row,
            identity, coins, total_taps, display_name, username,
        )

    async def query_top_leaderboard(self, limit: int) -> list[LeaderboardEntry]:
        return await self._call("query_top_leaderboard", top_leaderboard_rows, limit)

    async def close(self) -> None:
        await run_db(self.engine.dispose)
        logger.info("Database engine disposed.")
