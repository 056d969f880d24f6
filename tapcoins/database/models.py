"""
tapcoins.database.models — SQLAlchemy 2.0 Data Models
======================================================

Relational rendition of the two document collections.

Tables:
- users               — One row per player identity (progress counters)
- leaderboard_entries — Ranked mirror of coins / taps, keyed by identity
"""

from __future__ import annotations

from sqlalchemy import JSON, Float, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tapcoins.constants import DEFAULT_MAX_ENERGY, DEFAULT_RANK


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all TapCoins ORM models."""


# ---------------------------------------------------------------------------
# Users — one row per player
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    username: Mapped[str | None] = mapped_column(String(64), default=None)
    coins: Mapped[int] = mapped_column(Integer, default=0)
    total_taps: Mapped[int] = mapped_column(Integer, default=0)
    energy: Mapped[int] = mapped_column(Integer, default=DEFAULT_MAX_ENERGY)
    max_energy: Mapped[int] = mapped_column(Integer, default=DEFAULT_MAX_ENERGY)
    last_energy_refresh_at: Mapped[float] = mapped_column(Float, default=0.0)
    energy_depletions: Mapped[int] = mapped_column(Integer, default=0)
    level: Mapped[int] = mapped_column(Integer, default=1)
    rank: Mapped[str] = mapped_column(String(32), default=DEFAULT_RANK)
    achievements: Mapped[list] = mapped_column(JSON, default=list)
    referral_code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    referral_count: Mapped[int] = mapped_column(Integer, default=0)
    referred_by: Mapped[str | None] = mapped_column(String(16), default=None)
    created_at: Mapped[float | None] = mapped_column(Float, default=None)
    last_active_at: Mapped[float | None] = mapped_column(Float, default=None)

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.display_name!r} coins={self.coins}>"


# ---------------------------------------------------------------------------
# Leaderboard — ranked projection mirror
# ---------------------------------------------------------------------------
class LeaderboardRow(Base):
    """Ordered by ``coins`` descending; ``revision`` breaks ties in update order."""

    __tablename__ = "leaderboard_entries"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    username: Mapped[str | None] = mapped_column(String(64), default=None)
    coins: Mapped[int] = mapped_column(Integer, default=0)
    total_taps: Mapped[int] = mapped_column(Integer, default=0)
    revision: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[float | None] = mapped_column(Float, default=None)

    __table_args__ = (
        Index("ix_leaderboard_coins_desc", "coins"),
    )

    def __repr__(self) -> str:
        return f"<LeaderboardRow user={self.user_id} coins={self.coins}>"
