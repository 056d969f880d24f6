"""
tapcoins.services.gateway — Persistence Gateway Interface
==========================================================

The only surface through which the engine touches the remote store.
Implementations are chosen once at construction (see
:mod:`tapcoins.services.backends`) and injected into the session; nothing
in the engine branches on which store is behind the interface.

Every operation may fail.  Implementations convert store-specific errors
into :class:`PersistenceUnavailable`; the session treats that as "local
state stays authoritative, the next flush tries again".

Wire format
-----------
A user document is a flat mapping keyed by identity with camelCase field
names (``coins``, ``totalTaps``, ``energy``, ``lastEnergyRefresh`` …).
Leaderboard rows are a separate collection keyed by identity.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from tapcoins.constants import DEFAULT_MAX_ENERGY, DEFAULT_RANK
from tapcoins.engine.economy import UserProgress
from tapcoins.engine.leaderboard import LeaderboardEntry
from tapcoins.errors import PersistenceUnavailable, UserNotFound

__all__ = [
    "IncrementalUpdate",
    "PersistenceGateway",
    "PersistenceUnavailable",
    "UserNotFound",
    "apply_update_to_document",
    "progress_from_document",
    "progress_to_document",
]


# ---------------------------------------------------------------------------
# IncrementalUpdate — one all-or-nothing write against a user document
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class IncrementalUpdate:
    """Deltas plus last-write-wins overwrites for one user document.

    Order of application: ``energy_reset`` (if any) replaces the stored
    energy first, then every ``*_delta`` is added, then the overwrite
    fields are set.  Deltas commute, so two updates applied in either
    order produce the same counters.
    """

    coins_delta: int = 0
    taps_delta: int = 0
    energy_delta: int = 0
    energy_depletions_delta: int = 0
    energy_reset: int | None = None
    energy_refreshed_at: float | None = None
    level: int | None = None
    rank: str | None = None
    achievements: tuple[str, ...] | None = None
    touched_at: float | None = None

    @property
    def has_deltas(self) -> bool:
        return any((
            self.coins_delta,
            self.taps_delta,
            self.energy_delta,
            self.energy_depletions_delta,
        ))

    @property
    def is_empty(self) -> bool:
        return not self.has_deltas and all(
            value is None
            for value in (
                self.energy_reset,
                self.energy_refreshed_at,
                self.level,
                self.rank,
                self.achievements,
            )
        )


# ---------------------------------------------------------------------------
# Document mapping
# ---------------------------------------------------------------------------
def progress_to_document(state: UserProgress) -> dict[str, Any]:
    """Serialize *state* into the flat wire document."""
    return {
        "identity": state.identity,
        "displayName": state.display_name,
        "username": state.username,
        "coins": state.coins,
        "totalTaps": state.total_taps,
        "energy": state.energy,
        "maxEnergy": state.max_energy,
        "lastEnergyRefresh": state.last_energy_refresh_at,
        "energyDepletions": state.energy_depletions,
        "level": state.level,
        "rank": state.rank,
        "achievements": list(state.achievements),
        "referralCode": state.referral_code,
        "referralCount": state.referral_count,
        "referredBy": state.referred_by,
        "joinDate": state.created_at,
        "lastActive": state.last_active_at,
    }


def progress_from_document(doc: dict[str, Any], *, now: float | None = None) -> UserProgress:
    """Inverse of :func:`progress_to_document`; missing fields take defaults."""
    max_energy = int(doc.get("maxEnergy") or DEFAULT_MAX_ENERGY)
    return UserProgress(
        identity=str(doc["identity"]),
        display_name=doc.get("displayName") or "",
        username=doc.get("username"),
        coins=int(doc.get("coins") or 0),
        total_taps=int(doc.get("totalTaps") or 0),
        energy=int(doc["energy"]) if doc.get("energy") is not None else max_energy,
        max_energy=max_energy,
        last_energy_refresh_at=float(
            doc["lastEnergyRefresh"] if doc.get("lastEnergyRefresh") is not None
            else (now or 0.0)
        ),
        energy_depletions=int(doc.get("energyDepletions") or 0),
        level=int(doc.get("level") or 1),
        rank=doc.get("rank") or DEFAULT_RANK,
        achievements=tuple(dict.fromkeys(doc.get("achievements") or ())),
        referral_code=doc.get("referralCode") or "",
        referral_count=int(doc.get("referralCount") or 0),
        referred_by=doc.get("referredBy"),
        created_at=doc.get("joinDate"),
        last_active_at=doc.get("lastActive"),
    )


def apply_update_to_document(doc: dict[str, Any], update: IncrementalUpdate) -> None:
    """Apply *update* to a wire document in place (document-store semantics)."""
    max_energy = int(doc.get("maxEnergy") or DEFAULT_MAX_ENERGY)
    energy = update.energy_reset if update.energy_reset is not None else int(doc.get("energy") or 0)
    doc["energy"] = min(max(energy + update.energy_delta, 0), max_energy)
    doc["coins"] = int(doc.get("coins") or 0) + update.coins_delta
    doc["totalTaps"] = int(doc.get("totalTaps") or 0) + update.taps_delta
    doc["energyDepletions"] = (
        int(doc.get("energyDepletions") or 0) + update.energy_depletions_delta
    )
    if update.energy_refreshed_at is not None:
        doc["lastEnergyRefresh"] = update.energy_refreshed_at
    if update.level is not None:
        doc["level"] = update.level
    if update.rank is not None:
        doc["rank"] = update.rank
    if update.achievements is not None:
        doc["achievements"] = list(update.achievements)
    if update.touched_at is not None:
        doc["lastActive"] = update.touched_at


# ---------------------------------------------------------------------------
# The interface
# ---------------------------------------------------------------------------
class PersistenceGateway(ABC):
    """Remote store consumed by :class:`tapcoins.services.session.TapSession`.

    All methods are coroutines and may raise :class:`PersistenceUnavailable`.
    """

    name: str = "abstract"

    @abstractmethod
    async def load_user(self, identity: str) -> UserProgress:
        """Return the stored progress; raise :class:`UserNotFound` if absent."""

    @abstractmethod
    async def create_user(self, progress: UserProgress) -> None:
        """Insert a brand-new user document."""

    @abstractmethod
    async def apply_incremental_update(self, identity: str, update: IncrementalUpdate) -> None:
        """Apply one batched update atomically."""

    @abstractmethod
    async def upsert_leaderboard_entry(
        self,
        identity: str,
        *,
        coins: int,
        total_taps: int,
        display_name: str,
        username: str | None,
    ) -> None:
        """Create or replace the leaderboard row for *identity*."""

    @abstractmethod
    async def query_top_leaderboard(self, limit: int) -> list[LeaderboardEntry]:
        """Rows ordered by coins descending, positions 1..limit."""

    @abstractmethod
    async def touch_user(
        self, identity: str, *, display_name: str, username: str | None, at: float,
    ) -> None:
        """Refresh the profile mirror and last-active time on session start."""

    @abstractmethod
    async def refresh_energy(self, identity: str, *, energy: int, at: float) -> None:
        """Overwrite energy and the refill timestamp."""

    @abstractmethod
    async def credit_referral(self, referral_code: str) -> str | None:
        """Increment the referral count of the code's owner; return their identity."""

    async def close(self) -> None:  # noqa: B027
        """Release store resources.  Default: nothing to release."""
