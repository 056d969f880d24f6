"""
tapcoins.engine.leaderboard — Ranked Projection of Players
===========================================================

The leaderboard is a projection, not authoritative state: entries are
sorted by coins descending, ties keep their insertion / update order, and
positions are reassigned after every change.  Entries outside the top-N
window are kept, so the player's own row can always be rendered.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from tapcoins.constants import LEADERBOARD_SIZE

if TYPE_CHECKING:
    from tapcoins.engine.economy import UserProgress

__all__ = ["LeaderboardEntry", "LeaderboardProjector", "LeaderboardSnapshot"]


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    identity: str
    display_name: str
    username: str | None = None
    coins: int = 0
    total_taps: int = 0
    position: int = 0

    @classmethod
    def from_progress(cls, state: UserProgress) -> LeaderboardEntry:
        return cls(
            identity=state.identity,
            display_name=state.display_name,
            username=state.username,
            coins=state.coins,
            total_taps=state.total_taps,
        )


@dataclass(frozen=True, slots=True)
class LeaderboardSnapshot:
    """Top-N view plus the caller's own row when it falls outside the window."""

    top: tuple[LeaderboardEntry, ...]
    own_entry: LeaderboardEntry | None = None
    own_position: int | None = None


class LeaderboardProjector:
    """Keeps every known entry ordered; exposes a top-N window.

    Usage::

        board = LeaderboardProjector(size=50)
        board.replace_all(remote_rows)
        board.upsert(LeaderboardEntry.from_progress(state))
        board.position_of(state.identity)   # 1-based, None outside the window
    """

    def __init__(self, size: int = LEADERBOARD_SIZE) -> None:
        if size <= 0:
            raise ValueError("size must be positive")
        self.size = size
        self._entries: list[LeaderboardEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def replace_all(self, entries: Iterable[LeaderboardEntry]) -> list[LeaderboardEntry]:
        """Discard the projection and rebuild it from *entries* (remote order kept for ties)."""
        deduped: dict[str, LeaderboardEntry] = {}
        for entry in entries:
            deduped.pop(entry.identity, None)
            deduped[entry.identity] = entry
        self._entries = list(deduped.values())
        self._reorder()
        return self.top_n()

    def upsert(self, entry: LeaderboardEntry) -> list[LeaderboardEntry]:
        """Replace any row with the same identity, re-sort, return the top N."""
        self._entries = [e for e in self._entries if e.identity != entry.identity]
        self._entries.append(entry)
        self._reorder()
        return self.top_n()

    def _reorder(self) -> None:
        # list.sort is stable, so equal coins keep insertion/update order
        self._entries.sort(key=lambda e: e.coins, reverse=True)
        self._entries = [
            e if e.position == i else replace(e, position=i)
            for i, e in enumerate(self._entries, start=1)
        ]

    def top_n(self, n: int | None = None) -> list[LeaderboardEntry]:
        limit = self.size if n is None else min(n, self.size)
        return self._entries[:limit]

    def position_of(self, identity: str) -> int | None:
        """1-based position, or None when outside the maintained window."""
        for entry in self._entries[: self.size]:
            if entry.identity == identity:
                return entry.position
        return None

    def entry_for(self, identity: str) -> LeaderboardEntry | None:
        """The raw entry for *identity*, even when it is outside the window."""
        for entry in self._entries:
            if entry.identity == identity:
                return entry
        return None

    def snapshot(self, identity: str | None = None) -> LeaderboardSnapshot:
        top = tuple(self.top_n())
        if identity is None:
            return LeaderboardSnapshot(top=top)
        position = self.position_of(identity)
        own = None if position is not None else self.entry_for(identity)
        return LeaderboardSnapshot(top=top, own_entry=own, own_position=position)
