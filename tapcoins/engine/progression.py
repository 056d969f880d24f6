"""
tapcoins.engine.progression — Level & Rank Step Functions
==========================================================

Pure functions over the tables in :mod:`tapcoins.constants`.
No state, no I/O.  Both functions are total and monotonic non-decreasing.
"""

from __future__ import annotations

from bisect import bisect_right

from tapcoins.constants import LEVEL_THRESHOLDS, MEDAL_ICONS, RANK_TIERS

__all__ = [
    "coins_to_next_rank",
    "level_for_taps",
    "medal_for_taps",
    "rank_for_coins",
    "taps_to_next_level",
]

_RANK_FLOORS: tuple[int, ...] = tuple(floor for floor, _ in RANK_TIERS)


def level_for_taps(total_taps: int) -> int:
    """Level 1..10 for *total_taps*; negative input counts as zero."""
    return max(1, bisect_right(LEVEL_THRESHOLDS, max(total_taps, 0)))


def rank_for_coins(coins: int) -> str:
    """Rank tier name for a coin balance."""
    idx = max(0, bisect_right(_RANK_FLOORS, max(coins, 0)) - 1)
    return RANK_TIERS[idx][1]


def taps_to_next_level(total_taps: int) -> int | None:
    """Taps still needed for the next level, or None at the top level."""
    level = level_for_taps(total_taps)
    if level >= len(LEVEL_THRESHOLDS):
        return None
    return LEVEL_THRESHOLDS[level] - max(total_taps, 0)


def coins_to_next_rank(coins: int) -> int | None:
    """Coins still needed for the next rank tier, or None at Legendary."""
    idx = bisect_right(_RANK_FLOORS, max(coins, 0))
    if idx >= len(_RANK_FLOORS):
        return None
    return _RANK_FLOORS[idx] - max(coins, 0)


def medal_for_taps(total_taps: int) -> tuple[str, str]:
    """Return ``(name, icon)`` of the tap medal.

    Medals reuse the rank tier thresholds but are earned by taps, and the
    Bronze band is folded into Beginner.
    """
    name = rank_for_coins(total_taps)
    if name not in MEDAL_ICONS:
        name = RANK_TIERS[0][1]
    return name, MEDAL_ICONS[name]
