"""
tapcoins.engine.achievements — Achievement Catalog & Evaluator
===============================================================

Handler-registry implementation for achievement requirements.  Each metric
maps to a pure handler that reads the matching counter out of an
:class:`AchievementContext`; an achievement is earned once that counter
reaches its threshold.

This module is pure calculation — no persistence, no presentation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

if TYPE_CHECKING:
    from tapcoins.engine.economy import UserProgress

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_CATALOG",
    "Achievement",
    "AchievementContext",
    "Evaluation",
    "Requirement",
    "apply_evaluation",
    "context_from_progress",
    "evaluate",
    "load_catalog",
    "progress_for",
]


# ---------------------------------------------------------------------------
# Achievement Context — passed to every metric handler
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AchievementContext:
    """Snapshot of the counters achievements are measured against.

    Parameters
    ----------
    total_taps : Lifetime accepted taps (after this tap).
    coins : Coin balance (after this tap, before this evaluation's rewards).
    energy_depletions : Times energy ran down to zero.
    referral_count : Friends who joined with the player's referral code.
    """

    total_taps: int = 0
    coins: int = 0
    energy_depletions: int = 0
    referral_count: int = 0


def context_from_progress(state: UserProgress) -> AchievementContext:
    return AchievementContext(
        total_taps=state.total_taps,
        coins=state.coins,
        energy_depletions=state.energy_depletions,
        referral_count=state.referral_count,
    )


# ---------------------------------------------------------------------------
# Metric handlers — pure functions (ctx) → current value
# ---------------------------------------------------------------------------
METRIC_HANDLERS: dict[str, Callable[[AchievementContext], int]] = {
    "totalTaps": lambda ctx: ctx.total_taps,
    "coins": lambda ctx: ctx.coins,
    "energyDepletions": lambda ctx: ctx.energy_depletions,
    "referrals": lambda ctx: ctx.referral_count,
}


# ---------------------------------------------------------------------------
# Catalog types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Requirement:
    metric: str
    threshold: int

    def __post_init__(self) -> None:
        if self.metric not in METRIC_HANDLERS:
            raise ValueError(
                f"Unknown achievement metric {self.metric!r}; "
                f"expected one of {sorted(METRIC_HANDLERS)}"
            )


@dataclass(frozen=True, slots=True)
class Achievement:
    """Static catalog entry.  Only the ``id`` is stored per user."""

    id: str
    name: str
    requirement: Requirement
    reward_coins: int = 0
    description: str = ""
    icon: str = ""
    category: str = "milestone"

    def __post_init__(self) -> None:
        if self.reward_coins < 0:
            raise ValueError(f"Achievement {self.id!r} has a negative reward")


DEFAULT_CATALOG: tuple[Achievement, ...] = (
    Achievement(
        "first_tap", "First Steps", Requirement("totalTaps", 1), 100,
        "Make your first tap", "\U0001f446", "milestone",
    ),
    Achievement(
        "hundred_taps", "Getting Started", Requirement("totalTaps", 100), 500,
        "Reach 100 total taps", "\U0001f4aa", "milestone",
    ),
    Achievement(
        "thousand_taps", "Dedicated Tapper", Requirement("totalTaps", 1_000), 2_000,
        "Reach 1,000 total taps", "\U0001f525", "milestone",
    ),
    Achievement(
        "ten_thousand_taps", "Tap Master", Requirement("totalTaps", 10_000), 10_000,
        "Reach 10,000 total taps", "\u2b50", "milestone",
    ),
    Achievement(
        "first_thousand_coins", "Coin Collector", Requirement("coins", 1_000), 1_000,
        "Earn your first 1,000 coins", "\U0001fa99", "wealth",
    ),
    Achievement(
        "energy_master", "Energy Efficient", Requirement("energyDepletions", 5), 3_000,
        "Use all energy 5 times", "\u26a1", "efficiency",
    ),
    Achievement(
        "referral_starter", "Friend Maker", Requirement("referrals", 1), 2_500,
        "Refer your first friend", "\U0001f465", "social",
    ),
)


def load_catalog(path: str | Path) -> tuple[Achievement, ...]:
    """Read an achievement catalog from a YAML list.

    Each item needs ``id``, ``name``, ``metric`` and ``threshold``; ``reward``,
    ``description``, ``icon`` and ``category`` are optional.

    Raises
    ------
    FileNotFoundError
        If *path* doesn't exist.
    ValueError
        On duplicate ids, unknown metrics or negative rewards.
    """
    catalog_path = Path(path)
    if not catalog_path.exists():
        raise FileNotFoundError(f"Achievement catalog not found: {catalog_path.resolve()}")

    with open(catalog_path, encoding="utf-8") as fh:
        items = yaml.safe_load(fh) or []

    catalog: list[Achievement] = []
    seen: set[str] = set()
    for item in items:
        ach_id = str(item["id"])
        if ach_id in seen:
            raise ValueError(f"Duplicate achievement id {ach_id!r} in {catalog_path}")
        seen.add(ach_id)
        catalog.append(Achievement(
            id=ach_id,
            name=str(item["name"]),
            requirement=Requirement(str(item["metric"]), int(item["threshold"])),
            reward_coins=int(item.get("reward", 0)),
            description=str(item.get("description", "")),
            icon=str(item.get("icon", "")),
            category=str(item.get("category", "milestone")),
        ))

    logger.info("Loaded %d achievements from %s", len(catalog), catalog_path)
    return tuple(catalog)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Evaluation:
    """Newly earned achievements (catalog order) and their summed reward."""

    newly_unlocked: tuple[Achievement, ...] = ()
    total_reward: int = 0

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(a.id for a in self.newly_unlocked)

    @property
    def featured(self) -> Achievement | None:
        """The one achievement to announce — first by catalog order."""
        return self.newly_unlocked[0] if self.newly_unlocked else None

    def __bool__(self) -> bool:
        return bool(self.newly_unlocked)


def evaluate(
    catalog: Sequence[Achievement],
    already_unlocked: Iterable[str],
    ctx: AchievementContext,
) -> Evaluation:
    """Check which achievements are newly earned against *ctx*.

    A single pass in catalog order: rewards granted here are *not* fed back
    into *ctx*, so a reward that pushes coins over another threshold only
    counts on the next evaluation.

    Parameters
    ----------
    catalog : Achievement definitions, in display order.
    already_unlocked : Ids the player already holds.
    ctx : Counters to test requirements against.
    """
    held = set(already_unlocked)
    newly: list[Achievement] = []

    for achievement in catalog:
        # Skip if already earned
        if achievement.id in held:
            continue

        handler = METRIC_HANDLERS[achievement.requirement.metric]
        if handler(ctx) >= achievement.requirement.threshold:
            newly.append(achievement)
            held.add(achievement.id)
            logger.debug(
                "Achievement triggered: %s (%s) reward=%d",
                achievement.name, achievement.id, achievement.reward_coins,
            )

    return Evaluation(
        newly_unlocked=tuple(newly),
        total_reward=sum(a.reward_coins for a in newly),
    )


def apply_evaluation(state: UserProgress, evaluation: Evaluation) -> UserProgress:
    """Record unlocked ids and credit the reward coins.

    Level and rank are not recomputed here; the caller recomputes them
    on the returned state.
    """
    if not evaluation:
        return state
    additions = tuple(i for i in evaluation.ids if i not in state.achievements)
    return replace(
        state,
        achievements=state.achievements + additions,
        coins=state.coins + evaluation.total_reward,
    )


def progress_for(achievement: Achievement, ctx: AchievementContext) -> tuple[int, int, float]:
    """Return ``(current, threshold, fraction)`` with fraction capped at 1.0."""
    current = METRIC_HANDLERS[achievement.requirement.metric](ctx)
    threshold = achievement.requirement.threshold
    if threshold <= 0:
        return current, threshold, 1.0
    return current, threshold, min(current / threshold, 1.0)
