"""
tapcoins.app.render — Plain-Text Views
=======================================

Pure functions turning session read models into console text.  Nothing
here touches the session's state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from tapcoins.constants import format_number
from tapcoins.engine.achievements import context_from_progress, progress_for
from tapcoins.engine.progression import (
    coins_to_next_rank,
    medal_for_taps,
    taps_to_next_level,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tapcoins.engine.achievements import Achievement
    from tapcoins.engine.economy import TapOutcome, UserProgress
    from tapcoins.engine.leaderboard import LeaderboardSnapshot


def render_stats(state: UserProgress, countdown: str = "") -> str:
    medal, icon = medal_for_taps(state.total_taps)
    next_level = taps_to_next_level(state.total_taps)
    next_rank = coins_to_next_rank(state.coins)
    lines = [
        f"{state.display_name} ({state.referral_code})",
        f"  Coins     {format_number(state.coins)}",
        f"  Taps      {format_number(state.total_taps)}",
        f"  Energy    {format_number(state.energy)}/{format_number(state.max_energy)}",
        f"  Level     {state.level}"
        + (f" ({format_number(next_level)} taps to next)" if next_level else " (max)"),
        f"  Rank      {state.rank}"
        + (f" ({format_number(next_rank)} coins to next)" if next_rank else ""),
        f"  Medal     {icon} {medal}",
    ]
    if countdown:
        lines.append(f"  {countdown}")
    return "\n".join(lines)


def render_outcome(outcome: TapOutcome) -> str:
    if not outcome.accepted:
        return "Out of energy."
    parts = ["+1"]
    if outcome.reward:
        parts.append(f"+{format_number(outcome.reward)} bonus")
    if outcome.level_changed is not None:
        parts.append(f"level {outcome.level_changed}!")
    if outcome.rank_changed is not None:
        parts.append(f"now {outcome.rank_changed}!")
    return " ".join(parts)


def render_leaderboard(board: LeaderboardSnapshot) -> str:
    if not board.top:
        return "Leaderboard is empty."
    lines = []
    for entry in board.top:
        _, icon = medal_for_taps(entry.total_taps)
        marker = "*" if entry.position == board.own_position else " "
        lines.append(
            f"{marker}{entry.position:>3}. {entry.display_name:<20} "
            f"{format_number(entry.coins):>12} {icon}"
        )
    if board.own_entry is not None:
        lines.append(f"  You: {format_number(board.own_entry.coins)} coins (outside top)")
    return "\n".join(lines)


def render_achievements(state: UserProgress, catalog: Iterable[Achievement]) -> str:
    ctx = context_from_progress(state)
    lines = []
    for achievement in catalog:
        if achievement.id in state.achievements:
            lines.append(f"  [x] {achievement.icon} {achievement.name}")
            continue
        current, threshold, _ = progress_for(achievement, ctx)
        lines.append(
            f"  [ ] {achievement.icon} {achievement.name} "
            f"({format_number(current)}/{format_number(threshold)})"
        )
    return "\n".join(lines)
