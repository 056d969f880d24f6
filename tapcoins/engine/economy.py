"""
tapcoins.engine.economy — UserProgress & the Tap Transition
============================================================

Pure calculation only — no persistence, no timers.

:func:`apply_tap` is the single state transition of the game: one accepted
tap yields one coin and one total tap and burns one energy point.  Level
and rank are derived fields and are recomputed inside the same transition
so no caller can ever observe them stale.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace

from tapcoins.constants import (
    DEFAULT_MAX_ENERGY,
    DEFAULT_RANK,
    REFERRAL_ALPHABET,
    REFERRAL_FALLBACK_PREFIX,
    REFERRAL_SUFFIX_LENGTH,
)
from tapcoins.engine.progression import level_for_taps, rank_for_coins
from tapcoins.errors import EnergyExhausted, InvariantViolation

logger = logging.getLogger(__name__)

__all__ = [
    "TapOutcome",
    "UserProgress",
    "apply_tap",
    "check_invariants",
    "generate_referral_code",
    "new_user_progress",
    "with_derived",
]


# ---------------------------------------------------------------------------
# UserProgress — one per player identity
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class UserProgress:
    """Immutable snapshot of a player's progress.

    Transitions return a new instance via :func:`dataclasses.replace`, so a
    snapshot handed to the presentation layer can never change underneath it.
    """

    identity: str
    display_name: str
    username: str | None = None
    coins: int = 0
    total_taps: int = 0
    energy: int = DEFAULT_MAX_ENERGY
    max_energy: int = DEFAULT_MAX_ENERGY
    last_energy_refresh_at: float = 0.0
    energy_depletions: int = 0
    level: int = 1
    rank: str = DEFAULT_RANK
    achievements: tuple[str, ...] = ()
    referral_code: str = ""
    referral_count: int = 0
    referred_by: str | None = None
    created_at: float | None = None
    last_active_at: float | None = None

    def __repr__(self) -> str:
        return (
            f"<UserProgress id={self.identity} coins={self.coins} "
            f"taps={self.total_taps} energy={self.energy}/{self.max_energy}>"
        )


# ---------------------------------------------------------------------------
# TapOutcome — what one tap did
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TapOutcome:
    """Result of :func:`apply_tap`.

    ``level_changed`` / ``rank_changed`` hold the new value only when it
    actually differs from the previous state.  ``unlocked`` and ``reward``
    are filled in by the session after achievement evaluation.
    """

    accepted: bool
    rejection: EnergyExhausted | None = None
    energy_depleted: bool = False
    level_changed: int | None = None
    rank_changed: str | None = None
    unlocked: tuple[str, ...] = field(default_factory=tuple)
    reward: int = 0


# ---------------------------------------------------------------------------
# Construction helpers
# ---------------------------------------------------------------------------
def generate_referral_code(username: str | None, rng: random.Random | None = None) -> str:
    """Three-letter username prefix (or ``USR``) plus six random characters."""
    rng = rng or random.Random()
    prefix = username[:3].upper() if username else REFERRAL_FALLBACK_PREFIX
    suffix = "".join(rng.choice(REFERRAL_ALPHABET) for _ in range(REFERRAL_SUFFIX_LENGTH))
    return f"{prefix}{suffix}"


def new_user_progress(
    identity: str,
    display_name: str,
    *,
    username: str | None = None,
    now: float,
    max_energy: int = DEFAULT_MAX_ENERGY,
    referred_by: str | None = None,
    rng: random.Random | None = None,
) -> UserProgress:
    """Zeroed progress for a first-time player, energy full."""
    return UserProgress(
        identity=identity,
        display_name=display_name,
        username=username,
        energy=max_energy,
        max_energy=max_energy,
        last_energy_refresh_at=now,
        referral_code=generate_referral_code(username, rng),
        referred_by=referred_by,
        created_at=now,
        last_active_at=now,
    )


def with_derived(state: UserProgress) -> UserProgress:
    """Return *state* with level and rank recomputed from taps and coins."""
    level = level_for_taps(state.total_taps)
    rank = rank_for_coins(state.coins)
    if level == state.level and rank == state.rank:
        return state
    return replace(state, level=level, rank=rank)


# ---------------------------------------------------------------------------
# The tap transition
# ---------------------------------------------------------------------------
def apply_tap(state: UserProgress) -> tuple[UserProgress, TapOutcome]:
    """Apply one tap to *state*.

    With no energy left the tap is rejected: the same state comes back with
    ``outcome.accepted=False`` and an :class:`EnergyExhausted` rejection.
    """
    if state.energy <= 0:
        return state, TapOutcome(accepted=False, rejection=EnergyExhausted(state.identity))

    energy = state.energy - 1
    depleted = energy == 0
    tapped = replace(
        state,
        coins=state.coins + 1,
        total_taps=state.total_taps + 1,
        energy=energy,
        energy_depletions=state.energy_depletions + (1 if depleted else 0),
    )
    new_state = with_derived(tapped)

    return new_state, TapOutcome(
        accepted=True,
        energy_depleted=depleted,
        level_changed=new_state.level if new_state.level != state.level else None,
        rank_changed=new_state.rank if new_state.rank != state.rank else None,
    )


# ---------------------------------------------------------------------------
# Invariant clamp
# ---------------------------------------------------------------------------
def check_invariants(
    state: UserProgress,
    previous: UserProgress | None = None,
    *,
    strict: bool = False,
) -> UserProgress:
    """Clamp *state* back inside its invariants, logging every correction.

    A live session never crashes on a violation; ``strict=True`` raises
    :class:`InvariantViolation` instead and is meant for tests.
    """
    violations: list[InvariantViolation] = []
    fixes: dict[str, int] = {}

    if not 0 <= state.energy <= state.max_energy:
        violations.append(
            InvariantViolation("energy", state.energy, f"0 <= energy <= {state.max_energy}")
        )
        fixes["energy"] = min(max(state.energy, 0), state.max_energy)

    if previous is not None:
        for name in ("coins", "total_taps"):
            before, after = getattr(previous, name), getattr(state, name)
            if after < before:
                violations.append(InvariantViolation(name, after, f">= {before}"))
                fixes[name] = before
        missing = [a for a in previous.achievements if a not in state.achievements]
        if missing:
            violations.append(
                InvariantViolation("achievements", len(state.achievements), "no revocation")
            )
            state = replace(state, achievements=state.achievements + tuple(missing))

    if not violations:
        return state
    if strict:
        raise violations[0]

    for violation in violations:
        logger.warning("Invariant violation for %s: %s — clamping", state.identity, violation)
    return with_derived(replace(state, **fixes))
