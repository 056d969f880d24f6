"""
tapcoins.constants — Shared Constants & Tables
===============================================

Single source of truth for the progression breakpoints and the default
economy tuning.  Import from here instead of duplicating in the engine,
the gateways, and the console driver.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Economy defaults (overridable through config.yaml)
# ---------------------------------------------------------------------------
DEFAULT_MAX_ENERGY = 4104
REFILL_PERIOD_SECONDS = 2 * 60 * 60
REFILL_POLL_SECONDS = 60
FLUSH_DELAY_SECONDS = 0.5
LEADERBOARD_SIZE = 50
POPUP_SECONDS = 3.0

# ---------------------------------------------------------------------------
# Level breakpoints — lower bound of total taps for levels 1..10
# ---------------------------------------------------------------------------
LEVEL_THRESHOLDS: tuple[int, ...] = (
    0, 100, 500, 1_000, 2_500, 5_000, 10_000, 25_000, 50_000, 100_000,
)
MAX_LEVEL = len(LEVEL_THRESHOLDS)

# ---------------------------------------------------------------------------
# Rank tiers — (minimum coins, name), ascending
# ---------------------------------------------------------------------------
RANK_TIERS: tuple[tuple[int, str], ...] = (
    (0, "Beginner"),
    (1_000, "Bronze"),
    (10_000, "Classic"),
    (20_000, "Pro"),
    (50_000, "Royal Champion"),
    (100_000, "Ultra Elite"),
    (150_000, "Legendary"),
)
DEFAULT_RANK = RANK_TIERS[0][1]

# Medal badges are keyed on total taps and have no Bronze tier
MEDAL_ICONS: dict[str, str] = {
    "Beginner": "\U0001f947",        # 🥇
    "Classic": "\U0001f949",         # 🥉
    "Pro": "\u2b50",                # ⭐
    "Royal Champion": "\U0001f3c6",  # 🏆
    "Ultra Elite": "\U0001f48e",     # 💎
    "Legendary": "\U0001f451",       # 👑
}

# ---------------------------------------------------------------------------
# Referral codes
# ---------------------------------------------------------------------------
REFERRAL_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
REFERRAL_SUFFIX_LENGTH = 6
REFERRAL_FALLBACK_PREFIX = "USR"


def format_number(value: int) -> str:
    """Group digits with commas, e.g. ``12345 → "12,345"``."""
    return f"{value:,}"
