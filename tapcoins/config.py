"""
tapcoins.config — YAML Configuration Loader
============================================

Reads ``config.yaml`` for economy tuning and backend selection.  Secrets
and infrastructure URLs (``DATABASE_URL``) stay in the environment and are
loaded from ``.env`` by the entry point.

Usage::

    from tapcoins.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.max_energy)        # 4104
    print(cfg.backend)           # "memory"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from tapcoins.constants import (
    DEFAULT_MAX_ENERGY,
    FLUSH_DELAY_SECONDS,
    LEADERBOARD_SIZE,
    POPUP_SECONDS,
    REFILL_PERIOD_SECONDS,
    REFILL_POLL_SECONDS,
)

VALID_BACKENDS: frozenset[str] = frozenset({"memory", "file", "sql"})


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TapcoinsConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every field has a default matching the reference economy, so
    ``TapcoinsConfig()`` is a valid configuration for tests.
    """

    # Identity
    app_name: str = "TAP COINS"

    # Economy
    max_energy: int = DEFAULT_MAX_ENERGY
    refill_period_seconds: float = REFILL_PERIOD_SECONDS
    refill_poll_seconds: float = REFILL_POLL_SECONDS
    flush_delay_ms: int = int(FLUSH_DELAY_SECONDS * 1000)

    # Presentation hooks
    leaderboard_size: int = LEADERBOARD_SIZE
    popup_seconds: float = POPUP_SECONDS

    # Persistence
    backend: str = "memory"
    data_file: str = "tapcoins.json"  # Used by the "file" backend
    achievements_file: str | None = None  # YAML catalog override

    @property
    def flush_delay_seconds(self) -> float:
        return self.flush_delay_ms / 1000


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> TapcoinsConfig:
    """Read *path* and return a :class:`TapcoinsConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If ``backend`` names an unknown store or a numeric value is out of range.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = TapcoinsConfig()
    cfg = TapcoinsConfig(
        app_name=str(raw.get("app_name", defaults.app_name)),
        max_energy=int(raw.get("max_energy", defaults.max_energy)),
        refill_period_seconds=float(
            raw.get("refill_period_seconds", defaults.refill_period_seconds)
        ),
        refill_poll_seconds=float(
            raw.get("refill_poll_seconds", defaults.refill_poll_seconds)
        ),
        flush_delay_ms=int(raw.get("flush_delay_ms", defaults.flush_delay_ms)),
        leaderboard_size=int(raw.get("leaderboard_size", defaults.leaderboard_size)),
        popup_seconds=float(raw.get("popup_seconds", defaults.popup_seconds)),
        backend=str(raw.get("backend", defaults.backend)),
        data_file=str(raw.get("data_file", defaults.data_file)),
        achievements_file=raw.get("achievements_file") or None,
    )
    _validate(cfg)
    return cfg


def _validate(cfg: TapcoinsConfig) -> None:
    if cfg.backend not in VALID_BACKENDS:
        raise ValueError(
            f"Unknown backend {cfg.backend!r}; expected one of {sorted(VALID_BACKENDS)}"
        )
    if cfg.max_energy <= 0:
        raise ValueError("max_energy must be positive")
    if cfg.refill_period_seconds <= 0 or cfg.refill_poll_seconds <= 0:
        raise ValueError("refill_period_seconds and refill_poll_seconds must be positive")
    if cfg.flush_delay_ms < 0:
        raise ValueError("flush_delay_ms must not be negative")
    if cfg.leaderboard_size <= 0:
        raise ValueError("leaderboard_size must be positive")
