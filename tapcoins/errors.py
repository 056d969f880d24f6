"""
tapcoins.errors — Rejections and Failures
==========================================

Only :class:`PersistenceUnavailable` and :class:`UserNotFound` ever cross
the gateway boundary.  :class:`EnergyExhausted` is a defined rejection of a
tap, not a fault, and :class:`InvariantViolation` is clamped and logged by
the engine rather than raised during a live session.
"""

from __future__ import annotations


class TapcoinsError(Exception):
    """Base class for every error raised by the tapcoins package."""


class EnergyExhausted(TapcoinsError):
    """A tap was attempted with no energy left."""

    def __init__(self, identity: str | None = None) -> None:
        self.identity = identity
        super().__init__(f"No energy left for user {identity!r}")


class PersistenceUnavailable(TapcoinsError):
    """A gateway call failed (store offline, network error, bad response)."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Persistence unavailable during {operation}{detail}")


class UserNotFound(TapcoinsError):
    """``load_user`` found no record — the caller should create one."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        super().__init__(f"No user record for {identity!r}")


class InvariantViolation(TapcoinsError):
    """Progress state broke one of its invariants (energy range, monotonic counters)."""

    def __init__(self, field: str, value: int, expected: str) -> None:
        self.field = field
        self.value = value
        self.expected = expected
        super().__init__(f"{field}={value} violates {expected}")
