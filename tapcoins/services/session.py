"""
tapcoins.services.session — TapSession, the Stateful Tap Engine
================================================================

Owns one player's :class:`~tapcoins.engine.economy.UserProgress` for the
length of a session and is the only thing the presentation layer talks to:

* :meth:`TapSession.snapshot` — read-only progress for rendering.
* :meth:`TapSession.tap` — the only mutating entry point driven by the user.
* :attr:`TapSession.notifier` — transient achievement-unlocked stream.
* :meth:`TapSession.leaderboard_snapshot` — top-N plus the player's own row.

Pipeline for one tap (all synchronous, on the loop's thread):

    apply_tap → evaluate achievements → credit rewards → recompute level/rank
      → invariant clamp → leaderboard upsert → batch delta (flushed later)

Every gateway failure is caught here and logged; local progress is never
rolled back because the store was unreachable.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from tapcoins.config import TapcoinsConfig
from tapcoins.engine.achievements import (
    DEFAULT_CATALOG,
    Achievement,
    Evaluation,
    apply_evaluation,
    context_from_progress,
    evaluate,
)
from tapcoins.engine.economy import (
    TapOutcome,
    UserProgress,
    apply_tap,
    check_invariants,
    new_user_progress,
    with_derived,
)
from tapcoins.engine.energy import (
    EnergyRegenerator,
    RefillDecision,
    check_refill,
    format_remaining,
)
from tapcoins.engine.leaderboard import (
    LeaderboardEntry,
    LeaderboardProjector,
    LeaderboardSnapshot,
)
from tapcoins.engine.scheduler import LoopScheduler, Scheduler
from tapcoins.errors import EnergyExhausted, PersistenceUnavailable, UserNotFound
from tapcoins.services.batcher import WriteBatcher
from tapcoins.services.notifications import AchievementNotifier

if TYPE_CHECKING:
    from tapcoins.services.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

__all__ = ["PlayerIdentity", "TapSession"]


@dataclass(frozen=True, slots=True)
class PlayerIdentity:
    """What the identity provider hands over at session start.

    ``referral_code`` is the code the player joined with, if any; it only
    matters the first time the player is seen.
    """

    id: str
    display_name: str
    username: str | None = None
    referral_code: str | None = None


class TapSession:
    """Single-writer tap economy for one player.

    Usage::

        async with TapSession(gateway, config=cfg) as session:
            await session.start(PlayerIdentity("42", "Drew", "drew"))
            outcome = session.tap()
            print(session.snapshot().coins)

    Parameters
    ----------
    gateway : Injected persistence gateway.
    config : Economy tuning; defaults to :class:`TapcoinsConfig`.
    scheduler : Clock and timers; defaults to the running asyncio loop.
    catalog : Achievement catalog; defaults to the built-in one.
    persist : When False, progress is loaded but never written back.
    rng : Random source for referral codes.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        config: TapcoinsConfig | None = None,
        scheduler: Scheduler | None = None,
        catalog: Iterable[Achievement] | None = None,
        persist: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self.cfg = config or TapcoinsConfig()
        self.gateway = gateway
        self.scheduler = scheduler or LoopScheduler()
        self.catalog: tuple[Achievement, ...] = (
            tuple(catalog) if catalog is not None else DEFAULT_CATALOG
        )
        self.persist = persist
        self._rng = rng

        self.leaderboard = LeaderboardProjector(self.cfg.leaderboard_size)
        self.notifier = AchievementNotifier(self.scheduler, duration=self.cfg.popup_seconds)
        self.regenerator = EnergyRegenerator(
            self.scheduler, self._poll_refill, interval=self.cfg.refill_poll_seconds,
        )

        self._state: UserProgress | None = None
        self._batcher: WriteBatcher | None = None
        self._mutating = False
        self._closed = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def active(self) -> bool:
        return self._state is not None and not self._closed

    @property
    def batcher(self) -> WriteBatcher | None:
        return self._batcher

    def snapshot(self) -> UserProgress | None:
        """Current progress; the instance is immutable and safe to keep."""
        return self._state

    def leaderboard_snapshot(self) -> LeaderboardSnapshot:
        identity = self._state.identity if self._state is not None else None
        return self.leaderboard.snapshot(identity)

    def refill_decision(self) -> RefillDecision | None:
        if self._state is None:
            return None
        return check_refill(
            self.scheduler.now(),
            self._state.last_energy_refresh_at,
            self._state.max_energy,
            self.cfg.refill_period_seconds,
        )

    def time_until_refill(self) -> str:
        decision = self.refill_decision()
        return "" if decision is None else format_remaining(decision)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, who: PlayerIdentity | None) -> UserProgress | None:
        """Load (or create) the player's progress and begin the session.

        With no identity, or when the store cannot be reached, the session
        stays idle and ``None`` is returned.
        """
        if self._closed:
            raise RuntimeError("TapSession is closed")
        if self._state is not None:
            raise RuntimeError("TapSession already started")
        if who is None:
            logger.info("No player identity — session stays idle.")
            return None

        now = self.scheduler.now()
        try:
            state, acknowledged, refill_unsent = await self._load_or_create(who, now)
        except PersistenceUnavailable:
            logger.exception("Could not load user %s — session stays idle.", who.id)
            return None
        except UserNotFound:
            logger.error("User %s disappeared while loading — session stays idle.", who.id)
            return None

        self._state = check_invariants(with_derived(state))

        if self.persist:
            self._batcher = WriteBatcher(
                self.gateway,
                who.id,
                self.scheduler,
                delay=self.cfg.flush_delay_seconds,
                overwrites=self._overwrites,
                after_flush=self._push_leaderboard,
            )
            self._batcher.acknowledge(**acknowledged)
            if refill_unsent:
                self._batcher.mark_refill(self._state.energy, self._state.last_energy_refresh_at)
            elif self._overwrites() != acknowledged:
                self._batcher.touch()

        await self.refresh_leaderboard()
        self.regenerator.start()
        logger.info(
            "Session started for %s: coins=%d taps=%d energy=%d/%d level=%d rank=%s",
            who.id, self._state.coins, self._state.total_taps, self._state.energy,
            self._state.max_energy, self._state.level, self._state.rank,
        )
        return self._state

    async def _load_or_create(
        self, who: PlayerIdentity, now: float,
    ) -> tuple[UserProgress, dict[str, Any], bool]:
        try:
            stored = await self.gateway.load_user(who.id)
        except UserNotFound:
            fresh = new_user_progress(
                who.id,
                who.display_name,
                username=who.username,
                now=now,
                max_energy=self.cfg.max_energy,
                referred_by=who.referral_code,
                rng=self._rng,
            )
            await self.gateway.create_user(fresh)
            logger.info("Created user %s with referral code %s", who.id, fresh.referral_code)
            if who.referral_code:
                await self._credit_referrer(who.referral_code)
            return fresh, self._overwrites_of(fresh), False

        acknowledged = self._overwrites_of(stored)
        try:
            await self.gateway.touch_user(
                who.id, display_name=who.display_name, username=who.username, at=now,
            )
        except PersistenceUnavailable as exc:
            logger.warning("Profile refresh for %s failed: %s", who.id, exc)

        state = replace(
            stored,
            display_name=who.display_name,
            username=who.username or stored.username,
            last_active_at=now,
        )
        decision = check_refill(
            now, state.last_energy_refresh_at, state.max_energy, self.cfg.refill_period_seconds,
        )
        if not decision.refill:
            return state, acknowledged, False

        state = replace(
            state, energy=decision.new_energy, last_energy_refresh_at=decision.new_last_refresh_at,
        )
        logger.info("Energy refilled on load for %s", who.id)
        if not self.persist:
            return state, acknowledged, False
        try:
            await self.gateway.refresh_energy(who.id, energy=state.energy, at=now)
        except PersistenceUnavailable as exc:
            logger.warning("Energy refresh for %s not stored, queued for next flush: %s", who.id, exc)
            return state, acknowledged, True
        return state, acknowledged, False

    async def _credit_referrer(self, referral_code: str) -> None:
        try:
            referrer = await self.gateway.credit_referral(referral_code)
        except PersistenceUnavailable as exc:
            logger.warning("Referral credit for code %s failed: %s", referral_code, exc)
            return
        if referrer is None:
            logger.info("Referral code %s matches no user", referral_code)
        else:
            logger.info("Credited referral to %s", referrer)

    async def refresh_leaderboard(self) -> LeaderboardSnapshot:
        """Reload the top-N from the store; the local row stays authoritative."""
        try:
            rows = await self.gateway.query_top_leaderboard(self.cfg.leaderboard_size)
        except PersistenceUnavailable as exc:
            logger.warning("Leaderboard load failed: %s", exc)
        else:
            self.leaderboard.replace_all(rows)
        if self._state is not None:
            self.leaderboard.upsert(LeaderboardEntry.from_progress(self._state))
        return self.leaderboard_snapshot()

    async def drain(self) -> None:
        """Wait until no flush is in flight."""
        if self._batcher is not None:
            await self._batcher.drain()

    async def close(self, *, flush_pending: bool = True) -> None:
        """End the session: stop polling, clear popups, cancel the flush timer.

        With *flush_pending* the remaining batch is sent before returning.
        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        self.regenerator.stop()
        self.notifier.close()
        if self._batcher is not None:
            await self._batcher.close(flush=flush_pending)
        if self._state is not None:
            logger.info("Session closed for %s", self._state.identity)

    async def __aenter__(self) -> TapSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    @contextmanager
    def _mutation(self) -> Iterator[UserProgress]:
        if self._state is None or self._closed:
            raise RuntimeError("TapSession is not active")
        if self._mutating:
            raise RuntimeError("TapSession mutations are not re-entrant")
        self._mutating = True
        try:
            yield self._state
        finally:
            self._mutating = False

    def tap(self, *, strict: bool = False) -> TapOutcome:
        """Apply one tap.

        An idle session ignores the tap.  With no energy left the tap is
        rejected without any state change; ``strict=True`` raises
        :class:`EnergyExhausted` instead of returning the rejection.
        """
        if not self.active:
            return TapOutcome(accepted=False)

        with self._mutation() as before:
            after, outcome = apply_tap(before)
            if not outcome.accepted:
                logger.debug("Tap rejected for %s: energy exhausted", before.identity)
                if strict and outcome.rejection is not None:
                    raise outcome.rejection
                return outcome

            evaluation = evaluate(self.catalog, after.achievements, context_from_progress(after))
            after = self._commit(before, after, evaluation)
            if self._batcher is not None:
                self._batcher.add(
                    coins=1 + evaluation.total_reward,
                    taps=1,
                    energy=-1,
                    depletions=1 if outcome.energy_depleted else 0,
                )

        outcome = replace(
            outcome,
            level_changed=after.level if after.level != before.level else None,
            rank_changed=after.rank if after.rank != before.rank else None,
            unlocked=evaluation.ids,
            reward=evaluation.total_reward,
        )
        self._announce(after, outcome, evaluation)
        return outcome

    def tap_many(self, count: int) -> list[TapOutcome]:
        """Apply up to *count* taps, stopping at the first rejection."""
        outcomes: list[TapOutcome] = []
        for _ in range(count):
            outcome = self.tap()
            outcomes.append(outcome)
            if not outcome.accepted:
                break
        return outcomes

    def apply_refill(self, now: float | None = None) -> RefillDecision:
        """Refill energy if due; serialized with taps like any other mutation."""
        with self._mutation() as before:
            now = self.scheduler.now() if now is None else now
            decision = check_refill(
                now, before.last_energy_refresh_at, before.max_energy,
                self.cfg.refill_period_seconds,
            )
            if not decision.refill:
                return decision
            self._state = replace(
                before,
                energy=decision.new_energy,
                last_energy_refresh_at=decision.new_last_refresh_at,
            )
            if self._batcher is not None:
                self._batcher.mark_refill(decision.new_energy, now)
        logger.info("Energy refilled for %s (%d)", before.identity, decision.new_energy)
        return decision

    def credit_referral(self, count: int = 1) -> Evaluation:
        """Apply an external referral event to the live session.

        The store's referral counter is owned by the referral flow
        (:meth:`PersistenceGateway.credit_referral`); only the achievement
        reward it may unlock is batched from here.
        """
        if count <= 0:
            raise ValueError("count must be positive")
        with self._mutation() as before:
            bumped = replace(before, referral_count=before.referral_count + count)
            evaluation = evaluate(self.catalog, bumped.achievements, context_from_progress(bumped))
            after = self._commit(before, bumped, evaluation)
            if self._batcher is not None:
                if evaluation.total_reward:
                    self._batcher.add(coins=evaluation.total_reward)
                elif evaluation:
                    self._batcher.touch()
        outcome = TapOutcome(
            accepted=True,
            level_changed=after.level if after.level != before.level else None,
            rank_changed=after.rank if after.rank != before.rank else None,
            unlocked=evaluation.ids,
            reward=evaluation.total_reward,
        )
        self._announce(after, outcome, evaluation)
        return evaluation

    def _commit(
        self, before: UserProgress, after: UserProgress, evaluation: Evaluation,
    ) -> UserProgress:
        if evaluation:
            after = with_derived(apply_evaluation(after, evaluation))
        after = check_invariants(after, before)
        self._state = after
        self.leaderboard.upsert(LeaderboardEntry.from_progress(after))
        return after

    def _announce(self, state: UserProgress, outcome: TapOutcome, evaluation: Evaluation) -> None:
        for achievement in evaluation.newly_unlocked:
            logger.info(
                "%s unlocked %s (+%d coins)",
                state.identity, achievement.name, achievement.reward_coins,
            )
        if outcome.level_changed is not None:
            logger.info("%s reached level %d", state.identity, outcome.level_changed)
        if outcome.rank_changed is not None:
            logger.info("%s is now %s", state.identity, outcome.rank_changed)
        if evaluation.featured is not None:
            self.notifier.show(evaluation.featured)

    def _poll_refill(self) -> None:
        if self.active and not self._mutating:
            self.apply_refill()

    # ------------------------------------------------------------------
    # Flush hooks
    # ------------------------------------------------------------------
    @staticmethod
    def _overwrites_of(state: UserProgress) -> dict[str, Any]:
        return {"level": state.level, "rank": state.rank, "achievements": state.achievements}

    def _overwrites(self) -> dict[str, Any]:
        if self._state is None:
            return {}
        return self._overwrites_of(self._state)

    async def _push_leaderboard(self) -> bool:
        """Mirror the player's row to the store; ``False`` asks for a retry."""
        state = self._state
        if state is None:
            return True
        try:
            await self.gateway.upsert_leaderboard_entry(
                state.identity,
                coins=state.coins,
                total_taps=state.total_taps,
                display_name=state.display_name,
                username=state.username,
            )
        except PersistenceUnavailable as exc:
            logger.warning("Leaderboard upsert for %s failed: %s", state.identity, exc)
            return False
        return True
