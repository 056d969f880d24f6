"""
tests/test_notifications.py — Single-Slot Achievement Popups
=============================================================
"""

from __future__ import annotations

from conftest import T0

from tapcoins.engine.achievements import DEFAULT_CATALOG
from tapcoins.engine.scheduler import ManualScheduler
from tapcoins.services.notifications import AchievementNotifier

FIRST, SECOND = DEFAULT_CATALOG[0], DEFAULT_CATALOG[1]


def _notifier(duration: float = 3.0):
    scheduler = ManualScheduler(start=T0)
    return scheduler, AchievementNotifier(scheduler, duration=duration)


class TestAchievementNotifier:
    def test_auto_clears_after_duration(self):
        scheduler, notifier = _notifier()
        seen = []
        notifier.subscribe(seen.append)

        notifier.show(FIRST)
        scheduler.advance(2.5)
        assert notifier.current is FIRST
        scheduler.advance(0.5)

        assert notifier.current is None
        assert seen == [FIRST, None]

    def test_new_popup_replaces_and_restarts_timer(self):
        scheduler, notifier = _notifier()
        notifier.show(FIRST)
        scheduler.advance(2)
        notifier.show(SECOND)
        scheduler.advance(2)
        assert notifier.current is SECOND
        scheduler.advance(1)
        assert notifier.current is None
        assert scheduler.pending == 0

    def test_unsubscribe(self):
        _, notifier = _notifier()
        seen = []
        unsubscribe = notifier.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        notifier.show(FIRST)
        assert seen == []

    def test_failing_listener_does_not_block_others(self, caplog):
        _, notifier = _notifier()
        seen = []

        def _boom(_):
            raise RuntimeError("render failed")

        notifier.subscribe(_boom)
        notifier.subscribe(seen.append)
        notifier.show(FIRST)

        assert seen == [FIRST]
        assert "Achievement listener" in caplog.text

    def test_close_clears_and_cancels(self):
        scheduler, notifier = _notifier()
        seen = []
        notifier.subscribe(seen.append)
        notifier.show(FIRST)
        notifier.close()
        notifier.show(SECOND)
        notifier.close()

        assert seen == [FIRST, None]
        assert scheduler.pending == 0
