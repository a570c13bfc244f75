"""
Unit-тесты для TrialStateTracker: идемпотентный старт, ленивое истечение, терминальная конверсия.
"""
import unittest
from datetime import datetime, timedelta, timezone

from paywall_engine.paywall.config import EngineConfig
from paywall_engine.paywall.models import TrialStatus
from paywall_engine.paywall.trial import TrialStateTracker
from paywall_engine.services.state import InMemoryUserStateStore

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class TestTrialStateTracker(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryUserStateStore()
        self.tracker = TrialStateTracker(self.store, EngineConfig())

    def test_not_started_by_default(self):
        self.assertEqual(self.tracker.status("u1", T0), TrialStatus.NOT_STARTED)
        self.assertEqual(self.tracker.days_remaining("u1", T0), 0)

    def test_start_is_idempotent(self):
        first = self.tracker.start("u1", 7, now=T0)
        second = self.tracker.start("u1", 14, now=T0 + timedelta(days=1))
        self.assertEqual(second.start_date, T0)
        self.assertEqual(second.duration_days, 7)
        self.assertEqual(first, second)
        self.assertEqual(self.store.load("u1").version, 1)

    def test_default_duration_from_config(self):
        tracker = TrialStateTracker(self.store, EngineConfig(trial_duration_days=14))
        trial = tracker.start("u1", now=T0)
        self.assertEqual(trial.duration_days, 14)

    def test_negative_duration_rejected(self):
        with self.assertRaises(ValueError):
            self.tracker.start("u1", -1, now=T0)

    def test_active_through_day_six_expired_from_day_seven(self):
        self.tracker.start("u1", 7, now=T0)
        for day in range(7):
            self.assertEqual(
                self.tracker.status("u1", T0 + timedelta(days=day)),
                TrialStatus.ACTIVE,
                f"day {day}",
            )
        self.assertEqual(
            self.tracker.status("u1", T0 + timedelta(days=7) - timedelta(seconds=1)),
            TrialStatus.ACTIVE,
        )
        self.assertEqual(self.tracker.status("u1", T0 + timedelta(days=7)), TrialStatus.EXPIRED)
        self.assertEqual(self.tracker.status("u1", T0 + timedelta(days=30)), TrialStatus.EXPIRED)

    def test_days_remaining_rounds_up(self):
        self.tracker.start("u1", 7, now=T0)
        self.assertEqual(self.tracker.days_remaining("u1", T0), 7)
        self.assertEqual(self.tracker.days_remaining("u1", T0 + timedelta(hours=12)), 7)
        self.assertEqual(self.tracker.days_remaining("u1", T0 + timedelta(days=6, seconds=1)), 1)
        self.assertEqual(self.tracker.days_remaining("u1", T0 + timedelta(days=7)), 0)
        self.assertEqual(self.tracker.days_remaining("u1", T0 + timedelta(days=9)), 0)

    def test_converted_is_terminal(self):
        self.tracker.start("u1", 7, now=T0)
        self.tracker.mark_converted("u1", now=T0 + timedelta(days=2))
        for offset in (timedelta(days=3), timedelta(days=7), timedelta(days=365)):
            self.assertEqual(self.tracker.status("u1", T0 + offset), TrialStatus.CONVERTED)
        # a later start call does not revive the trial
        trial = self.tracker.start("u1", 7, now=T0 + timedelta(days=10))
        self.assertEqual(trial.status, TrialStatus.CONVERTED)
        self.assertEqual(self.tracker.days_remaining("u1", T0 + timedelta(days=3)), 0)

    def test_mark_converted_is_idempotent(self):
        first = self.tracker.mark_converted("u1", now=T0)
        second = self.tracker.mark_converted("u1", now=T0 + timedelta(days=1))
        self.assertEqual(first.converted_at, T0)
        self.assertEqual(second.converted_at, T0)

    def test_convert_without_trial(self):
        self.tracker.mark_converted("u2", now=T0)
        self.assertEqual(self.tracker.status("u2", T0), TrialStatus.CONVERTED)

    def test_users_are_independent(self):
        self.tracker.start("u1", 7, now=T0)
        self.assertEqual(self.tracker.status("u2", T0), TrialStatus.NOT_STARTED)
