"""
tests/test_streak_engine.py — Pure Streak Transition Tests
===========================================================
No database: exercises ``advance_streak`` directly.
"""

from __future__ import annotations

from datetime import date

from starling.engine.streak import StreakState, advance_streak

D = date(2026, 3, 10)


class TestAdvanceStreak:
    def test_first_completion_starts_at_one(self):
        s = advance_streak(StreakState(), D)
        assert s == StreakState(current=1, longest=1, last_completed=D)

    def test_consecutive_days_increment(self):
        s = StreakState()
        for offset in range(3):
            s = advance_streak(s, date(2026, 3, 10 + offset))
        assert s.current == 3
        assert s.longest == 3
        assert s.last_completed == date(2026, 3, 12)

    def test_same_day_is_noop(self):
        s = advance_streak(StreakState(), D)
        assert advance_streak(s, D) is s

    def test_gap_resets_to_one_and_keeps_longest(self):
        s = StreakState()
        for day in (10, 11, 12):
            s = advance_streak(s, date(2026, 3, day))
        s = advance_streak(s, date(2026, 3, 14))
        assert s.current == 1
        assert s.longest == 3
        assert s.last_completed == date(2026, 3, 14)

    def test_backfilled_earlier_day_resets(self):
        s = StreakState(current=4, longest=6, last_completed=D)
        s = advance_streak(s, date(2026, 3, 8))
        assert s.current == 1
        assert s.longest == 6
        assert s.last_completed == date(2026, 3, 8)

    def test_longest_grows_past_previous_record(self):
        s = StreakState(current=2, longest=2, last_completed=D)
        s = advance_streak(s, date(2026, 3, 11))
        assert s.longest == 3

    def test_month_boundary_counts_as_consecutive(self):
        s = StreakState(current=1, longest=1, last_completed=date(2026, 2, 28))
        assert advance_streak(s, date(2026, 3, 1)).current == 2

    def test_payload_shape(self):
        payload = StreakState(current=2, longest=5, last_completed=D).to_payload()
        assert payload == {
            "currentStreak": 2,
            "longestStreak": 5,
            "lastCompletedDate": "2026-03-10",
        }
        assert StreakState().to_payload()["lastCompletedDate"] is None
