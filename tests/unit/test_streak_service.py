"""Streak state machine tests."""

from datetime import date, datetime, timezone

import pytest

from cookcam.errors import ValidationError
from cookcam.gamification.streak_service import (
    CONTINUED,
    OUT_OF_ORDER,
    RESET,
    SAME_DAY,
    SHIELDED,
    STARTED,
    StreakState,
    advance_streak,
    local_activity_date,
)

DAY_5 = date(2026, 3, 5)


def _state(current=3, longest=10, last=DAY_5, shields=0):
    return StreakState(current, longest, last, shields)


class TestAdvanceStreak:

    def test_first_activity_starts_streak(self):
        update = advance_streak(StreakState(), DAY_5)
        assert update.transition == STARTED
        assert update.state.current_streak_days == 1
        assert update.state.longest_streak_days == 1
        assert update.state.last_active_date == DAY_5

    def test_same_day_is_unchanged(self):
        state = _state()
        update = advance_streak(state, DAY_5)
        assert update.transition == SAME_DAY
        assert update.state == state

    def test_next_day_continues(self):
        update = advance_streak(_state(current=10, longest=10), date(2026, 3, 6))
        assert update.transition == CONTINUED
        assert update.state.current_streak_days == 11
        assert update.state.longest_streak_days == 11

    def test_two_day_gap_resets_to_one(self):
        """Day 5 -> day 7 with no grace: reset, longest retained."""
        update = advance_streak(_state(current=3, longest=10), date(2026, 3, 7), grace_days=0)
        assert update.transition == RESET
        assert update.state.current_streak_days == 1
        assert update.state.longest_streak_days == 10
        assert update.state.last_active_date == date(2026, 3, 7)

    def test_grace_period_covers_missed_day(self):
        update = advance_streak(_state(), date(2026, 3, 7), grace_days=1)
        assert update.transition == CONTINUED
        assert update.state.current_streak_days == 4

    def test_shields_cover_missed_days(self):
        update = advance_streak(_state(shields=2), date(2026, 3, 8))
        assert update.transition == SHIELDED
        assert update.shields_used == 2
        assert update.state.streak_shields == 0
        assert update.state.current_streak_days == 4

    def test_not_enough_shields_resets_and_keeps_them(self):
        update = advance_streak(_state(shields=1), date(2026, 3, 8))
        assert update.transition == RESET
        assert update.state.streak_shields == 1
        assert update.state.current_streak_days == 1

    def test_earlier_day_is_ignored(self):
        state = _state()
        update = advance_streak(state, date(2026, 3, 4))
        assert update.transition == OUT_OF_ORDER
        assert update.state == state

    def test_longest_never_decreases(self):
        state = StreakState()
        longest = 0
        for day in [1, 2, 3, 6, 7, 7, 20, 21, 22, 23]:
            state = advance_streak(state, date(2026, 3, day)).state
            assert state.longest_streak_days >= longest
            assert state.longest_streak_days >= state.current_streak_days
            longest = state.longest_streak_days
        assert longest == 4

    def test_as_dict(self):
        data = advance_streak(StreakState(), DAY_5).as_dict()
        assert data["last_active_date"] == "2026-03-05"
        assert data["transition"] == STARTED


class TestLocalActivityDate:

    def test_timezone_shifts_the_day(self):
        occurred = datetime(2026, 3, 2, 23, 30, tzinfo=timezone.utc)
        assert local_activity_date(occurred, "Asia/Tokyo") == date(2026, 3, 3)
        assert local_activity_date(occurred, "America/Los_Angeles") == date(2026, 3, 2)

    def test_naive_datetime_is_utc(self):
        assert local_activity_date(datetime(2026, 3, 2, 23, 30), "UTC") == date(2026, 3, 2)

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError):
            local_activity_date(datetime(2026, 3, 2, tzinfo=timezone.utc), "Mars/Olympus_Mons")
