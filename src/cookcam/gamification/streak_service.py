"""Daily streak state machine.

The tracker never reads the clock: the caller converts the action's
``occurred_at`` to a calendar day in the user's reference timezone and the
transition is computed against the stored ``last_active_date``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cookcam.errors import ValidationError

STARTED = "started"
SAME_DAY = "same_day"
CONTINUED = "continued"
SHIELDED = "shielded"
RESET = "reset"
OUT_OF_ORDER = "out_of_order"


@dataclass(frozen=True)
class StreakState:
    current_streak_days: int = 0
    longest_streak_days: int = 0
    last_active_date: date | None = None
    streak_shields: int = 0


@dataclass(frozen=True)
class StreakUpdate:
    state: StreakState
    transition: str
    shields_used: int = 0

    def as_dict(self) -> dict:
        return {
            "current_streak_days": self.state.current_streak_days,
            "longest_streak_days": self.state.longest_streak_days,
            "last_active_date": self.state.last_active_date.isoformat() if self.state.last_active_date else None,
            "streak_shields": self.state.streak_shields,
            "transition": self.transition,
            "shields_used": self.shields_used,
        }


def local_activity_date(occurred_at: datetime, tz_name: str) -> date:
    """Calendar day of ``occurred_at`` in ``tz_name``. Naive datetimes are UTC."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(
            f"Unknown timezone: {tz_name!r}",
            operation="award_xp",
            context={"timezone": tz_name},
        ) from None
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    return occurred_at.astimezone(tz).date()


def advance_streak(state: StreakState, activity_date: date, grace_days: int = 0) -> StreakUpdate:
    """Apply one active day to the streak.

    - first activity ever: streak starts at 1
    - same day: unchanged
    - next day, or within ``grace_days`` extra missed days: +1
    - longer gap: missed days beyond the grace period are covered by streak
      shields if enough are held (one per day), otherwise reset to 1
    - a day earlier than ``last_active_date`` (late delivery): unchanged
    """
    last = state.last_active_date

    if last is None or state.current_streak_days <= 0:
        new = replace(
            state,
            current_streak_days=1,
            longest_streak_days=max(state.longest_streak_days, 1),
            last_active_date=activity_date,
        )
        return StreakUpdate(new, STARTED)

    gap = (activity_date - last).days
    if gap == 0:
        return StreakUpdate(state, SAME_DAY)
    if gap < 0:
        return StreakUpdate(state, OUT_OF_ORDER)

    missed = gap - 1
    uncovered = max(0, missed - grace_days)

    if uncovered == 0:
        transition = CONTINUED
        shields_used = 0
    elif uncovered <= state.streak_shields:
        transition = SHIELDED
        shields_used = uncovered
    else:
        new = replace(state, current_streak_days=1, last_active_date=activity_date)
        return StreakUpdate(new, RESET)

    current = state.current_streak_days + 1
    new = replace(
        state,
        current_streak_days=current,
        longest_streak_days=max(state.longest_streak_days, current),
        last_active_date=activity_date,
        streak_shields=state.streak_shields - shields_used,
    )
    return StreakUpdate(new, transition, shields_used)
