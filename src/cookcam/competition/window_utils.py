"""Leaderboard window identifiers and UTC boundary helpers.

Window ids:
    daily:YYYY-MM-DD    one UTC day
    weekly:YYYY-Www     one ISO week, Monday 00:00 UTC onwards
    monthly:YYYY-MM     one calendar month
    alltime             everything

The bare periods ``daily``, ``weekly`` and ``monthly`` resolve to the
window containing "now".
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from cookcam.errors import ValidationError

PERIODS = ("daily", "weekly", "monthly", "alltime")


@dataclass(frozen=True)
class Window:
    window_id: str
    period: str
    start: datetime | None = None
    end: datetime | None = None  # exclusive


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (sqlite returns them naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def get_week_iso(dt: datetime | date) -> str:
    """ISO week string e.g. '2026-W09'. Uses %G-W%V (ISO year + ISO week)."""
    return dt.strftime("%G-W%V")


def get_monday(dt: datetime | date) -> date:
    """Monday of the ISO week containing dt."""
    d = dt.date() if isinstance(dt, datetime) else dt
    return d - timedelta(days=d.weekday())


def _midnight(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def _next_month(d: date) -> date:
    return date(d.year + 1, 1, 1) if d.month == 12 else date(d.year, d.month + 1, 1)


def current_window_id(period: str, now: datetime | None = None) -> str:
    now = as_utc(now or utcnow())
    if period == "daily":
        return f"daily:{now.date().isoformat()}"
    if period == "weekly":
        return f"weekly:{get_week_iso(now)}"
    if period == "monthly":
        return f"monthly:{now.strftime('%Y-%m')}"
    if period == "alltime":
        return "alltime"
    raise ValidationError(f"Unknown leaderboard period: {period!r}", operation="get_leaderboard")


def current_window_ids(now: datetime | None = None) -> list[str]:
    return [current_window_id(period, now) for period in PERIODS]


def parse_window(window_id: str, now: datetime | None = None) -> Window:
    """Resolve a window id (or bare period) to its UTC boundaries."""
    if window_id in PERIODS:
        window_id = current_window_id(window_id, now)
    if window_id == "alltime":
        return Window("alltime", "alltime")

    period, _, key = window_id.partition(":")
    try:
        if period == "daily":
            start = date.fromisoformat(key)
            if start.isoformat() != key:
                raise ValueError(key)
            end = start + timedelta(days=1)
        elif period == "weekly":
            year, _, week = key.partition("-W")
            start = date.fromisocalendar(int(year), int(week), 1)
            if get_week_iso(start) != key:
                raise ValueError(key)
            end = start + timedelta(days=7)
        elif period == "monthly":
            start = datetime.strptime(key, "%Y-%m").date()
            if start.strftime("%Y-%m") != key:
                raise ValueError(key)
            end = _next_month(start)
        else:
            raise ValueError(period)
    except ValueError:
        raise ValidationError(
            f"Unknown leaderboard window: {window_id!r}",
            operation="get_leaderboard",
            context={"window_id": window_id},
        ) from None

    return Window(window_id, period, _midnight(start), _midnight(end))


def calculate_percentile(rank: int, total: int) -> float:
    """Rank 1 of 100 -> 99.0, rank 100 of 100 -> 0.0."""
    if total <= 0 or rank <= 0:
        return 0.0
    return round(100 - (rank / total * 100), 2)
