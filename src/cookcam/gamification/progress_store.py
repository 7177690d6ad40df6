"""Progress store: per-user serialization and progression reads.

Two layers keep concurrent awards for the same user from interleaving:

1. ``UserLocks`` holds an in-process ``asyncio.Lock`` per user for the
   duration of the read-modify-write. Different users get different locks.
2. ``UserProgress.version`` is an optimistic revision checked by every
   UPDATE, so writers in other processes are caught as ``ConflictError``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from cookcam.db.models import UserProgress, XpEvent
from cookcam.errors import ConflictError, RetryableError

logger = logging.getLogger(__name__)

FOLLOWUP_PENDING = "pending"
FOLLOWUP_DONE = "done"


class UserLocks:
    """Per-user mutual exclusion with bounded acquisition time.

    Locks are created on demand and dropped once no task holds or waits on
    them, so the registry only grows with the number of active users.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._refs[user_id] = self._refs.get(user_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise RetryableError(
                    "Timed out waiting for the user's progress lock",
                    user_id=user_id,
                    operation="award_xp",
                ) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._refs[user_id] -= 1
            if self._refs[user_id] == 0:
                del self._refs[user_id]
                del self._locks[user_id]


@dataclass(frozen=True)
class ProgressSnapshot:
    """Read-only view of a user's progress handed to evaluators."""

    user_id: str
    total_xp: int = 0
    level: int = 1
    current_streak_days: int = 0
    longest_streak_days: int = 0
    last_active_date: date | None = None
    streak_shields: int = 0
    creator_tier: int = 0
    mystery_box_pity: int = 0
    version: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_active_date"] = self.last_active_date.isoformat() if self.last_active_date else None
        return data


def snapshot(row: UserProgress) -> ProgressSnapshot:
    return ProgressSnapshot(
        user_id=row.user_id,
        total_xp=row.total_xp,
        level=row.level,
        current_streak_days=row.current_streak_days,
        longest_streak_days=row.longest_streak_days,
        last_active_date=row.last_active_date,
        streak_shields=row.streak_shields,
        creator_tier=row.creator_tier,
        mystery_box_pity=row.mystery_box_pity,
        version=row.version,
    )


async def get_progress_row(db: AsyncSession, user_id: str) -> UserProgress | None:
    result = await db.execute(select(UserProgress).where(UserProgress.user_id == user_id))
    return result.scalar_one_or_none()


async def ensure_progress(db: AsyncSession, user_id: str, now: datetime) -> UserProgress:
    """Get or create the user's progress row inside the caller's transaction.

    A concurrent creation by another process surfaces as IntegrityError on
    flush; the caller rolls back and retries.
    """
    progress = await get_progress_row(db, user_id)
    if progress is None:
        progress = UserProgress(
            user_id=user_id,
            total_xp=0,
            level=1,
            current_streak_days=0,
            longest_streak_days=0,
            streak_shields=0,
            creator_tier=0,
            mystery_box_pity=0,
            created_at=now,
            updated_at=now,
        )
        db.add(progress)
        await db.flush()
    return progress


async def get_event_by_key(db: AsyncSession, idempotency_key: str) -> XpEvent | None:
    result = await db.execute(select(XpEvent).where(XpEvent.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def count_session_actions(db: AsyncSession, user_id: str, action_type: str, session_id: str) -> int:
    """Prior events of ``action_type`` in the same client session."""
    result = await db.execute(
        select(func.count(XpEvent.id)).where(
            XpEvent.user_id == user_id,
            XpEvent.action_type == action_type,
            XpEvent.session_id == session_id,
        )
    )
    return int(result.scalar_one())


async def has_action_on(db: AsyncSession, user_id: str, action_type: str, day: date) -> bool:
    result = await db.execute(
        select(XpEvent.id)
        .where(
            XpEvent.user_id == user_id,
            XpEvent.action_type == action_type,
            XpEvent.reference_date == day,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def count_actions(
    db: AsyncSession,
    user_id: str,
    action_type: str,
    *,
    window_days: int | None = None,
    reference_date: date | None = None,
) -> int:
    """Events of ``action_type`` for a user, optionally limited to the last N local days."""
    query = select(func.count(XpEvent.id)).where(
        XpEvent.user_id == user_id,
        XpEvent.action_type == action_type,
    )
    if window_days is not None and reference_date is not None:
        query = query.where(XpEvent.reference_date > reference_date - timedelta(days=window_days))
    result = await db.execute(query)
    return int(result.scalar_one())


async def pending_followup_events(db: AsyncSession, limit: int, max_attempts: int) -> list[XpEvent]:
    """Top-level events whose achievement/reward followups have not completed."""
    result = await db.execute(
        select(XpEvent)
        .where(
            XpEvent.followup_status == FOLLOWUP_PENDING,
            XpEvent.followup_attempts < max_attempts,
            XpEvent.depth == 0,
        )
        .order_by(XpEvent.applied_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def commit_progress(db: AsyncSession, user_id: str, operation: str = "award_xp") -> None:
    """Commit, mapping an optimistic version mismatch to ConflictError."""
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise ConflictError(
            "Progress row changed concurrently",
            user_id=user_id,
            operation=operation,
        ) from None
