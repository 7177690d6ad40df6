"""Leaderboard ranker: materialized, read-only snapshots per time window.

Awards never touch leaderboard rows. They call ``notify`` which only marks
the affected windows dirty; snapshots are rebuilt from ``xp_events`` by the
periodic worker, or lazily on read once a dirty window is older than the
staleness bound. Each rebuild writes a new snapshot, so a reader paging
through ``snapshot_id`` never sees duplicate or missing ranks.

Dirty marks are generation counters, in memory and in the Redis hash
``leaderboard:dirty``. A rebuild reads the counter before aggregating and
subtracts only what it saw, so an award landing mid-rebuild keeps its
window dirty.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cookcam.competition.window_utils import (
    Window,
    as_utc,
    calculate_percentile,
    current_window_ids,
    parse_window,
    utcnow,
)
from cookcam.config import Settings, get_settings
from cookcam.db.models import LeaderboardEntry, LeaderboardSnapshot, XpEvent
from cookcam.errors import ValidationError
from cookcam.redis_client import publish_event

logger = logging.getLogger(__name__)

DIRTY_KEY = "leaderboard:dirty"
XP_AWARDED_CHANNEL = "pubsub:xp_awarded"


def rank_entries(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Rank users deterministically.

    Sort: xp_in_window DESC, reached_at ASC (first to reach the total wins),
    user_id ASC as the final tiebreaker. Ranks are 1..N with no duplicates.
    """
    def sort_key(r: dict[str, Any]) -> tuple[int, datetime, str]:
        return (-r["xp_in_window"], as_utc(r["reached_at"]), str(r["user_id"]))

    ranked = sorted(rows, key=sort_key)
    return [{**r, "rank": i} for i, r in enumerate(ranked, start=1)]


def _entry_to_dict(entry: LeaderboardEntry) -> dict:
    return {
        "rank": entry.rank,
        "user_id": entry.user_id,
        "xp_in_window": entry.xp_in_window,
        "reached_at": as_utc(entry.reached_at).isoformat(),
    }


class LeaderboardRanker:
    """Builds and serves leaderboard snapshots."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: object = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.settings = settings or get_settings()
        self.clock = clock
        self._dirty: dict[str, int] = {}
        self._rebuild_locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()

    # --- Notifications ---

    def notify(self, user_id: str, new_total_xp: int, applied_at: datetime) -> None:
        """Mark the current windows dirty. Never blocks or raises into the award path."""
        window_ids = current_window_ids(applied_at)
        for window_id in window_ids:
            self._dirty[window_id] = self._dirty.get(window_id, 0) + 1

        if self.redis is None:
            return
        task = asyncio.create_task(self._broadcast(user_id, new_total_xp, window_ids))
        self._tasks.add(task)
        task.add_done_callback(self._on_broadcast_done)

    async def _broadcast(self, user_id: str, new_total_xp: int, window_ids: list[str]) -> None:
        try:
            for window_id in window_ids:
                await self.redis.hincrby(DIRTY_KEY, window_id, 1)  # type: ignore[attr-defined]
        except Exception:
            logger.warning("Failed to mark leaderboard windows dirty", exc_info=True)
        await publish_event(self.redis, XP_AWARDED_CHANNEL, {"user_id": user_id, "total_xp": new_total_xp})

    def _on_broadcast_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Leaderboard notification failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _remote_generation(self, window_id: str) -> int:
        if self.redis is None:
            return 0
        try:
            return int(await self.redis.hget(DIRTY_KEY, window_id) or 0)  # type: ignore[attr-defined]
        except Exception:
            logger.warning("Failed to read leaderboard dirty marks", exc_info=True)
            return 0

    async def _is_dirty(self, window_id: str) -> bool:
        if self._dirty.get(window_id, 0) > 0:
            return True
        return await self._remote_generation(window_id) > 0

    async def _clear_dirty(self, window_id: str, seen_local: int, seen_remote: int) -> None:
        """Subtract the marks a rebuild has covered; later marks survive."""
        remaining = self._dirty.get(window_id, 0) - seen_local
        if remaining > 0:
            self._dirty[window_id] = remaining
        else:
            self._dirty.pop(window_id, None)
        if self.redis is not None and seen_remote:
            try:
                await self.redis.hincrby(DIRTY_KEY, window_id, -seen_remote)  # type: ignore[attr-defined]
            except Exception:
                logger.warning("Failed to clear leaderboard dirty marks", exc_info=True)

    # --- Rebuilds ---

    async def _aggregate(self, db: AsyncSession, window: Window) -> list[dict[str, Any]]:
        query = (
            select(
                XpEvent.user_id,
                func.sum(XpEvent.raw_amount).label("xp"),
                func.max(XpEvent.applied_at).label("reached_at"),
            )
            .where(XpEvent.raw_amount > 0)
            .group_by(XpEvent.user_id)
        )
        if window.start is not None:
            query = query.where(XpEvent.applied_at >= window.start)
        if window.end is not None:
            query = query.where(XpEvent.applied_at < window.end)

        result = await db.execute(query)
        return [
            {"user_id": row.user_id, "xp_in_window": int(row.xp), "reached_at": as_utc(row.reached_at)}
            for row in result
            if row.xp
        ]

    async def rebuild(self, window_id: str) -> dict:
        """Write a new snapshot for ``window_id`` and prune old ones."""
        window = parse_window(window_id, self.clock())
        # Per period, not per window id, so the map stays bounded.
        lock = self._rebuild_locks.setdefault(window.period, asyncio.Lock())
        async with lock:
            return await self._rebuild(window)

    async def _rebuild(self, window: Window) -> dict:
        built_at = self.clock()
        seen_local = self._dirty.get(window.window_id, 0)
        seen_remote = await self._remote_generation(window.window_id)
        async with self.session_factory() as db:
            ranked = rank_entries(await self._aggregate(db, window))

            snap = LeaderboardSnapshot(
                window_id=window.window_id,
                period=window.period,
                built_at=built_at,
                entry_count=len(ranked),
            )
            db.add(snap)
            await db.flush()

            db.add_all([
                LeaderboardEntry(
                    snapshot_id=snap.id,
                    window_id=window.window_id,
                    user_id=r["user_id"],
                    xp_in_window=r["xp_in_window"],
                    reached_at=r["reached_at"],
                    rank=r["rank"],
                )
                for r in ranked
            ])

            old = await db.execute(
                select(LeaderboardSnapshot.id)
                .where(LeaderboardSnapshot.window_id == window.window_id)
                .order_by(LeaderboardSnapshot.built_at.desc(), LeaderboardSnapshot.id.desc())
                .offset(max(1, self.settings.leaderboard_snapshots_retained))
            )
            stale_ids = [row[0] for row in old]
            if stale_ids:
                await db.execute(delete(LeaderboardEntry).where(LeaderboardEntry.snapshot_id.in_(stale_ids)))
                await db.execute(delete(LeaderboardSnapshot).where(LeaderboardSnapshot.id.in_(stale_ids)))

            await db.commit()
            snapshot_id = snap.id

        await self._clear_dirty(window.window_id, seen_local, seen_remote)
        logger.info("Rebuilt leaderboard %s: %d entries (snapshot %d)", window.window_id, len(ranked), snapshot_id)
        return {
            "window_id": window.window_id,
            "snapshot_id": snapshot_id,
            "built_at": built_at.isoformat(),
            "entry_count": len(ranked),
        }

    async def rebuild_current(self) -> int:
        """Rebuild every current window and any past window still marked dirty.

        Returns the number rebuilt.
        """
        rebuilt = 0
        for window_id in sorted(set(current_window_ids(self.clock())) | set(self._dirty)):
            await self.rebuild(window_id)
            rebuilt += 1
        return rebuilt

    # --- Reads ---

    async def _latest_snapshot(self, db: AsyncSession, window_id: str) -> LeaderboardSnapshot | None:
        result = await db.execute(
            select(LeaderboardSnapshot)
            .where(LeaderboardSnapshot.window_id == window_id)
            .order_by(LeaderboardSnapshot.built_at.desc(), LeaderboardSnapshot.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _resolve_snapshot(self, window: Window, snapshot_id: int | None) -> LeaderboardSnapshot:
        async with self.session_factory() as db:
            if snapshot_id is not None:
                snap = await db.get(LeaderboardSnapshot, snapshot_id)
                if snap is None or snap.window_id != window.window_id:
                    raise ValidationError(
                        f"Snapshot {snapshot_id} is not available for {window.window_id}",
                        operation="get_leaderboard",
                        context={"window_id": window.window_id, "snapshot_id": snapshot_id},
                    )
                return snap
            snap = await self._latest_snapshot(db, window.window_id)

        if snap is not None:
            age = self.clock() - as_utc(snap.built_at)
            max_age = timedelta(seconds=self.settings.leaderboard_max_staleness_seconds)
            if age < max_age or not await self._is_dirty(window.window_id):
                return snap

        await self.rebuild(window.window_id)
        async with self.session_factory() as db:
            snap = await self._latest_snapshot(db, window.window_id)
        if snap is None:
            msg = f"leaderboard snapshot for {window.window_id} missing after rebuild"
            raise RuntimeError(msg)
        return snap

    async def get_leaderboard(
        self,
        window_id: str,
        page: int = 1,
        per_page: int | None = None,
        snapshot_id: int | None = None,
    ) -> dict:
        """One page of a ranked snapshot.

        Pass the returned ``snapshot_id`` back to page through the same
        snapshot while newer ones are being built.
        """
        per_page = per_page or self.settings.leaderboard_page_size
        if page < 1 or per_page < 1 or per_page > self.settings.leaderboard_max_page_size:
            raise ValidationError(
                "Invalid page or page size",
                operation="get_leaderboard",
                context={"page": page, "per_page": per_page},
            )

        window = parse_window(window_id, self.clock())
        snap = await self._resolve_snapshot(window, snapshot_id)

        async with self.session_factory() as db:
            result = await db.execute(
                select(LeaderboardEntry)
                .where(LeaderboardEntry.snapshot_id == snap.id)
                .order_by(LeaderboardEntry.rank)
                .offset((page - 1) * per_page)
                .limit(per_page)
            )
            entries = [_entry_to_dict(e) for e in result.scalars()]

        return {
            "window_id": window.window_id,
            "period": window.period,
            "snapshot_id": snap.id,
            "built_at": as_utc(snap.built_at).isoformat(),
            "total": snap.entry_count,
            "page": page,
            "per_page": per_page,
            "entries": entries,
        }

    async def get_user_rank(self, window_id: str, user_id: str) -> dict:
        """A user's rank in the latest snapshot of a window."""
        window = parse_window(window_id, self.clock())
        snap = await self._resolve_snapshot(window, None)

        async with self.session_factory() as db:
            result = await db.execute(
                select(LeaderboardEntry).where(
                    LeaderboardEntry.snapshot_id == snap.id,
                    LeaderboardEntry.user_id == user_id,
                )
            )
            entry = result.scalar_one_or_none()

        if entry is None:
            return {"window_id": window.window_id, "rank": 0, "xp_in_window": 0, "total": snap.entry_count, "percentile": 0.0}
        return {
            "window_id": window.window_id,
            "rank": entry.rank,
            "xp_in_window": entry.xp_in_window,
            "total": snap.entry_count,
            "percentile": calculate_percentile(entry.rank, snap.entry_count),
        }
