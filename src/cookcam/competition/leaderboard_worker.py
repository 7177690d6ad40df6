"""Leaderboard rebuild worker: periodic snapshot rebuilds.

Intervals:
- Current daily/weekly/monthly/all-time windows: every minute
- Windows marked dirty in Redis by other processes: every 15 seconds
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis

from cookcam.competition.leaderboard_service import DIRTY_KEY, LeaderboardRanker
from cookcam.competition.window_utils import current_window_ids
from cookcam.config import get_settings
from cookcam.database import close_db, get_session_factory, init_db
from cookcam.errors import ValidationError
from cookcam.logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def leaderboard_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url, settings)
    redis_client = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True, max_connections=10)
    ctx["redis"] = redis_client
    ctx["ranker"] = LeaderboardRanker(get_session_factory(), redis_client, settings)
    logger.info("Leaderboard worker started")


async def leaderboard_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Leaderboard worker shut down")


async def rebuild_current_leaderboards(ctx: dict) -> int:  # type: ignore[type-arg]
    """Rebuild every current window. Returns number of windows rebuilt."""
    ranker: LeaderboardRanker = ctx["ranker"]
    rebuilt = await ranker.rebuild_current()
    logger.info("Rebuilt %d leaderboard windows", rebuilt)
    return rebuilt


async def rebuild_dirty_leaderboards(ctx: dict) -> int:  # type: ignore[type-arg]
    """Rebuild windows other processes marked dirty."""
    ranker: LeaderboardRanker = ctx["ranker"]
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client is None:
        return 0

    marks = await redis_client.hgetall(DIRTY_KEY)
    current = set(current_window_ids(ranker.clock()))
    rebuilt = 0
    for window_id, generation in sorted(marks.items()):
        if int(generation) <= 0:
            # Settled marks for past windows are never touched again.
            if window_id not in current:
                await redis_client.hdel(DIRTY_KEY, window_id)
            continue
        try:
            await ranker.rebuild(window_id)
        except ValidationError:
            logger.warning("Dropping unknown leaderboard window %s from dirty marks", window_id)
            await redis_client.hdel(DIRTY_KEY, window_id)
            continue
        rebuilt += 1
    return rebuilt


class LeaderboardWorkerSettings:
    """arq worker settings for leaderboard rebuilds."""

    functions = [rebuild_current_leaderboards, rebuild_dirty_leaderboards]
    on_startup = leaderboard_startup
    on_shutdown = leaderboard_shutdown
    max_jobs = 2
    job_timeout = 300
