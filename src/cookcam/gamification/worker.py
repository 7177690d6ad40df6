"""Progression worker: followup sweeper and action-stream consumer job.

Worker settings follow the arq convention (ctx dict, startup/shutdown
hooks, a ``functions`` list) so the same module runs under arq or the
standalone runner in ``cookcam.workers.action_consumer``.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis

from cookcam.config import get_settings
from cookcam.database import close_db, get_session_factory, init_db
from cookcam.gamification.seed import seed_achievements
from cookcam.gamification.xp_service import XpAwardOrchestrator
from cookcam.logging_setup import setup_logging
from cookcam.workers.action_consumer import consume, ensure_consumer_group

logger = logging.getLogger(__name__)


async def progression_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB + Redis and build the orchestrator."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url, settings)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await ensure_consumer_group(redis_client, settings.action_stream, settings.action_consumer_group)

    async with get_session_factory()() as db:
        await seed_achievements(db)

    ctx["redis"] = redis_client
    ctx["orchestrator"] = XpAwardOrchestrator(get_session_factory(), redis_client, settings)
    logger.info("Progression worker started")


async def progression_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Drain notifications and close connections."""
    orchestrator: XpAwardOrchestrator | None = ctx.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.ranker.drain()
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Progression worker shut down")


async def retry_pending_followups(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: re-drive failed achievement/reward followups. Runs every minute."""
    orchestrator: XpAwardOrchestrator = ctx["orchestrator"]
    return await orchestrator.retry_pending_followups(limit=ctx.get("followup_batch_size", 100))


async def consume_action_events(ctx: dict) -> None:  # type: ignore[type-arg]
    """Long-running task: feed the action stream into the orchestrator."""
    settings = get_settings()
    await consume(
        ctx["redis"],
        ctx["orchestrator"],
        stream=settings.action_stream,
        group=settings.action_consumer_group,
        consumer_name=settings.action_consumer_name,
        retry_delay=settings.action_retry_delay_seconds,
    )


class ProgressionWorkerSettings:
    """arq worker settings for the progression worker."""

    functions = [consume_action_events, retry_pending_followups]
    on_startup = progression_startup
    on_shutdown = progression_shutdown
    max_jobs = 4
    job_timeout = 0  # consume_action_events runs forever
    allow_abort_jobs = True
