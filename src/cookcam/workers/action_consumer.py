"""Standalone runner for the action-trigger consumer.

Reads user action events (recipe completed, ingredient scanned, login)
from a Redis Stream and awards XP through the orchestrator. Each message
carries either a JSON ``data`` field or flat fields:

    user_id, action_type, idempotency_key, occurred_at, timezone, session_id

Malformed or rejected messages are logged and acknowledged. Messages that
fail with a retryable error stay in this consumer's pending list and are
replayed at the start of each read pass.

Usage: python -m cookcam.workers.action_consumer
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Any

import redis.asyncio as aioredis

from cookcam.config import get_settings
from cookcam.database import close_db, get_session_factory, init_db
from cookcam.errors import PersistenceError, RetryableError, ValidationError
from cookcam.gamification.xp_service import XpAwardOrchestrator
from cookcam.logging_setup import setup_logging

logger = logging.getLogger(__name__)

ACKED = "acked"
REJECTED = "rejected"
RETRY = "retry"

_running = True


def parse_message(raw_data: dict[str, Any]) -> dict[str, Any]:
    """Decode a stream entry into an action event dict."""
    data_str = raw_data.get("data")
    if isinstance(data_str, (str, bytes)):
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            data = dict(raw_data)
        else:
            if not isinstance(data, dict):
                data = dict(raw_data)
    else:
        data = dict(raw_data)
    data.pop("data", None)
    return data


async def ensure_consumer_group(redis_client: aioredis.Redis, stream: str, group: str) -> None:
    """Create the consumer group (idempotent)."""
    try:
        await redis_client.xgroup_create(stream, group, id="0", mkstream=True)
        logger.info("Created consumer group %s for %s", group, stream)
    except aioredis.ResponseError as e:
        if "BUSYGROUP" not in str(e):
            raise


async def process_message(
    redis_client: aioredis.Redis,
    orchestrator: XpAwardOrchestrator,
    stream: str,
    group: str,
    msg_id: str,
    raw_data: dict[str, Any] | None,
) -> str:
    """Award one message. Returns ``acked``, ``rejected`` or ``retry``."""
    # A pending entry trimmed from the stream comes back without fields.
    try:
        result = await orchestrator.award_for_event(parse_message(raw_data or {}))
    except ValidationError as exc:
        logger.warning("Rejected %s from %s: %s", msg_id, stream, exc.message)
        await redis_client.xack(stream, group, msg_id)
        return REJECTED
    except (RetryableError, PersistenceError) as exc:
        logger.warning("Deferred %s from %s: %s", msg_id, stream, exc.message)
        return RETRY

    logger.info(
        "Processed %s: +%d XP (bonus %d) for %s",
        msg_id, result.xp_gained, result.bonus_xp, result.user_id,
    )
    await redis_client.xack(stream, group, msg_id)
    return ACKED


async def _handle(
    redis_client: aioredis.Redis,
    orchestrator: XpAwardOrchestrator,
    stream: str,
    group: str,
    events: list[Any] | None,
) -> list[str]:
    outcomes: list[str] = []
    for _stream_name, messages in events or []:
        for msg_id, raw_data in messages:
            try:
                outcome = await process_message(redis_client, orchestrator, stream, group, msg_id, raw_data)
            except Exception:
                logger.exception("Failed to process %s from %s", msg_id, stream)
                outcome = RETRY
            outcomes.append(outcome)
    return outcomes


async def consume_once(
    redis_client: aioredis.Redis,
    orchestrator: XpAwardOrchestrator,
    *,
    stream: str,
    group: str,
    consumer_name: str,
    count: int = 100,
    block: int | None = 5000,
) -> list[str]:
    """One read pass. Returns the outcome of every message handled.

    Entries already delivered to this consumer but never acknowledged are
    replayed first (``XREADGROUP`` from id ``0``); new entries are read
    after, blocking only when nothing was pending.
    """
    pending = await redis_client.xreadgroup(
        groupname=group,
        consumername=consumer_name,
        streams={stream: "0"},
        count=count,
    )
    outcomes = await _handle(redis_client, orchestrator, stream, group, pending)

    fresh = await redis_client.xreadgroup(
        groupname=group,
        consumername=consumer_name,
        streams={stream: ">"},
        count=count,
        block=None if outcomes else block,
    )
    outcomes.extend(await _handle(redis_client, orchestrator, stream, group, fresh))
    return outcomes


async def consume(
    redis_client: aioredis.Redis,
    orchestrator: XpAwardOrchestrator,
    *,
    stream: str,
    group: str,
    consumer_name: str,
    retry_delay: float = 5.0,
) -> None:
    """Main consumer loop."""
    while _running:
        try:
            outcomes = await consume_once(
                redis_client,
                orchestrator,
                stream=stream,
                group=group,
                consumer_name=consumer_name,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            await asyncio.sleep(1)
            continue

        # Everything deferred: back off before replaying the pending list.
        if outcomes and all(o == RETRY for o in outcomes):
            await asyncio.sleep(retry_delay)


async def main() -> None:
    """Run the action consumer."""
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
    orchestrator = XpAwardOrchestrator(get_session_factory(), redis_client, settings)

    loop = asyncio.get_running_loop()

    def _stop() -> None:
        global _running  # noqa: PLW0603
        _running = False

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _stop)

    logger.info("Starting action consumer (consumer=%s)", settings.action_consumer_name)

    try:
        await consume(
            redis_client,
            orchestrator,
            stream=settings.action_stream,
            group=settings.action_consumer_group,
            consumer_name=settings.action_consumer_name,
            retry_delay=settings.action_retry_delay_seconds,
        )
    finally:
        await orchestrator.ranker.drain()
        await redis_client.aclose()
        await close_db()
        logger.info("Action consumer stopped")


if __name__ == "__main__":
    asyncio.run(main())
