"""XP award orchestrator.

``XpAwardOrchestrator.award_xp`` is the only way XP enters the system.
Every other award shape (stream events, achievement XP, mystery-box XP)
is funnelled through the same locked path:

1. Core mutation, one transaction under the user's lock: idempotency
   check, XP delta, level, streak and the ``xp_events`` row commit together
   or not at all.
2. Followups, after the core commit: achievements, mystery boxes and the
   creator tier. Each step is keyed deterministically off the event's
   idempotency key, so re-driving them after a failure never doubles an
   effect. A failure leaves the event ``pending`` for the sweeper and the
   caller still gets the committed core result.
3. Leaderboard notification, fire-and-forget.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, NoReturn

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cookcam.competition.leaderboard_service import LeaderboardRanker
from cookcam.competition.window_utils import as_utc, utcnow
from cookcam.config import Settings, get_settings
from cookcam.db.models import XpEvent
from cookcam.errors import (
    ConflictError,
    DuplicateRequest,
    PersistenceError,
    ProgressionError,
    RetryableError,
    ValidationError,
)
from cookcam.gamification.achievement_service import AchievementEvaluator
from cookcam.gamification.level_thresholds import get_curve
from cookcam.gamification.progress_store import (
    FOLLOWUP_DONE,
    FOLLOWUP_PENDING,
    ProgressSnapshot,
    UserLocks,
    commit_progress,
    count_session_actions,
    ensure_progress,
    get_event_by_key,
    get_progress_row,
    has_action_on,
    pending_followup_events,
    snapshot,
)
from cookcam.gamification.reward_service import (
    box_to_dict,
    evaluate_creator_tier,
    grant_mystery_box,
    mystery_box_history,
    mystery_box_stats,
    tier_name,
)
from cookcam.gamification.schemas import (
    AchievementProgress,
    AchievementsResponse,
    ActionEvent,
    AwardContext,
    LevelInfo,
    MysteryBoxHistory,
    MysteryBoxStats,
    ProgressionResult,
    ProgressResponse,
    StreakInfo,
)
from cookcam.gamification.streak_service import StreakState, StreakUpdate, advance_streak, local_activity_date
from cookcam.gamification.xp_rules import ActionType, compute_raw_amount, parse_action
from cookcam.redis_client import publish_event
from cookcam.resilience import calculate_backoff, is_transient_db_error, retry_with_backoff

logger = logging.getLogger(__name__)

MAX_USER_ID_LENGTH = 64
MAX_KEY_LENGTH = 128
MAX_HISTORY_LIMIT = 100


@dataclass(frozen=True)
class _AwardRequest:
    user_id: str
    action: ActionType
    key: str
    occurred_at: datetime
    reference_date: date
    session_id: str | None = None
    depth: int = 0
    parent_key: str | None = None
    amount: int | None = None  # fixed amount for internal awards


class XpAwardOrchestrator:
    """Applies XP awards exactly once and fans out to the progression components."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: object = None,
        settings: Settings | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
        ranker: LeaderboardRanker | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.settings = settings or get_settings()
        self.rng = rng or random.Random()
        self.clock = clock
        self.curve = get_curve(self.settings.level_base_xp, self.settings.level_growth, self.settings.max_level)
        self.locks = UserLocks(self.settings.user_lock_timeout_seconds)
        self.ranker = ranker or LeaderboardRanker(session_factory, redis, self.settings, clock)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def award_xp(
        self,
        user_id: str,
        action_type: str | ActionType,
        idempotency_key: str,
        context: AwardContext | dict | None = None,
    ) -> ProgressionResult:
        """Award XP for a user action.

        A repeated ``idempotency_key`` returns the stored result of the
        first call without applying anything again.

        Raises:
            ValidationError: unknown action type or malformed context.
            RetryableError: the user's row kept changing underneath us.
            PersistenceError: storage failed after retries.
        """
        _validate_identifier("user_id", user_id, MAX_USER_ID_LENGTH)
        _validate_identifier("idempotency_key", idempotency_key, MAX_KEY_LENGTH)
        action = parse_action(action_type)
        ctx = _parse_context(context)

        occurred_at = as_utc(ctx.occurred_at) if ctx.occurred_at else self.clock()
        req = _AwardRequest(
            user_id=user_id,
            action=action,
            key=idempotency_key,
            occurred_at=occurred_at,
            reference_date=local_activity_date(occurred_at, ctx.timezone),
            session_id=ctx.session_id,
        )

        with structlog.contextvars.bound_contextvars(user_id=user_id, idempotency_key=idempotency_key):
            async with self.locks.hold(user_id):
                result, applied = await self._award_locked(req)

            if applied:
                self.ranker.notify(user_id, result.new_total_xp, self.clock())
                await self._broadcast(result)
        return result

    async def award_for_event(self, event: ActionEvent | dict) -> ProgressionResult:
        """Adapter for action-trigger events; funnels into ``award_xp``."""
        if not isinstance(event, ActionEvent):
            try:
                event = ActionEvent.model_validate(event)
            except PydanticValidationError as exc:
                raise ValidationError(
                    "Malformed action event",
                    operation="award_for_event",
                    context={"errors": exc.errors(include_url=False)},
                ) from None
        context = AwardContext(
            timezone=event.timezone,
            session_id=event.session_id,
            occurred_at=event.occurred_at,
            metadata=event.metadata,
        )
        return await self.award_xp(event.user_id, event.action_type, event.idempotency_key, context)

    async def get_progress(self, user_id: str) -> ProgressResponse:
        """Current progress snapshot. Unknown users read as a fresh level-1 profile."""
        _validate_identifier("user_id", user_id, MAX_USER_ID_LENGTH)

        async def _read() -> ProgressSnapshot:
            async with self.session_factory() as db:
                row = await get_progress_row(db, user_id)
                return snapshot(row) if row is not None else ProgressSnapshot(user_id=user_id)

        snap = await self._with_persistence(_read, user_id=user_id, operation="get_progress")
        return ProgressResponse(
            user_id=user_id,
            total_xp=snap.total_xp,
            level=snap.level,
            level_info=self._level_info(snap.total_xp),
            current_streak_days=snap.current_streak_days,
            longest_streak_days=snap.longest_streak_days,
            last_active_date=snap.last_active_date,
            streak_shields=snap.streak_shields,
            creator_tier=snap.creator_tier,
            creator_tier_name=tier_name(snap.creator_tier),
        )

    async def get_achievements(self, user_id: str, timezone: str = "UTC") -> AchievementsResponse:
        """Unlocked achievements plus progress towards the locked/repeatable ones.

        Rolling windows such as "this week" are counted up to today's date in
        ``timezone``; the default reads them on the UTC calendar.
        """
        _validate_identifier("user_id", user_id, MAX_USER_ID_LENGTH)
        today = local_activity_date(self.clock(), timezone)

        async def _read() -> list[dict]:
            async with self.session_factory() as db:
                row = await get_progress_row(db, user_id)
                snap = snapshot(row) if row is not None else ProgressSnapshot(user_id=user_id)
                return await AchievementEvaluator(db).progress_for(snap, today)

        items = [
            AchievementProgress.model_validate(item)
            for item in await self._with_persistence(_read, user_id=user_id, operation="get_achievements")
        ]
        return AchievementsResponse(
            user_id=user_id,
            unlocked=[a for a in items if a.unlocked],
            in_progress=[a for a in items if not a.unlocked or a.repeatable],
        )

    async def get_leaderboard(
        self,
        window_id: str,
        page: int = 1,
        per_page: int | None = None,
        snapshot_id: int | None = None,
    ) -> dict:
        return await self.ranker.get_leaderboard(window_id, page, per_page, snapshot_id)

    async def get_mystery_box_history(self, user_id: str, limit: int = 20) -> MysteryBoxHistory:
        """The user's boxes, newest first, with their lifetime box count."""
        _validate_identifier("user_id", user_id, MAX_USER_ID_LENGTH)
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_HISTORY_LIMIT}",
                operation="get_mystery_box_history",
                context={"limit": limit},
            )

        async def _read() -> tuple[list[dict], int]:
            async with self.session_factory() as db:
                return await mystery_box_history(db, user_id, limit)

        history, total = await self._with_persistence(_read, user_id=user_id, operation="get_mystery_box_history")
        return MysteryBoxHistory(user_id=user_id, history=history, total_boxes_opened=total)

    async def get_mystery_box_stats(self) -> MysteryBoxStats:
        """Tier and reward-type distribution over the last 1000 boxes granted."""

        async def _read() -> dict:
            async with self.session_factory() as db:
                return await mystery_box_stats(db)

        stats = await self._with_persistence(_read, user_id=None, operation="get_mystery_box_stats")
        return MysteryBoxStats.model_validate(stats)

    async def retry_pending_followups(self, limit: int = 100) -> int:
        """Re-drive followups of events whose achievements/rewards failed.

        Returns the number of events completed in this pass.
        """
        async with self.session_factory() as db:
            events = await pending_followup_events(db, limit, self.settings.followup_max_attempts)
            requests = [_request_from_event(e) for e in events]

        completed = 0
        for req in requests:
            with structlog.contextvars.bound_contextvars(user_id=req.user_id, idempotency_key=req.key):
                try:
                    async with self.locks.hold(req.user_id):
                        result, _ = await self._award_locked(req)
                except ProgressionError as exc:
                    logger.warning("Followup re-drive for %s failed: %s", req.key, exc.message)
                    continue
            if not result.followups_pending:
                completed += 1
                await self._broadcast(result)
        if requests:
            logger.info("Re-drove followups: %d/%d completed", completed, len(requests))
        return completed

    # ------------------------------------------------------------------
    # Locked award path
    # ------------------------------------------------------------------

    async def _award_locked(self, req: _AwardRequest) -> tuple[ProgressionResult, bool]:
        """Core mutation plus followups. Caller holds the user's lock.

        Returns ``(result, applied)``; ``applied`` is False for duplicates.
        """
        try:
            core = await self._apply_core_with_retries(req)
        except DuplicateRequest as dup:
            stored = ProgressionResult.model_validate(dup.stored_result)
            if dup.followup_status == FOLLOWUP_DONE:
                return stored, False
            logger.info("Duplicate %s has pending followups, re-driving", req.key)
            redrive = _request_from_context(req, dup.context)
            return await self._run_followups(redrive, stored), False

        return await self._run_followups(req, core), True

    async def _apply_core_with_retries(self, req: _AwardRequest) -> ProgressionResult:
        s = self.settings
        for attempt in range(s.conflict_max_retries + 1):
            try:
                return await retry_with_backoff(
                    self._apply_core_timed,
                    req,
                    max_retries=s.persistence_max_retries,
                    base_delay=s.persistence_retry_base_delay,
                    max_delay=s.persistence_retry_max_delay,
                )
            except ConflictError:
                if attempt == s.conflict_max_retries:
                    raise RetryableError(
                        "Concurrent updates kept conflicting; retry with the same idempotency key",
                        user_id=req.user_id,
                        operation="award_xp",
                        context={"attempts": attempt + 1},
                    ) from None
                logger.info("Version conflict on %s, retry %d/%d", req.key, attempt + 1, s.conflict_max_retries)
                await asyncio.sleep(calculate_backoff(attempt, s.persistence_retry_base_delay, s.persistence_retry_max_delay))
            except ProgressionError:
                raise
            except (SQLAlchemyError, OSError, TimeoutError) as exc:
                raise PersistenceError(
                    "Storage unavailable while applying award",
                    transient=is_transient_db_error(exc),
                    user_id=req.user_id,
                    operation="award_xp",
                    context={"error": type(exc).__name__},
                ) from exc
        msg = "conflict retry loop exited without a result"
        raise RuntimeError(msg)

    async def _apply_core_timed(self, req: _AwardRequest) -> ProgressionResult:
        return await asyncio.wait_for(self._apply_core(req), timeout=self.settings.db_operation_timeout_seconds)

    async def _apply_core(self, req: _AwardRequest) -> ProgressionResult:
        """Apply the XP delta, level and streak in one transaction."""
        now = self.clock()
        async with self.session_factory() as db:
            try:
                existing = await get_event_by_key(db, req.key)
                if existing is not None:
                    _raise_duplicate(existing, req)

                progress = await ensure_progress(db, req.user_id, now)
                previous_level = progress.level
                base_amount, raw_amount = await self._amount(db, req)

                streak: StreakUpdate | None = None
                if req.depth == 0:
                    streak = advance_streak(
                        StreakState(
                            current_streak_days=progress.current_streak_days,
                            longest_streak_days=progress.longest_streak_days,
                            last_active_date=progress.last_active_date,
                            streak_shields=progress.streak_shields,
                        ),
                        req.reference_date,
                        self.settings.streak_grace_days,
                    )
                    progress.current_streak_days = streak.state.current_streak_days
                    progress.longest_streak_days = streak.state.longest_streak_days
                    progress.last_active_date = streak.state.last_active_date
                    progress.streak_shields = streak.state.streak_shields

                progress.total_xp += raw_amount
                progress.level = self.curve.resolve_level(progress.total_xp, progress.level)
                progress.updated_at = now

                result = ProgressionResult(
                    user_id=req.user_id,
                    idempotency_key=req.key,
                    action_type=req.action.value,
                    xp_gained=raw_amount,
                    new_total_xp=progress.total_xp,
                    previous_level=previous_level,
                    level=progress.level,
                    leveled_up=progress.level > previous_level,
                    level_info=self._level_info(progress.total_xp),
                    streak=_streak_info(snapshot(progress), streak),
                    creator_tier=progress.creator_tier,
                )

                db.add(XpEvent(
                    idempotency_key=req.key,
                    user_id=req.user_id,
                    action_type=req.action.value,
                    base_amount=base_amount,
                    raw_amount=raw_amount,
                    session_id=req.session_id,
                    parent_key=req.parent_key,
                    depth=req.depth,
                    occurred_at=req.occurred_at,
                    reference_date=req.reference_date,
                    applied_at=now,
                    result=result.model_dump(mode="json"),
                    followup_status=FOLLOWUP_PENDING,
                ))
                await commit_progress(db, req.user_id)
            except IntegrityError:
                # Another process applied the same key or created the row first
                await db.rollback()
                existing = await get_event_by_key(db, req.key)
                if existing is None:
                    raise ConflictError(
                        "Integrity conflict while applying award",
                        user_id=req.user_id,
                        operation="award_xp",
                    ) from None
                _raise_duplicate(existing, req)

        logger.info(
            "Awarded %d XP to %s for %s (total %d, level %d%s)",
            raw_amount, req.user_id, req.action.value, result.new_total_xp, result.level,
            ", level up" if result.leveled_up else "",
        )
        return result

    async def _amount(self, db: AsyncSession, req: _AwardRequest) -> tuple[int, int]:
        if req.amount is not None:
            return req.amount, req.amount

        s = self.settings
        prior = 0
        if req.session_id and req.action.value in s.xp_diminishing_actions:
            prior = await count_session_actions(db, req.user_id, req.action.value, req.session_id)
        logged_in_today = False
        if req.action is ActionType.DAILY_LOGIN:
            logged_in_today = await has_action_on(db, req.user_id, req.action.value, req.reference_date)

        return compute_raw_amount(
            req.action,
            prior_session_count=prior,
            already_logged_in_today=logged_in_today,
            diminishing_actions=frozenset(s.xp_diminishing_actions),
            factor=s.xp_diminishing_factor,
            floor=s.xp_diminishing_floor,
        )

    # ------------------------------------------------------------------
    # Followups
    # ------------------------------------------------------------------

    async def _run_followups(self, req: _AwardRequest, core: ProgressionResult) -> ProgressionResult:
        """Run achievements/rewards/tier and record the outcome on the event."""
        try:
            result, nested_pending = await self._followups(req, core)
        except Exception as exc:
            logger.exception("Followups failed for %s", req.key)
            await self._mark_followups_failed(req, repr(exc))
            return core.model_copy(update={"followups_pending": True})

        if nested_pending:
            await self._mark_followups_failed(req, "nested award followups pending")
            return result.model_copy(update={"followups_pending": True})

        try:
            await self._store_final_result(req, result)
        except (SQLAlchemyError, OSError, TimeoutError):
            # Effects are applied; the event stays pending and the sweeper settles it
            logger.exception("Failed to record completed followups for %s", req.key)
        return result

    async def _followups(self, req: _AwardRequest, core: ProgressionResult) -> tuple[ProgressionResult, bool]:
        s = self.settings
        now = self.clock()
        evaluate = req.depth <= s.achievement_max_depth

        unlocked: list[dict] = []
        if evaluate:
            async with self.session_factory() as db:
                progress = await get_progress_row(db, req.user_id)
                if progress is None:
                    raise ConflictError("Progress row disappeared", user_id=req.user_id, operation="followups")
                unlocked = await AchievementEvaluator(db).evaluate(snapshot(progress), req.key, req.reference_date, now)
                await db.commit()

        nested: list[ProgressionResult] = []
        for unlock in unlocked:
            if unlock["xp_reward"] > 0:
                nested.append(await self._award_nested(
                    req, ActionType.ACHIEVEMENT_REWARD, f"{unlock['idempotency_key']}:xp", unlock["xp_reward"]
                ))

        rewards: list[dict] = []
        if evaluate:
            triggers = [f"level_up:{core.level}"] if core.leveled_up else []
            triggers += [f"achievement:{u['slug']}:{u['occurrence']}" for u in unlocked if u["milestone"]]
            for trigger in triggers:
                box, box_xp = await self._grant_box(req, trigger, now)
                rewards.append(box)
                if box_xp is not None:
                    nested.append(box_xp)

        tier_change = None
        if req.depth == 0:
            async with self.session_factory() as db:
                tier_change = await evaluate_creator_tier(db, req.user_id, now)

        async with self.session_factory() as db:
            progress = await get_progress_row(db, req.user_id)
            if progress is None:
                raise ConflictError("Progress row disappeared", user_id=req.user_id, operation="followups")
            final = snapshot(progress)

        data = core.model_dump()
        data["achievements_unlocked"] = list(unlocked)
        data["rewards_granted"] = list(rewards)
        for n in nested:
            data["bonus_xp"] += n.xp_gained + n.bonus_xp
            data["achievements_unlocked"] += [a.model_dump() for a in n.achievements_unlocked]
            data["rewards_granted"] += [r.model_dump() for r in n.rewards_granted]
        data.update(
            new_total_xp=final.total_xp,
            level=final.level,
            leveled_up=final.level > core.previous_level,
            level_info=self._level_info(final.total_xp).model_dump(),
            creator_tier=final.creator_tier,
            creator_tier_changed=tier_change,
            followups_pending=False,
        )
        data["streak"]["streak_shields"] = final.streak_shields

        return ProgressionResult.model_validate(data), any(n.followups_pending for n in nested)

    async def _award_nested(self, parent: _AwardRequest, action: ActionType, key: str, amount: int) -> ProgressionResult:
        """Internal award through the same idempotent path, one level deeper."""
        req = replace(
            parent,
            action=action,
            key=key,
            session_id=None,
            depth=parent.depth + 1,
            parent_key=parent.key,
            amount=amount,
        )
        result, _ = await self._award_locked(req)
        return result

    async def _grant_box(self, req: _AwardRequest, trigger: str, now: datetime) -> tuple[dict, ProgressionResult | None]:
        key = f"{req.key}:box:{trigger}"
        async with self.session_factory() as db:
            box, _ = await grant_mystery_box(
                db,
                req.user_id,
                key,
                trigger,
                rng=self.rng,
                pity_threshold=self.settings.mystery_box_pity_threshold,
                now=now,
            )
            box_data = box_to_dict(box)

        if box_data["reward_type"] != "xp":
            return box_data, None
        xp_result = await self._award_nested(req, ActionType.MYSTERY_BOX, f"{key}:xp", int(box_data["reward_value"]))
        return box_data, xp_result

    async def _store_final_result(self, req: _AwardRequest, result: ProgressionResult) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(XpEvent)
                .where(XpEvent.idempotency_key == req.key)
                .values(result=result.model_dump(mode="json"), followup_status=FOLLOWUP_DONE, last_error=None)
            )
            await db.commit()

    async def _mark_followups_failed(self, req: _AwardRequest, error: str) -> None:
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(XpEvent)
                    .where(XpEvent.idempotency_key == req.key)
                    .values(
                        followup_status=FOLLOWUP_PENDING,
                        followup_attempts=XpEvent.followup_attempts + 1,
                        last_error=error[:1000],
                    )
                )
                await db.commit()
        except (SQLAlchemyError, OSError, TimeoutError):
            # Still pending from the core commit, so the sweeper will find it
            logger.exception("Failed to record followup failure for %s", req.key)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _level_info(self, total_xp: int) -> LevelInfo:
        return LevelInfo(**self.curve.compute_level(total_xp))

    async def _with_persistence(self, func: Callable[[], Any], *, user_id: str | None, operation: str) -> Any:
        s = self.settings

        async def _timed() -> Any:
            return await asyncio.wait_for(func(), timeout=s.db_operation_timeout_seconds)

        try:
            return await retry_with_backoff(
                _timed,
                max_retries=s.persistence_max_retries,
                base_delay=s.persistence_retry_base_delay,
                max_delay=s.persistence_retry_max_delay,
            )
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            raise PersistenceError(
                f"Storage unavailable during {operation}",
                transient=is_transient_db_error(exc),
                user_id=user_id,
                operation=operation,
            ) from exc

    async def _broadcast(self, result: ProgressionResult) -> None:
        """Best-effort pub/sub events for activity feeds and overlays."""
        if self.redis is None:
            return
        if result.leveled_up:
            await publish_event(self.redis, "pubsub:level_up", {
                "user_id": result.user_id,
                "old_level": result.previous_level,
                "new_level": result.level,
                "title": result.level_info.title,
            })
        for achievement in result.achievements_unlocked:
            await publish_event(self.redis, "pubsub:achievement_unlocked", {
                "user_id": result.user_id,
                "slug": achievement.slug,
                "occurrence": achievement.occurrence,
            })
        for reward in result.rewards_granted:
            await publish_event(self.redis, "pubsub:mystery_box", {
                "user_id": result.user_id,
                "reward_id": reward.reward_id,
                "tier": reward.tier,
            })


def _validate_identifier(name: str, value: Any, max_length: int) -> None:
    if not isinstance(value, str) or not value.strip() or len(value) > max_length:
        raise ValidationError(
            f"{name} must be a non-empty string of at most {max_length} characters",
            operation="award_xp",
            context={name: str(value)[:max_length]},
        )


def _parse_context(context: AwardContext | dict | None) -> AwardContext:
    if context is None:
        return AwardContext()
    if isinstance(context, AwardContext):
        return context
    try:
        return AwardContext.model_validate(context)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Malformed award context",
            operation="award_xp",
            context={"errors": exc.errors(include_url=False)},
        ) from None


def _streak_info(snap: ProgressSnapshot, change: StreakUpdate | None) -> StreakInfo:
    return StreakInfo(
        current_streak_days=snap.current_streak_days,
        longest_streak_days=snap.longest_streak_days,
        last_active_date=snap.last_active_date,
        streak_shields=snap.streak_shields,
        transition=change.transition if change else None,
        shields_used=change.shields_used if change else 0,
    )


def _raise_duplicate(event: XpEvent, req: _AwardRequest) -> NoReturn:
    if event.user_id != req.user_id:
        raise ValidationError(
            "Idempotency key already used by another user",
            user_id=req.user_id,
            operation="award_xp",
            context={"idempotency_key": req.key},
        )
    raise DuplicateRequest(
        req.key,
        stored_result=event.result,
        followup_status=event.followup_status,
        user_id=event.user_id,
        operation="award_xp",
        context={
            "action_type": event.action_type,
            "occurred_at": event.occurred_at,
            "reference_date": event.reference_date,
            "session_id": event.session_id,
            "depth": event.depth,
            "parent_key": event.parent_key,
            "raw_amount": event.raw_amount,
        },
    )


def _request_from_context(req: _AwardRequest, ctx: dict[str, Any]) -> _AwardRequest:
    """Rebuild the original request of a stored event for re-driving its followups."""
    return _AwardRequest(
        user_id=req.user_id,
        action=ActionType(ctx["action_type"]),
        key=req.key,
        occurred_at=as_utc(ctx["occurred_at"]),
        reference_date=ctx["reference_date"],
        session_id=ctx["session_id"],
        depth=ctx["depth"],
        parent_key=ctx["parent_key"],
        amount=ctx["raw_amount"],
    )


def _request_from_event(event: XpEvent) -> _AwardRequest:
    return _AwardRequest(
        user_id=event.user_id,
        action=ActionType(event.action_type),
        key=event.idempotency_key,
        occurred_at=as_utc(event.occurred_at),
        reference_date=event.reference_date,
        session_id=event.session_id,
        depth=event.depth,
        parent_key=event.parent_key,
        amount=event.raw_amount,
    )
