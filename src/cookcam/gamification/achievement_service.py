"""Achievement criteria interpreter and unlock evaluation.

Criteria are stored as JSON on each achievement and parsed into a tagged
union keyed on ``kind``:

    {"kind": "xp_threshold", "min_xp": 1000}
    {"kind": "streak_length", "days": 7}
    {"kind": "action_count", "action_type": "complete_recipe", "count": 10, "window_days": 7}
    {"kind": "level_reached", "level": 5}
    {"kind": "all_of", "criteria": [...]}

Evaluation is a side-effect-free function of the progress snapshot plus
per-action event counts. Repeatable achievements scale their targets by
the occurrence being evaluated (10 recipes, then 20, then 30, ...).
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cookcam.db.models import Achievement, UserAchievement
from cookcam.gamification.progress_store import ProgressSnapshot, count_actions

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------


class XpThreshold(BaseModel):
    kind: Literal["xp_threshold"]
    min_xp: int = Field(ge=0)


class StreakLength(BaseModel):
    kind: Literal["streak_length"]
    days: int = Field(ge=1)
    use_longest: bool = False


class ActionCount(BaseModel):
    kind: Literal["action_count"]
    action_type: str
    count: int = Field(ge=1)
    window_days: int | None = Field(default=None, ge=1)


class LevelReached(BaseModel):
    kind: Literal["level_reached"]
    level: int = Field(ge=1)


class AllOf(BaseModel):
    kind: Literal["all_of"]
    criteria: list[Criteria] = Field(min_length=1)


Criteria = Annotated[
    Union[XpThreshold, StreakLength, ActionCount, LevelReached, AllOf],
    Field(discriminator="kind"),
]

AllOf.model_rebuild()

_criteria_adapter: TypeAdapter[Criteria] = TypeAdapter(Criteria)

CountKey = tuple[str, Union[int, None]]


def parse_criteria(data: dict) -> Criteria:
    """Parse stored criteria JSON. Raises ValueError on malformed input."""
    try:
        return _criteria_adapter.validate_python(data)
    except PydanticValidationError as exc:
        msg = f"invalid achievement criteria: {exc}"
        raise ValueError(msg) from exc


def required_counts(criteria: Criteria) -> set[CountKey]:
    """Every (action_type, window_days) slice the criteria needs counted."""
    if isinstance(criteria, ActionCount):
        return {(criteria.action_type, criteria.window_days)}
    if isinstance(criteria, AllOf):
        keys: set[CountKey] = set()
        for child in criteria.criteria:
            keys |= required_counts(child)
        return keys
    return set()


def criteria_progress(
    criteria: Criteria,
    snap: ProgressSnapshot,
    counts: dict[CountKey, int],
    occurrence: int = 1,
) -> tuple[int, int]:
    """Return ``(current, target)`` for display and unlock checks.

    For ``all_of`` the pair is (children satisfied, number of children).
    """
    if isinstance(criteria, XpThreshold):
        return snap.total_xp, criteria.min_xp * occurrence
    if isinstance(criteria, StreakLength):
        days = snap.longest_streak_days if criteria.use_longest else snap.current_streak_days
        return days, criteria.days * occurrence
    if isinstance(criteria, ActionCount):
        return counts.get((criteria.action_type, criteria.window_days), 0), criteria.count * occurrence
    if isinstance(criteria, LevelReached):
        return snap.level, criteria.level * occurrence
    if isinstance(criteria, AllOf):
        met = sum(1 for child in criteria.criteria if is_satisfied(child, snap, counts, occurrence))
        return met, len(criteria.criteria)
    msg = f"unsupported criteria: {criteria!r}"
    raise TypeError(msg)


def is_satisfied(
    criteria: Criteria,
    snap: ProgressSnapshot,
    counts: dict[CountKey, int],
    occurrence: int = 1,
) -> bool:
    current, target = criteria_progress(criteria, snap, counts, occurrence)
    return current >= target


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


def unlock_to_dict(ua: UserAchievement, achievement: Achievement) -> dict:
    return {
        "slug": achievement.slug,
        "name": achievement.name,
        "description": achievement.description,
        "category": achievement.category,
        "rarity": achievement.rarity,
        "xp_reward": achievement.xp_reward,
        "occurrence": ua.occurrence,
        "milestone": achievement.milestone,
        "unlocked_at": ua.unlocked_at.isoformat(),
        "idempotency_key": ua.idempotency_key,
    }


class AchievementEvaluator:
    """Evaluates active achievements against a user's progress snapshot."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self._achievement_cache: list[tuple[Achievement, Criteria]] | None = None

    async def _load_achievements(self) -> list[tuple[Achievement, Criteria]]:
        """Load and cache active achievements with their parsed criteria."""
        if self._achievement_cache is None:
            result = await self.db.execute(
                select(Achievement)
                .where(Achievement.is_active.is_(True))
                .order_by(Achievement.sort_order, Achievement.id)
            )
            loaded = []
            for achievement in result.scalars():
                try:
                    loaded.append((achievement, parse_criteria(achievement.criteria)))
                except ValueError:
                    logger.error("Skipping achievement %s with invalid criteria", achievement.slug, exc_info=True)
            self._achievement_cache = loaded
        return self._achievement_cache

    async def _unlocked_occurrences(self, user_id: str) -> dict[int, int]:
        """achievement_id -> highest occurrence unlocked."""
        result = await self.db.execute(
            select(UserAchievement.achievement_id, func.max(UserAchievement.occurrence))
            .where(UserAchievement.user_id == user_id)
            .group_by(UserAchievement.achievement_id)
        )
        return {row[0]: int(row[1]) for row in result.all()}

    async def _counts(
        self,
        user_id: str,
        achievements: list[tuple[Achievement, Criteria]],
        reference_date: date,
    ) -> dict[CountKey, int]:
        keys: set[CountKey] = set()
        for _, criteria in achievements:
            keys |= required_counts(criteria)
        counts: dict[CountKey, int] = {}
        for action_type, window_days in keys:
            counts[(action_type, window_days)] = await count_actions(
                self.db, user_id, action_type, window_days=window_days, reference_date=reference_date
            )
        return counts

    async def recorded_for_event(self, user_id: str, source_event_key: str) -> list[dict]:
        """Unlocks already recorded for an event (used when followups are re-driven)."""
        result = await self.db.execute(
            select(UserAchievement)
            .where(
                UserAchievement.user_id == user_id,
                UserAchievement.source_event_key == source_event_key,
            )
            .order_by(UserAchievement.id)
        )
        return [unlock_to_dict(ua, ua.achievement) for ua in result.scalars().unique()]

    async def evaluate(
        self,
        snap: ProgressSnapshot,
        source_event_key: str,
        reference_date: date,
        now: datetime,
    ) -> list[dict]:
        """Record newly satisfied achievements for ``snap.user_id``.

        Returns unlocks recorded for ``source_event_key``, including ones
        written by an earlier attempt of the same event. The caller commits.
        """
        achievements = await self._load_achievements()
        unlocked = await self.recorded_for_event(snap.user_id, source_event_key)
        if not achievements:
            return unlocked

        occurrences = await self._unlocked_occurrences(snap.user_id)
        counts = await self._counts(snap.user_id, achievements, reference_date)

        for achievement, criteria in achievements:
            done = occurrences.get(achievement.id, 0)
            if done and not achievement.repeatable:
                continue
            occurrence = done + 1
            if not is_satisfied(criteria, snap, counts, occurrence if achievement.repeatable else 1):
                continue

            ua = UserAchievement(
                user_id=snap.user_id,
                achievement_id=achievement.id,
                occurrence=occurrence,
                unlocked_at=now,
                idempotency_key=f"{source_event_key}:ach:{achievement.slug}:{occurrence}",
                source_event_key=source_event_key,
            )
            self.db.add(ua)
            unlocked.append(unlock_to_dict(ua, achievement))
            logger.info("User %s unlocked %s (#%d)", snap.user_id, achievement.slug, occurrence)

        await self.db.flush()
        return unlocked

    async def progress_for(self, snap: ProgressSnapshot, reference_date: date) -> list[dict]:
        """Unlocked and in-progress view of every active achievement."""
        achievements = await self._load_achievements()
        counts = await self._counts(snap.user_id, achievements, reference_date)

        result = await self.db.execute(
            select(UserAchievement)
            .where(UserAchievement.user_id == snap.user_id)
            .order_by(UserAchievement.unlocked_at, UserAchievement.id)
        )
        history: dict[int, list[UserAchievement]] = {}
        for ua in result.scalars().unique():
            history.setdefault(ua.achievement_id, []).append(ua)

        items = []
        for achievement, criteria in achievements:
            unlocks = history.get(achievement.id, [])
            completed = bool(unlocks) and not achievement.repeatable
            occurrence = len(unlocks) + 1 if achievement.repeatable else 1
            current, target = criteria_progress(criteria, snap, counts, occurrence)
            items.append({
                "slug": achievement.slug,
                "name": achievement.name,
                "description": achievement.description,
                "category": achievement.category,
                "rarity": achievement.rarity,
                "xp_reward": achievement.xp_reward,
                "repeatable": achievement.repeatable,
                "unlocked": bool(unlocks),
                "times_unlocked": len(unlocks),
                "unlocked_at": [ua.unlocked_at.isoformat() for ua in unlocks],
                "current": min(current, target) if completed else current,
                "target": target,
            })
        return items
