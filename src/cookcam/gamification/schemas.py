"""Pydantic models for award inputs and progression results."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field


class AwardContext(BaseModel):
    """Caller-supplied context for one award."""

    timezone: str = "UTC"
    session_id: str | None = Field(default=None, max_length=128)
    occurred_at: datetime | None = None
    metadata: dict[str, Any] = {}


class ActionEvent(BaseModel):
    """Action-trigger event as delivered by the app backend or the action stream."""

    user_id: str = Field(min_length=1, max_length=64)
    action_type: str
    idempotency_key: str = Field(min_length=1, max_length=128)
    occurred_at: datetime | None = None
    timezone: str = "UTC"
    session_id: str | None = None
    metadata: dict[str, Any] = {}


# --- Results ---


class LevelInfo(BaseModel):
    level: int
    title: str
    xp_into_level: int
    xp_for_level: int
    xp_to_next: int
    next_level: int
    floor_xp: int


class StreakInfo(BaseModel):
    current_streak_days: int = 0
    longest_streak_days: int = 0
    last_active_date: date | None = None
    streak_shields: int = 0
    transition: str | None = None
    shields_used: int = 0


class UnlockedAchievement(BaseModel):
    slug: str
    name: str
    description: str = ""
    category: str = ""
    rarity: str = "common"
    xp_reward: int = 0
    occurrence: int = 1
    milestone: bool = False
    unlocked_at: datetime
    idempotency_key: str


class GrantedReward(BaseModel):
    idempotency_key: str
    reward_id: str
    tier: str
    reward_type: str
    reward_value: Any
    pity_triggered: bool = False
    trigger: str
    granted_at: datetime


class CreatorTierInfo(BaseModel):
    previous_tier: int
    tier: int
    tier_name: str | None
    achieved_at: datetime


class ProgressionResult(BaseModel):
    """Consolidated outcome of one award, stored for duplicate requests."""

    user_id: str
    idempotency_key: str
    action_type: str
    xp_gained: int
    bonus_xp: int = 0
    new_total_xp: int
    previous_level: int
    level: int
    leveled_up: bool
    level_info: LevelInfo
    streak: StreakInfo
    achievements_unlocked: list[UnlockedAchievement] = []
    rewards_granted: list[GrantedReward] = []
    creator_tier: int = 0
    creator_tier_changed: CreatorTierInfo | None = None
    followups_pending: bool = False


class ProgressResponse(BaseModel):
    user_id: str
    total_xp: int
    level: int
    level_info: LevelInfo
    current_streak_days: int
    longest_streak_days: int
    last_active_date: date | None = None
    streak_shields: int
    creator_tier: int
    creator_tier_name: str | None = None


class AchievementProgress(BaseModel):
    slug: str
    name: str
    description: str
    category: str
    rarity: str
    xp_reward: int
    repeatable: bool
    unlocked: bool
    times_unlocked: int
    unlocked_at: list[datetime] = []
    current: int
    target: int


class AchievementsResponse(BaseModel):
    user_id: str
    unlocked: list[AchievementProgress]
    in_progress: list[AchievementProgress]


class MysteryBoxHistory(BaseModel):
    user_id: str
    history: list[GrantedReward]
    total_boxes_opened: int


class TierShare(BaseModel):
    count: int
    percentage: float


class MysteryBoxStats(BaseModel):
    total_boxes: int
    tier_distribution: dict[str, TierShare]
    reward_type_distribution: dict[str, int]
