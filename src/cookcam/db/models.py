"""ORM models for the progression engine.

user_progress is the single row mutated per award; every other table is
append-only (xp_events, user_achievements, mystery_box_rewards,
creator_tier_changes) or derived (leaderboard_snapshots/entries).
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cookcam.db.base import Base, BigIntPK, JSONType


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


class UserProgress(Base):
    """Denormalized progression record, one row per user.

    ``version`` is the optimistic revision: every UPDATE is issued as
    ``... WHERE version = :old`` and a mismatch raises StaleDataError.
    """

    __tablename__ = "user_progress"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    current_streak_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_active_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    streak_shields: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    creator_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    mystery_box_pity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __mapper_args__ = {"version_id_col": version}  # noqa: RUF012


class XpEvent(Base):
    """Append-only XP audit log. One row per applied delta, keyed by idempotency key."""

    __tablename__ = "xp_events"
    __table_args__ = (
        Index("ix_xp_events_user_action", "user_id", "action_type"),
        Index("ix_xp_events_applied_at", "applied_at"),
        Index("ix_xp_events_followup", "followup_status"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_progress.user_id", ondelete="CASCADE"), nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    raw_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    parent_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reference_date: Mapped[date] = mapped_column(Date, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    followup_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    followup_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------


class Achievement(Base):
    """Achievement definitions. ``criteria`` is a declarative predicate (see achievement_service)."""

    __tablename__ = "achievements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    rarity: Mapped[str] = mapped_column(String(16), nullable=False, default="common")
    criteria: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    repeatable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    milestone: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class UserAchievement(Base):
    """Unlocked achievements. Non-repeatable achievements only ever have occurrence 1."""

    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", "occurrence", name="user_achievements_occurrence_key"),
        Index("ix_user_achievements_source", "source_event_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_progress.user_id", ondelete="CASCADE"), nullable=False
    )
    achievement_id: Mapped[int] = mapped_column(Integer, ForeignKey("achievements.id"), nullable=False)
    occurrence: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    source_event_key: Mapped[str] = mapped_column(String(256), nullable=False)

    achievement: Mapped[Achievement] = relationship("Achievement", lazy="joined")


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------


class MysteryBoxReward(Base):
    """Granted mystery boxes. Immutable once written."""

    __tablename__ = "mystery_box_rewards"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_progress.user_id", ondelete="CASCADE"), nullable=False, index=True
    )
    reward_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    reward_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reward_value: Mapped[Any] = mapped_column(JSONType, nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False)
    pity_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trigger: Mapped[str] = mapped_column(String(128), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CreatorTierChange(Base):
    """Creator tier promotions, recorded once per (user, tier)."""

    __tablename__ = "creator_tier_changes"
    __table_args__ = (UniqueConstraint("user_id", "tier", name="creator_tier_changes_user_tier_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_progress.user_id", ondelete="CASCADE"), nullable=False
    )
    tier: Mapped[int] = mapped_column(Integer, nullable=False)
    tier_name: Mapped[str] = mapped_column(String(64), nullable=False)
    achieved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------


class LeaderboardSnapshot(Base):
    """One materialized, read-only ranking of a window."""

    __tablename__ = "leaderboard_snapshots"
    __table_args__ = (Index("ix_leaderboard_snapshots_window", "window_id", "built_at"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    window_id: Mapped[str] = mapped_column(String(32), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    built_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class LeaderboardEntry(Base):
    """Ranked row inside a snapshot. Never the source of truth for XP."""

    __tablename__ = "leaderboard_entries"
    __table_args__ = (
        UniqueConstraint("snapshot_id", "rank", name="leaderboard_entries_snapshot_rank_key"),
        UniqueConstraint("snapshot_id", "user_id", name="leaderboard_entries_snapshot_user_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("leaderboard_snapshots.id", ondelete="CASCADE"), nullable=False
    )
    window_id: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    xp_in_window: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reached_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
