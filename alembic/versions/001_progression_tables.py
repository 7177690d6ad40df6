"""Progression engine tables.

Creates user_progress, xp_events, achievements, user_achievements,
mystery_box_rewards, creator_tier_changes, leaderboard_snapshots and
leaderboard_entries.

Revision ID: 001_progression_tables
Revises:
Create Date: 2026-10-17
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_progression_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- User Progress ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_progress (
            user_id VARCHAR(64) PRIMARY KEY,
            total_xp BIGINT NOT NULL DEFAULT 0 CHECK (total_xp >= 0),
            level INTEGER NOT NULL DEFAULT 1,
            current_streak_days INTEGER NOT NULL DEFAULT 0,
            longest_streak_days INTEGER NOT NULL DEFAULT 0,
            last_active_date DATE,
            streak_shields INTEGER NOT NULL DEFAULT 0,
            creator_tier INTEGER NOT NULL DEFAULT 0,
            mystery_box_pity INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CHECK (longest_streak_days >= current_streak_days)
        )
    """)

    # --- XP Events ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS xp_events (
            id BIGSERIAL PRIMARY KEY,
            idempotency_key VARCHAR(256) UNIQUE NOT NULL,
            user_id VARCHAR(64) NOT NULL REFERENCES user_progress(user_id) ON DELETE CASCADE,
            action_type VARCHAR(32) NOT NULL,
            base_amount INTEGER NOT NULL,
            raw_amount INTEGER NOT NULL,
            session_id VARCHAR(128),
            parent_key VARCHAR(256),
            depth INTEGER NOT NULL DEFAULT 0,
            occurred_at TIMESTAMPTZ NOT NULL,
            reference_date DATE NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL,
            result JSONB,
            followup_status VARCHAR(16) NOT NULL DEFAULT 'pending',
            followup_attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_xp_events_user_action ON xp_events(user_id, action_type)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_xp_events_applied_at ON xp_events(applied_at)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_xp_events_followup ON xp_events(followup_status)")

    # --- Achievements ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS achievements (
            id SERIAL PRIMARY KEY,
            slug VARCHAR(64) UNIQUE NOT NULL,
            name VARCHAR(128) NOT NULL,
            description TEXT NOT NULL,
            category VARCHAR(32) NOT NULL,
            rarity VARCHAR(16) NOT NULL DEFAULT 'common',
            criteria JSONB NOT NULL,
            xp_reward INTEGER NOT NULL DEFAULT 0,
            repeatable BOOLEAN NOT NULL DEFAULT false,
            milestone BOOLEAN NOT NULL DEFAULT false,
            sort_order INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS user_achievements (
            id BIGSERIAL PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES user_progress(user_id) ON DELETE CASCADE,
            achievement_id INTEGER NOT NULL REFERENCES achievements(id),
            occurrence INTEGER NOT NULL DEFAULT 1,
            unlocked_at TIMESTAMPTZ NOT NULL,
            idempotency_key VARCHAR(256) UNIQUE NOT NULL,
            source_event_key VARCHAR(256) NOT NULL,
            CONSTRAINT user_achievements_occurrence_key UNIQUE (user_id, achievement_id, occurrence)
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_user_achievements_source ON user_achievements(source_event_key)")

    # --- Rewards ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS mystery_box_rewards (
            id BIGSERIAL PRIMARY KEY,
            idempotency_key VARCHAR(256) UNIQUE NOT NULL,
            user_id VARCHAR(64) NOT NULL REFERENCES user_progress(user_id) ON DELETE CASCADE,
            reward_id VARCHAR(64) NOT NULL,
            tier VARCHAR(16) NOT NULL,
            reward_type VARCHAR(32) NOT NULL,
            reward_value JSONB NOT NULL,
            weight INTEGER NOT NULL,
            pity_triggered BOOLEAN NOT NULL DEFAULT false,
            trigger VARCHAR(128) NOT NULL,
            granted_at TIMESTAMPTZ NOT NULL
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_mystery_box_rewards_user_id ON mystery_box_rewards(user_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS creator_tier_changes (
            id BIGSERIAL PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL REFERENCES user_progress(user_id) ON DELETE CASCADE,
            tier INTEGER NOT NULL,
            tier_name VARCHAR(64) NOT NULL,
            achieved_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT creator_tier_changes_user_tier_key UNIQUE (user_id, tier)
        )
    """)

    # --- Leaderboards ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_snapshots (
            id BIGSERIAL PRIMARY KEY,
            window_id VARCHAR(32) NOT NULL,
            period VARCHAR(16) NOT NULL,
            built_at TIMESTAMPTZ NOT NULL,
            entry_count INTEGER NOT NULL DEFAULT 0
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS ix_leaderboard_snapshots_window ON leaderboard_snapshots(window_id, built_at)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS leaderboard_entries (
            id BIGSERIAL PRIMARY KEY,
            snapshot_id BIGINT NOT NULL REFERENCES leaderboard_snapshots(id) ON DELETE CASCADE,
            window_id VARCHAR(32) NOT NULL,
            user_id VARCHAR(64) NOT NULL,
            xp_in_window BIGINT NOT NULL,
            reached_at TIMESTAMPTZ NOT NULL,
            rank INTEGER NOT NULL,
            CONSTRAINT leaderboard_entries_snapshot_rank_key UNIQUE (snapshot_id, rank),
            CONSTRAINT leaderboard_entries_snapshot_user_key UNIQUE (snapshot_id, user_id)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS leaderboard_entries CASCADE")
    op.execute("DROP TABLE IF EXISTS leaderboard_snapshots CASCADE")
    op.execute("DROP TABLE IF EXISTS creator_tier_changes CASCADE")
    op.execute("DROP TABLE IF EXISTS mystery_box_rewards CASCADE")
    op.execute("DROP TABLE IF EXISTS user_achievements CASCADE")
    op.execute("DROP TABLE IF EXISTS achievements CASCADE")
    op.execute("DROP TABLE IF EXISTS xp_events CASCADE")
    op.execute("DROP TABLE IF EXISTS user_progress CASCADE")
