"""Mystery-box draws and creator-tier transitions.

Boxes are drawn from a weighted table (common 70%, rare 25%, ultra-rare 5%).
A pity counter on the user's progress row counts consecutive common draws;
once it reaches the configured threshold the next draw comes from the
rare/ultra-rare pool only, and any high-tier draw resets it.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cookcam.db.models import CreatorTierChange, MysteryBoxReward, XpEvent
from cookcam.errors import ConflictError
from cookcam.gamification.progress_store import commit_progress, get_progress_row

logger = logging.getLogger(__name__)

COMMON = "common"
RARE = "rare"
ULTRA_RARE = "ultra_rare"


@dataclass(frozen=True)
class RewardEntry:
    reward_id: str
    tier: str
    reward_type: str
    value: Any
    weight: int


REWARD_TABLE: list[RewardEntry] = [
    RewardEntry("xp_5", COMMON, "xp", 5, 35),
    RewardEntry("xp_10", COMMON, "xp", 10, 35),
    RewardEntry("streak_shield", RARE, "streak_shield", 1, 9),
    RewardEntry("recipe_unlock", RARE, "recipe_unlock", {"recipes": 1}, 8),
    RewardEntry("xp_25", RARE, "xp", 25, 8),
    RewardEntry("creator_month", ULTRA_RARE, "creator_feature", {"feature": "creator_spotlight", "days": 30}, 2),
    RewardEntry("xp_100", ULTRA_RARE, "xp", 100, 3),
]


@dataclass(frozen=True)
class Draw:
    entry: RewardEntry
    pity_triggered: bool
    pity_after: int


def draw_reward(
    rng: random.Random,
    table: list[RewardEntry],
    pity_count: int,
    pity_threshold: int,
) -> Draw:
    """Weighted draw with a pity guarantee.

    ``pity_count`` is the number of consecutive common draws so far.
    """
    pity_triggered = pity_threshold > 0 and pity_count >= pity_threshold
    pool = [e for e in table if e.tier != COMMON] if pity_triggered else table
    if not pool:
        msg = "reward table has no eligible entries"
        raise ValueError(msg)

    total = sum(e.weight for e in pool)
    pick = rng.random() * total
    chosen = pool[-1]
    cumulative = 0
    for entry in pool:
        cumulative += entry.weight
        if pick < cumulative:
            chosen = entry
            break

    pity_after = pity_count + 1 if chosen.tier == COMMON else 0
    return Draw(chosen, pity_triggered, pity_after)


def box_to_dict(box: MysteryBoxReward) -> dict:
    return {
        "idempotency_key": box.idempotency_key,
        "reward_id": box.reward_id,
        "tier": box.tier,
        "reward_type": box.reward_type,
        "reward_value": box.reward_value,
        "pity_triggered": box.pity_triggered,
        "trigger": box.trigger,
        "granted_at": box.granted_at.isoformat(),
    }


async def get_box_by_key(db: AsyncSession, idempotency_key: str) -> MysteryBoxReward | None:
    result = await db.execute(select(MysteryBoxReward).where(MysteryBoxReward.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def grant_mystery_box(
    db: AsyncSession,
    user_id: str,
    idempotency_key: str,
    trigger: str,
    *,
    rng: random.Random,
    pity_threshold: int,
    now: datetime,
    table: list[RewardEntry] | None = None,
) -> tuple[MysteryBoxReward, bool]:
    """Grant a box once per idempotency key. Returns ``(box, created)``.

    The pity counter and any streak-shield reward are written in the same
    transaction as the box row. XP rewards are applied by the caller as a
    nested award keyed on the box.
    """
    existing = await get_box_by_key(db, idempotency_key)
    if existing is not None:
        return existing, False

    progress = await get_progress_row(db, user_id)
    if progress is None:
        msg = f"no progress row for user {user_id}"
        raise ConflictError(msg, user_id=user_id, operation="grant_mystery_box")

    draw = draw_reward(rng, table or REWARD_TABLE, progress.mystery_box_pity, pity_threshold)
    progress.mystery_box_pity = draw.pity_after
    if draw.entry.reward_type == "streak_shield":
        progress.streak_shields += int(draw.entry.value)
    progress.updated_at = now

    box = MysteryBoxReward(
        idempotency_key=idempotency_key,
        user_id=user_id,
        reward_id=draw.entry.reward_id,
        tier=draw.entry.tier,
        reward_type=draw.entry.reward_type,
        reward_value=draw.entry.value,
        weight=draw.entry.weight,
        pity_triggered=draw.pity_triggered,
        trigger=trigger,
        granted_at=now,
    )
    db.add(box)

    try:
        await commit_progress(db, user_id, "grant_mystery_box")
    except IntegrityError:
        await db.rollback()
        existing = await get_box_by_key(db, idempotency_key)
        if existing is None:
            raise
        return existing, False

    logger.info(
        "Mystery box %s (%s) granted to user %s for %s%s",
        box.reward_id, box.tier, user_id, trigger, " [pity]" if box.pity_triggered else "",
    )
    return box, True


async def mystery_box_history(db: AsyncSession, user_id: str, limit: int = 20) -> tuple[list[dict], int]:
    """Newest boxes first, plus the user's lifetime box count."""
    result = await db.execute(
        select(MysteryBoxReward)
        .where(MysteryBoxReward.user_id == user_id)
        .order_by(MysteryBoxReward.granted_at.desc(), MysteryBoxReward.id.desc())
        .limit(limit)
    )
    history = [box_to_dict(box) for box in result.scalars()]

    total = await db.execute(select(func.count(MysteryBoxReward.id)).where(MysteryBoxReward.user_id == user_id))
    return history, int(total.scalar_one())


async def mystery_box_stats(db: AsyncSession, sample_size: int = 1000) -> dict:
    """Tier and reward-type distribution over the most recent boxes."""
    recent = (
        select(MysteryBoxReward.tier, MysteryBoxReward.reward_type)
        .order_by(MysteryBoxReward.granted_at.desc(), MysteryBoxReward.id.desc())
        .limit(sample_size)
        .subquery()
    )
    result = await db.execute(
        select(recent.c.tier, recent.c.reward_type, func.count().label("n"))
        .group_by(recent.c.tier, recent.c.reward_type)
    )

    tiers = {COMMON: 0, RARE: 0, ULTRA_RARE: 0}
    reward_types: dict[str, int] = {}
    for row in result:
        tiers[row.tier] = tiers.get(row.tier, 0) + row.n
        reward_types[row.reward_type] = reward_types.get(row.reward_type, 0) + row.n

    total = sum(tiers.values())
    return {
        "total_boxes": total,
        "tier_distribution": {
            tier: {"count": count, "percentage": round(count * 100 / total, 1) if total else 0.0}
            for tier, count in tiers.items()
        },
        "reward_type_distribution": dict(sorted(reward_types.items())),
    }


# ---------------------------------------------------------------------------
# Creator tiers
# ---------------------------------------------------------------------------

CREATOR_TIERS: list[dict] = [
    {"tier": 1, "name": "Sous Chef", "min_recipes": 1, "min_xp": 0},
    {"tier": 2, "name": "Pastry Chef", "min_recipes": 5, "min_xp": 1000},
    {"tier": 3, "name": "Head Chef", "min_recipes": 25, "min_xp": 10000},
    {"tier": 4, "name": "Executive Chef", "min_recipes": 100, "min_xp": 50000},
    {"tier": 5, "name": "Master Chef", "min_recipes": 250, "min_xp": 250000},
]


def tier_name(tier: int) -> str | None:
    for entry in CREATOR_TIERS:
        if entry["tier"] == tier:
            return entry["name"]
    return None


def creator_tier_for(recipes_created: int, total_xp: int) -> int:
    """Highest tier whose recipe and XP thresholds are both met (0 = none)."""
    tier = 0
    for entry in CREATOR_TIERS:
        if recipes_created >= entry["min_recipes"] and total_xp >= entry["min_xp"]:
            tier = entry["tier"]
    return tier


async def evaluate_creator_tier(db: AsyncSession, user_id: str, now: datetime) -> dict | None:
    """Promote the user if their recipe count and XP qualify for a higher tier.

    Tiers never go down. Each tier reached is recorded once in
    ``creator_tier_changes``; re-evaluating unchanged state is a no-op.
    Returns the change dict when a promotion happened.
    """
    progress = await get_progress_row(db, user_id)
    if progress is None:
        return None

    result = await db.execute(
        select(func.count(XpEvent.id)).where(
            XpEvent.user_id == user_id,
            XpEvent.action_type == "create_recipe",
        )
    )
    recipes_created = int(result.scalar_one())

    qualified = creator_tier_for(recipes_created, progress.total_xp)
    if qualified <= progress.creator_tier:
        return None

    previous = progress.creator_tier
    progress.creator_tier = qualified
    progress.updated_at = now
    db.add(CreatorTierChange(
        user_id=user_id,
        tier=qualified,
        tier_name=tier_name(qualified) or "",
        achieved_at=now,
    ))

    try:
        await commit_progress(db, user_id, "evaluate_creator_tier")
    except IntegrityError:
        # Tier already recorded by a concurrent evaluation
        await db.rollback()
        return None

    logger.info("User %s promoted to creator tier %d (%s)", user_id, qualified, tier_name(qualified))
    return {
        "previous_tier": previous,
        "tier": qualified,
        "tier_name": tier_name(qualified),
        "achieved_at": now.isoformat(),
    }
