"""Achievement seed data: the CookCam badge set."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cookcam.db.models import Achievement
from cookcam.gamification.achievement_service import parse_criteria

logger = logging.getLogger(__name__)

ACHIEVEMENT_SEED_DATA: list[dict] = [
    # Getting started
    {
        "slug": "first_scan",
        "name": "First Scan",
        "description": "Complete your first ingredient scan",
        "category": "scanning",
        "rarity": "common",
        "xp_reward": 50,
        "criteria": {"kind": "action_count", "action_type": "scan_ingredient", "count": 1},
        "sort_order": 1,
    },
    {
        "slug": "first_recipe",
        "name": "First Recipe",
        "description": "Cook your first recipe from start to finish",
        "category": "recipes",
        "rarity": "common",
        "xp_reward": 50,
        "criteria": {"kind": "action_count", "action_type": "complete_recipe", "count": 1},
        "sort_order": 2,
    },
    {
        "slug": "recipe_master",
        "name": "Recipe Master",
        "description": "Complete 10 recipes. Unlocks again every 10 recipes",
        "category": "recipes",
        "rarity": "rare",
        "xp_reward": 200,
        "criteria": {"kind": "action_count", "action_type": "complete_recipe", "count": 10},
        "repeatable": True,
        "milestone": True,
        "sort_order": 3,
    },
    {
        "slug": "weekly_chef",
        "name": "Weekly Chef",
        "description": "Complete 5 recipes within 7 days",
        "category": "recipes",
        "rarity": "uncommon",
        "xp_reward": 100,
        "criteria": {"kind": "action_count", "action_type": "complete_recipe", "count": 5, "window_days": 7},
        "sort_order": 4,
    },
    # Streaks
    {
        "slug": "streak_warrior",
        "name": "Streak Warrior",
        "description": "Maintain a 7-day streak",
        "category": "engagement",
        "rarity": "epic",
        "xp_reward": 300,
        "criteria": {"kind": "streak_length", "days": 7},
        "milestone": True,
        "sort_order": 10,
    },
    {
        "slug": "streak_30",
        "name": "Dedicated Chef",
        "description": "Keep cooking for 30 days in a row",
        "category": "engagement",
        "rarity": "legendary",
        "xp_reward": 1000,
        "criteria": {"kind": "streak_length", "days": 30},
        "milestone": True,
        "sort_order": 11,
    },
    # Levels
    {
        "slug": "level_5",
        "name": "Rising Chef",
        "description": "Reach level 5",
        "category": "levels",
        "rarity": "common",
        "xp_reward": 0,
        "criteria": {"kind": "level_reached", "level": 5},
        "milestone": True,
        "sort_order": 20,
    },
    {
        "slug": "level_10",
        "name": "Master Chef",
        "description": "Reach level 10",
        "category": "levels",
        "rarity": "rare",
        "xp_reward": 0,
        "criteria": {"kind": "level_reached", "level": 10},
        "milestone": True,
        "sort_order": 21,
    },
    {
        "slug": "level_25",
        "name": "Culinary Expert",
        "description": "Reach level 25",
        "category": "levels",
        "rarity": "epic",
        "xp_reward": 0,
        "criteria": {"kind": "level_reached", "level": 25},
        "milestone": True,
        "sort_order": 22,
    },
    {
        "slug": "level_50",
        "name": "Kitchen Legend",
        "description": "Reach level 50",
        "category": "levels",
        "rarity": "legendary",
        "xp_reward": 0,
        "criteria": {"kind": "level_reached", "level": 50},
        "milestone": True,
        "sort_order": 23,
    },
    {
        "slug": "level_75",
        "name": "Cooking Virtuoso",
        "description": "Reach level 75",
        "category": "levels",
        "rarity": "legendary",
        "xp_reward": 0,
        "criteria": {"kind": "level_reached", "level": 75},
        "milestone": True,
        "sort_order": 24,
    },
    {
        "slug": "level_100",
        "name": "Ultimate Chef",
        "description": "Reach the maximum level",
        "category": "levels",
        "rarity": "legendary",
        "xp_reward": 0,
        "criteria": {"kind": "level_reached", "level": 100},
        "milestone": True,
        "sort_order": 25,
    },
    # Creators
    {
        "slug": "home_creator",
        "name": "Home Creator",
        "description": "Publish 5 recipes and earn 1,000 XP",
        "category": "creator",
        "rarity": "uncommon",
        "xp_reward": 150,
        "criteria": {
            "kind": "all_of",
            "criteria": [
                {"kind": "action_count", "action_type": "create_recipe", "count": 5},
                {"kind": "xp_threshold", "min_xp": 1000},
            ],
        },
        "sort_order": 30,
    },
]


async def seed_achievements(db: AsyncSession, data: list[dict] | None = None) -> int:
    """Insert or update achievement definitions by slug. Returns number seeded."""
    data = ACHIEVEMENT_SEED_DATA if data is None else data
    existing = {a.slug: a for a in (await db.execute(select(Achievement))).scalars()}

    seeded = 0
    for item in data:
        parse_criteria(item["criteria"])
        values = {"repeatable": False, "milestone": False, "is_active": True, **item}
        row = existing.get(item["slug"])
        if row is None:
            db.add(Achievement(**values))
        else:
            for field, value in values.items():
                setattr(row, field, value)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d achievement definitions", seeded)
    return seeded
