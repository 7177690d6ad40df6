"""Achievement unlocks driven through the award path."""

import pytest
from sqlalchemy import select

from cookcam.db.models import UserAchievement, XpEvent
from cookcam.errors import ValidationError
from cookcam.gamification.seed import seed_achievements


def _threshold(slug: str, min_xp: int, xp_reward: int = 100) -> dict:
    return {
        "slug": slug,
        "name": slug.upper(),
        "description": f"Reach {min_xp} XP",
        "category": "test",
        "rarity": "common",
        "xp_reward": xp_reward,
        "criteria": {"kind": "xp_threshold", "min_xp": min_xp},
    }


CHAIN = [_threshold("a1", 10), _threshold("a2", 110), _threshold("a3", 210)]


async def _unlocked_slugs(session_factory, user_id):
    async with session_factory() as db:
        result = await db.execute(
            select(UserAchievement).where(UserAchievement.user_id == user_id).order_by(UserAchievement.id)
        )
        return [(ua.achievement.slug, ua.occurrence) for ua in result.scalars().unique()]


class TestUnlocks:

    @pytest.mark.asyncio
    async def test_first_scan_awards_bonus_xp(self, seeded, make_fixed_orchestrator, session_factory):
        orch = make_fixed_orchestrator()
        result = await orch.award_xp("u1", "scan_ingredient", "scan-1")

        assert [a.slug for a in result.achievements_unlocked] == ["first_scan"]
        assert result.xp_gained == 15
        assert result.bonus_xp == 50
        assert result.new_total_xp == 65

        async with session_factory() as db:
            nested = (await db.execute(
                select(XpEvent).where(XpEvent.idempotency_key == "scan-1:ach:first_scan:1:xp")
            )).scalar_one()
        assert nested.depth == 1
        assert nested.parent_key == "scan-1"
        assert nested.raw_amount == 50

        again = await orch.award_xp("u1", "scan_ingredient", "scan-2")
        assert again.achievements_unlocked == []
        assert again.bonus_xp == 0

    @pytest.mark.asyncio
    async def test_repeatable_achievement_scales(self, seeded, make_fixed_orchestrator, session_factory):
        orch = make_fixed_orchestrator()
        for i in range(20):
            await orch.award_xp("u1", "complete_recipe", f"cook-{i}")

        unlocked = await _unlocked_slugs(session_factory, "u1")
        assert [occ for slug, occ in unlocked if slug == "recipe_master"] == [1, 2]
        assert ("first_recipe", 1) in unlocked
        assert ("weekly_chef", 1) in unlocked

        view = await orch.get_achievements("u1")
        master = next(a for a in view.in_progress if a.slug == "recipe_master")
        assert master.times_unlocked == 2
        assert (master.current, master.target) == (20, 30)
        assert "recipe_master" in {a.slug for a in view.unlocked}

    @pytest.mark.asyncio
    async def test_milestone_unlock_grants_box(self, seeded, make_fixed_orchestrator):
        orch = make_fixed_orchestrator()
        rewards = []
        for i in range(10):
            result = await orch.award_xp("u1", "complete_recipe", f"cook-{i}")
            rewards += [r.trigger for r in result.rewards_granted]
        assert "achievement:recipe_master:1" in rewards

    @pytest.mark.asyncio
    async def test_get_achievements_for_new_user(self, seeded, orchestrator):
        view = await orchestrator.get_achievements("nobody")
        assert view.unlocked == []
        first_scan = next(a for a in view.in_progress if a.slug == "first_scan")
        assert (first_scan.current, first_scan.target) == (0, 1)

    @pytest.mark.asyncio
    async def test_get_achievements_counts_window_in_caller_timezone(self, seeded, make_fixed_orchestrator, clock):
        orch = make_fixed_orchestrator()
        # 12:00 UTC on Mar 2 is already Mar 3 in Kiritimati (UTC+14)
        for i in range(4):
            await orch.award_xp("u1", "complete_recipe", f"cook-{i}", {"timezone": "Pacific/Kiritimati"})
        clock.advance(days=7)

        def weekly(view):
            return next(a for a in view.in_progress if a.slug == "weekly_chef")

        assert weekly(await orch.get_achievements("u1")).current == 4
        assert weekly(await orch.get_achievements("u1", timezone="Pacific/Kiritimati")).current == 0

    @pytest.mark.asyncio
    async def test_get_achievements_rejects_unknown_timezone(self, seeded, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.get_achievements("u1", timezone="Mars/Olympus")


class TestCascadeDepth:

    @pytest.mark.asyncio
    async def test_cascade_stops_at_max_depth(self, session_factory, make_fixed_orchestrator):
        async with session_factory() as db:
            await seed_achievements(db, CHAIN)
        orch = make_fixed_orchestrator()

        result = await orch.award_xp("u1", "save_recipe", "save-1")
        # a1 at depth 0 pays 100, a2 unlocked by that award at depth 1 pays 100,
        # the depth-2 award is not evaluated
        assert [a.slug for a in result.achievements_unlocked] == ["a1", "a2"]
        assert result.new_total_xp == 215
        assert [slug for slug, _ in await _unlocked_slugs(session_factory, "u1")] == ["a1", "a2"]

        # the next top-level award sees the total again
        nxt = await orch.award_xp("u1", "save_recipe", "save-2")
        assert [a.slug for a in nxt.achievements_unlocked] == ["a3"]

    @pytest.mark.asyncio
    async def test_depth_zero_only_evaluates_user_actions(self, session_factory, make_fixed_orchestrator):
        async with session_factory() as db:
            await seed_achievements(db, CHAIN)
        orch = make_fixed_orchestrator(achievement_max_depth=0)

        result = await orch.award_xp("u1", "save_recipe", "save-1")
        assert [a.slug for a in result.achievements_unlocked] == ["a1"]
        assert result.new_total_xp == 115
        assert result.rewards_granted == []
