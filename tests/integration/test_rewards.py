"""Mystery boxes and creator tiers against a real database."""

import pytest
from sqlalchemy import select

from cookcam.db.models import CreatorTierChange, MysteryBoxReward
from cookcam.errors import ValidationError
from cookcam.gamification.progress_store import ensure_progress, get_progress_row
from cookcam.gamification.reward_service import evaluate_creator_tier, grant_mystery_box


class TestMysteryBoxes:

    @pytest.mark.asyncio
    async def test_grant_is_idempotent(self, fixed_rng, session_factory, clock, count_rows):
        async with session_factory() as db:
            await ensure_progress(db, "u1", clock())
            await db.commit()

        async with session_factory() as db:
            box, created = await grant_mystery_box(
                db, "u1", "box-1", "level_up:2", rng=fixed_rng(0.0), pity_threshold=10, now=clock(),
            )
        assert created
        assert box.reward_id == "xp_5"

        async with session_factory() as db:
            again, created = await grant_mystery_box(
                db, "u1", "box-1", "level_up:2", rng=fixed_rng(0.99), pity_threshold=10, now=clock(),
            )
        assert not created
        assert again.reward_id == "xp_5"
        assert await count_rows(MysteryBoxReward) == 1

        async with session_factory() as db:
            assert (await get_progress_row(db, "u1")).mystery_box_pity == 1

    @pytest.mark.asyncio
    async def test_pity_forces_high_tier(self, fixed_rng, session_factory, clock):
        async with session_factory() as db:
            progress = await ensure_progress(db, "u1", clock())
            progress.mystery_box_pity = 3
            await db.commit()

        async with session_factory() as db:
            box, _ = await grant_mystery_box(
                db, "u1", "box-1", "level_up:2", rng=fixed_rng(0.0), pity_threshold=3, now=clock(),
            )
            progress = await get_progress_row(db, "u1")
        assert box.pity_triggered
        assert box.tier != "common"
        assert progress.mystery_box_pity == 0

    @pytest.mark.asyncio
    async def test_xp_box_is_applied_as_bonus(self, make_fixed_orchestrator, session_factory):
        # 0.0 lands on xp_5
        orch = make_fixed_orchestrator(0.0)
        result = await orch.award_xp("u1", "claim_recipe", "claim-1")

        assert result.leveled_up
        assert [r.reward_id for r in result.rewards_granted] == ["xp_5"]
        assert result.bonus_xp == 5
        assert result.new_total_xp == 205
        async with session_factory() as db:
            box = (await db.execute(select(MysteryBoxReward))).scalar_one()
        assert box.idempotency_key == "claim-1:box:level_up:2"


class TestMysteryBoxReports:

    @pytest.fixture
    def grant_boxes(self, fixed_rng, session_factory, clock):
        async def _grant(user_id, *draws):
            async with session_factory() as db:
                await ensure_progress(db, user_id, clock())
                await db.commit()
            for i, draw in enumerate(draws):
                clock.advance(minutes=1)
                async with session_factory() as db:
                    await grant_mystery_box(
                        db, user_id, f"{user_id}-box-{i}", "level_up:2",
                        rng=fixed_rng(draw), pity_threshold=100, now=clock(),
                    )

        return _grant

    @pytest.mark.asyncio
    async def test_history_newest_first(self, make_fixed_orchestrator, grant_boxes):
        # 0.0 -> xp_5, 0.75 -> streak_shield, 0.99 -> xp_100
        await grant_boxes("u1", 0.0, 0.75, 0.99)
        await grant_boxes("u2", 0.0)
        orch = make_fixed_orchestrator()

        full = await orch.get_mystery_box_history("u1")
        assert [b.reward_id for b in full.history] == ["xp_100", "streak_shield", "xp_5"]
        assert full.total_boxes_opened == 3

        page = await orch.get_mystery_box_history("u1", limit=2)
        assert [b.reward_id for b in page.history] == ["xp_100", "streak_shield"]
        assert page.total_boxes_opened == 3

    @pytest.mark.asyncio
    async def test_history_for_user_without_boxes(self, make_fixed_orchestrator):
        history = await make_fixed_orchestrator().get_mystery_box_history("nobody")
        assert history.history == []
        assert history.total_boxes_opened == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 101])
    async def test_history_limit_bounds(self, make_fixed_orchestrator, limit):
        with pytest.raises(ValidationError):
            await make_fixed_orchestrator().get_mystery_box_history("u1", limit=limit)

    @pytest.mark.asyncio
    async def test_stats_distribution(self, make_fixed_orchestrator, grant_boxes):
        await grant_boxes("u1", 0.0, 0.75, 0.99)
        await grant_boxes("u2", 0.0)

        stats = await make_fixed_orchestrator().get_mystery_box_stats()
        assert stats.total_boxes == 4
        assert {t: (s.count, s.percentage) for t, s in stats.tier_distribution.items()} == {
            "common": (2, 50.0),
            "rare": (1, 25.0),
            "ultra_rare": (1, 25.0),
        }
        assert stats.reward_type_distribution == {"streak_shield": 1, "xp": 3}

    @pytest.mark.asyncio
    async def test_stats_without_boxes(self, make_fixed_orchestrator):
        stats = await make_fixed_orchestrator().get_mystery_box_stats()
        assert stats.total_boxes == 0
        assert all(s.count == 0 and s.percentage == 0.0 for s in stats.tier_distribution.values())
        assert stats.reward_type_distribution == {}


class TestCreatorTiers:

    @pytest.mark.asyncio
    async def test_first_recipe_reaches_tier_one(self, make_fixed_orchestrator, count_rows):
        orch = make_fixed_orchestrator()
        first = await orch.award_xp("u1", "create_recipe", "create-1")

        assert first.creator_tier == 1
        assert first.creator_tier_changed is not None
        assert first.creator_tier_changed.previous_tier == 0
        assert first.creator_tier_changed.tier_name == "Sous Chef"

        second = await orch.award_xp("u1", "create_recipe", "create-2")
        assert second.creator_tier == 1
        assert second.creator_tier_changed is None
        assert (await orch.get_progress("u1")).creator_tier_name == "Sous Chef"
        assert await count_rows(CreatorTierChange) == 1

    @pytest.mark.asyncio
    async def test_tier_needs_recipes_and_xp(self, session_factory, clock):
        async with session_factory() as db:
            progress = await ensure_progress(db, "u1", clock())
            progress.total_xp = 5000
            await db.commit()

        async with session_factory() as db:
            assert await evaluate_creator_tier(db, "u1", clock()) is None
            assert (await get_progress_row(db, "u1")).creator_tier == 0

    @pytest.mark.asyncio
    async def test_missing_user_is_noop(self, db_session, clock):
        assert await evaluate_creator_tier(db_session, "ghost", clock()) is None
