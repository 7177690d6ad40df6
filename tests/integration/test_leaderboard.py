"""Leaderboard snapshots built from applied awards."""

import json
from unittest.mock import AsyncMock, call

import pytest

from cookcam.competition.leaderboard_service import DIRTY_KEY, XP_AWARDED_CHANNEL, LeaderboardRanker
from cookcam.competition.window_utils import current_window_ids
from cookcam.db.models import LeaderboardEntry, LeaderboardSnapshot
from cookcam.errors import ValidationError
from cookcam.gamification.xp_service import XpAwardOrchestrator


async def _saves(orch, user_id, n):
    for i in range(n):
        await orch.award_xp(user_id, "save_recipe", f"{user_id}-save-{i}")


class TestRanking:

    @pytest.mark.asyncio
    async def test_order_and_tiebreak(self, orchestrator, clock):
        await orchestrator.award_xp("alice", "save_recipe", "a-1")
        clock.advance(minutes=1)
        await orchestrator.award_xp("bob", "share_recipe", "b-1")
        clock.advance(minutes=1)
        await orchestrator.award_xp("carol", "save_recipe", "c-1")

        board = await orchestrator.get_leaderboard("alltime")
        assert [(e["rank"], e["user_id"], e["xp_in_window"]) for e in board["entries"]] == [
            (1, "bob", 50),
            (2, "alice", 15),  # reached 15 before carol
            (3, "carol", 15),
        ]
        assert board["total"] == 3
        assert board["window_id"] == "alltime"

    @pytest.mark.asyncio
    async def test_daily_window_only_counts_that_day(self, orchestrator, clock):
        await orchestrator.award_xp("alice", "save_recipe", "a-1")
        clock.advance(days=1)
        await orchestrator.award_xp("bob", "save_recipe", "b-1")

        today = await orchestrator.get_leaderboard("daily")
        assert today["window_id"] == "daily:2026-03-03"
        assert [e["user_id"] for e in today["entries"]] == ["bob"]

        yesterday = await orchestrator.get_leaderboard("daily:2026-03-02")
        assert [e["user_id"] for e in yesterday["entries"]] == ["alice"]

        week = await orchestrator.get_leaderboard("weekly")
        assert week["window_id"] == "weekly:2026-W10"
        assert {e["user_id"] for e in week["entries"]} == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_paging(self, orchestrator):
        for n in range(1, 6):
            await _saves(orchestrator, f"user-{n}", n)

        pages = [await orchestrator.get_leaderboard("alltime", page=p, per_page=2) for p in (1, 2, 3)]
        assert [[e["rank"] for e in p["entries"]] for p in pages] == [[1, 2], [3, 4], [5]]
        assert pages[0]["entries"][0]["user_id"] == "user-5"
        assert {p["snapshot_id"] for p in pages} == {pages[0]["snapshot_id"]}

    @pytest.mark.asyncio
    async def test_user_rank(self, orchestrator):
        for n in range(1, 6):
            await _saves(orchestrator, f"user-{n}", n)

        best = await orchestrator.ranker.get_user_rank("alltime", "user-5")
        assert best["rank"] == 1
        assert best["xp_in_window"] == 75
        assert best["percentile"] == 80.0

        missing = await orchestrator.ranker.get_user_rank("alltime", "nobody")
        assert missing["rank"] == 0


class TestSnapshots:

    @pytest.mark.asyncio
    async def test_pinned_snapshot_is_stable(self, orchestrator):
        await orchestrator.award_xp("alice", "save_recipe", "a-1")
        first = await orchestrator.get_leaderboard("alltime")

        await orchestrator.award_xp("bob", "claim_recipe", "b-1")
        latest = await orchestrator.get_leaderboard("alltime")
        assert latest["snapshot_id"] != first["snapshot_id"]
        assert latest["entries"][0]["user_id"] == "bob"

        pinned = await orchestrator.get_leaderboard("alltime", snapshot_id=first["snapshot_id"])
        assert pinned["entries"] == first["entries"]

    @pytest.mark.asyncio
    async def test_stale_snapshot_served_within_bound(self, make_orchestrator, clock):
        orch = make_orchestrator(leaderboard_max_staleness_seconds=60)
        await orch.award_xp("alice", "save_recipe", "a-1")
        first = await orch.get_leaderboard("alltime")

        await orch.award_xp("bob", "share_recipe", "b-1")
        cached = await orch.get_leaderboard("alltime")
        assert cached["snapshot_id"] == first["snapshot_id"]

        clock.advance(seconds=61)
        fresh = await orch.get_leaderboard("alltime")
        assert fresh["snapshot_id"] != first["snapshot_id"]
        assert fresh["total"] == 2

        clock.advance(seconds=120)
        assert (await orch.get_leaderboard("alltime"))["snapshot_id"] == fresh["snapshot_id"]

    @pytest.mark.asyncio
    async def test_award_during_rebuild_keeps_window_dirty(self, make_orchestrator, clock, monkeypatch):
        orch = make_orchestrator(leaderboard_max_staleness_seconds=60)
        await orch.award_xp("u1", "save_recipe", "u1-save")

        real_aggregate = orch.ranker._aggregate
        landed = []

        async def aggregate_then_award(db, window):
            rows = await real_aggregate(db, window)
            await db.rollback()  # release the sqlite read lock for the writer
            if not landed:
                landed.append(await orch.award_xp("u2", "claim_recipe", "u2-claim"))
            return rows

        monkeypatch.setattr(orch.ranker, "_aggregate", aggregate_then_award)
        first = await orch.get_leaderboard("alltime")
        assert [e["user_id"] for e in first["entries"]] == ["u1"]
        monkeypatch.undo()

        clock.advance(seconds=120)
        board = await orch.get_leaderboard("alltime")
        assert {e["user_id"] for e in board["entries"]} == {"u1", "u2"}

    @pytest.mark.asyncio
    async def test_rebuild_subtracts_only_seen_remote_marks(self, session_factory, settings, clock):
        redis = AsyncMock()
        redis.hget.return_value = "2"
        ranker = LeaderboardRanker(session_factory, redis, settings, clock)

        await ranker.rebuild("alltime")
        redis.hincrby.assert_awaited_once_with(DIRTY_KEY, "alltime", -2)

    @pytest.mark.asyncio
    async def test_old_snapshots_are_pruned(self, make_orchestrator, count_rows):
        orch = make_orchestrator(leaderboard_snapshots_retained=3)
        await orch.award_xp("alice", "save_recipe", "a-1")

        built = [await orch.ranker.rebuild("alltime") for _ in range(5)]
        assert await count_rows(LeaderboardSnapshot) == 3
        assert await count_rows(LeaderboardEntry) == 3

        with pytest.raises(ValidationError):
            await orch.get_leaderboard("alltime", snapshot_id=built[0]["snapshot_id"])
        kept = await orch.get_leaderboard("alltime", snapshot_id=built[-1]["snapshot_id"])
        assert kept["entries"][0]["user_id"] == "alice"

    @pytest.mark.asyncio
    async def test_rebuild_current_builds_every_window(self, orchestrator, count_rows):
        await orchestrator.award_xp("alice", "save_recipe", "a-1")
        assert await orchestrator.ranker.rebuild_current() == 4
        assert await count_rows(LeaderboardSnapshot) == 4

    @pytest.mark.asyncio
    async def test_rebuild_current_settles_past_dirty_windows(self, orchestrator, clock):
        await orchestrator.award_xp("alice", "save_recipe", "a-1")
        clock.advance(days=1)

        # today's four windows plus yesterday's daily board
        assert await orchestrator.ranker.rebuild_current() == 5
        assert not await orchestrator.ranker._is_dirty("daily:2026-03-02")
        assert await orchestrator.ranker.rebuild_current() == 4

    @pytest.mark.asyncio
    async def test_rebuild_locks_do_not_grow_with_windows(self, orchestrator, clock):
        for _ in range(10):
            await orchestrator.ranker.rebuild("daily")
            clock.advance(days=1)
        assert set(orchestrator.ranker._rebuild_locks) == {"daily"}


class TestInvalidRequests:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"window_id": "hourly"},
        {"window_id": "weekly:2026-W99"},
        {"window_id": "alltime", "page": 0},
        {"window_id": "alltime", "per_page": 1000},
        {"window_id": "alltime", "snapshot_id": 99999},
    ])
    async def test_rejected(self, orchestrator, kwargs):
        with pytest.raises(ValidationError):
            await orchestrator.get_leaderboard(**kwargs)

    @pytest.mark.asyncio
    async def test_snapshot_from_another_window(self, orchestrator):
        await orchestrator.award_xp("alice", "save_recipe", "a-1")
        board = await orchestrator.get_leaderboard("alltime")
        with pytest.raises(ValidationError):
            await orchestrator.get_leaderboard("weekly", snapshot_id=board["snapshot_id"])


class TestNotifications:

    @pytest.mark.asyncio
    async def test_notify_marks_windows_dirty_and_publishes(self, session_factory, settings, clock):
        redis = AsyncMock()
        ranker = LeaderboardRanker(session_factory, redis, settings, clock)

        ranker.notify("u1", 40, clock())
        await ranker.drain()

        assert redis.hincrby.await_args_list == [call(DIRTY_KEY, w, 1) for w in current_window_ids(clock())]
        channel, payload = redis.publish.await_args.args
        assert channel == XP_AWARDED_CHANNEL
        assert json.loads(payload) == {"user_id": "u1", "total_xp": 40}

    @pytest.mark.asyncio
    async def test_redis_failure_does_not_reach_caller(self, session_factory, settings, clock):
        redis = AsyncMock()
        redis.hincrby.side_effect = ConnectionError("redis down")
        redis.publish.side_effect = ConnectionError("redis down")
        ranker = LeaderboardRanker(session_factory, redis, settings, clock)

        ranker.notify("u1", 40, clock())
        await ranker.drain()
        assert redis.publish.await_count == 1

    @pytest.mark.asyncio
    async def test_award_broadcasts_progression_events(self, session_factory, settings, clock, fixed_rng):
        redis = AsyncMock()
        orch = XpAwardOrchestrator(session_factory, redis, settings, rng=fixed_rng(0.75), clock=clock)

        await orch.award_xp("u1", "claim_recipe", "claim-1")
        await orch.ranker.drain()

        channels = [c.args[0] for c in redis.publish.await_args_list]
        assert "pubsub:level_up" in channels
        assert "pubsub:mystery_box" in channels
        assert XP_AWARDED_CHANNEL in channels
