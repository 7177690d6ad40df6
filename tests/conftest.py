"""Shared test fixtures.

Each test gets its own file-backed sqlite database (aiosqlite) so
concurrent sessions behave like separate connections.
"""

from __future__ import annotations

import random
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cookcam.config import Settings
from cookcam.database import build_engine, build_session_factory, create_tables
from cookcam.gamification.seed import seed_achievements
from cookcam.gamification.xp_service import XpAwardOrchestrator

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)  # a Monday


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'progression.db'}",
        leaderboard_max_staleness_seconds=0,
        persistence_retry_base_delay=0.01,
        persistence_retry_max_delay=0.05,
        db_operation_timeout_seconds=30.0,
        user_lock_timeout_seconds=30.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    eng = build_engine(settings.database_url, settings)
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seeded(session_factory: async_sessionmaker[AsyncSession]) -> None:
    async with session_factory() as db:
        await seed_achievements(db)


@pytest.fixture
def make_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: FakeClock,
) -> Callable[..., XpAwardOrchestrator]:
    def _make(**overrides: object) -> XpAwardOrchestrator:
        s = settings.model_copy(update=overrides) if overrides else settings
        return XpAwardOrchestrator(session_factory, None, s, rng=random.Random(7), clock=clock)

    return _make


@pytest_asyncio.fixture
async def orchestrator(make_orchestrator: Callable[..., XpAwardOrchestrator]) -> AsyncGenerator[XpAwardOrchestrator, None]:
    orch = make_orchestrator()
    yield orch
    await orch.ranker.drain()
