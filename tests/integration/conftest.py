"""Fixtures for end-to-end orchestrator tests."""

from __future__ import annotations

import random
from collections.abc import Callable

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cookcam.config import Settings
from cookcam.db.base import Base
from cookcam.gamification.xp_service import XpAwardOrchestrator


class FixedRandom(random.Random):
    """``random()`` always returns the same value, pinning mystery-box draws."""

    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


SHIELD_DRAW = 0.75  # lands on streak_shield in the default table


@pytest.fixture
def make_fixed_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: Callable[[], object],
) -> Callable[..., XpAwardOrchestrator]:
    """Orchestrator whose mystery boxes always draw the same reward."""

    def _make(value: float = SHIELD_DRAW, **overrides: object) -> XpAwardOrchestrator:
        s = settings.model_copy(update=overrides) if overrides else settings
        return XpAwardOrchestrator(session_factory, None, s, rng=FixedRandom(value), clock=clock)

    return _make


@pytest.fixture
def count_rows(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., object]:
    async def _count(model: type[Base], *where: object) -> int:
        async with session_factory() as db:
            result = await db.execute(select(func.count()).select_from(model).where(*where))
            return int(result.scalar_one())

    return _count


@pytest.fixture
def fixed_rng() -> type[FixedRandom]:
    return FixedRandom
