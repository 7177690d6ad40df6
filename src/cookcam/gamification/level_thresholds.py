"""Level curve and computation.

XP needed to go from level n to n+1 is ``round(base_xp * growth ** (n - 1))``:
with the defaults (100, 2.0) that is 100, 200, 400, ... Level 1 starts at 0 XP.
Levels are derived from total XP and never stored independently of it.
"""

from __future__ import annotations

from bisect import bisect_right
from functools import lru_cache

LEVEL_TITLES: list[dict] = [
    {"level": 1, "title": "Kitchen Newbie"},
    {"level": 2, "title": "Curious Cook"},
    {"level": 3, "title": "Line Cook"},
    {"level": 5, "title": "Rising Chef"},
    {"level": 10, "title": "Master Chef"},
    {"level": 25, "title": "Culinary Expert"},
    {"level": 50, "title": "Kitchen Legend"},
    {"level": 75, "title": "Cooking Virtuoso"},
    {"level": 100, "title": "Ultimate Chef"},
]


def title_for_level(level: int) -> str:
    """Highest title whose level is <= ``level``."""
    title = LEVEL_TITLES[0]["title"]
    for entry in LEVEL_TITLES:
        if level >= entry["level"]:
            title = entry["title"]
    return title


class LevelCurve:
    """Monotonic XP -> level mapping with a configurable exponential curve."""

    def __init__(self, base_xp: int = 100, growth: float = 2.0, max_level: int = 100) -> None:
        if base_xp <= 0 or growth < 1.0 or max_level < 1:
            msg = "level curve requires base_xp > 0, growth >= 1 and max_level >= 1"
            raise ValueError(msg)
        self.base_xp = base_xp
        self.growth = growth
        self.max_level = max_level
        # _floors[i] is the cumulative XP at which level i + 1 starts
        floors = [0]
        for n in range(1, max_level):
            floors.append(floors[-1] + self.xp_to_advance(n))
        self._floors = floors

    def xp_to_advance(self, level: int) -> int:
        """XP needed to go from ``level`` to ``level + 1``."""
        return max(1, round(self.base_xp * self.growth ** (level - 1)))

    def level_floor(self, level: int) -> int:
        """Minimum total XP for ``level``."""
        if level < 1 or level > self.max_level:
            msg = f"level must be within 1..{self.max_level}, got {level}"
            raise ValueError(msg)
        return self._floors[level - 1]

    def level_for(self, total_xp: int) -> int:
        """Largest level whose floor is <= total_xp."""
        if total_xp <= 0:
            return 1
        return bisect_right(self._floors, total_xp)

    def compute_level(self, total_xp: int) -> dict:
        """Compute level info from total XP."""
        level = self.level_for(total_xp)
        floor_xp = self._floors[level - 1]
        xp_into_level = max(0, total_xp - floor_xp)

        if level >= self.max_level:
            return {
                "level": level,
                "title": title_for_level(level),
                "xp_into_level": xp_into_level,
                "xp_for_level": 0,
                "xp_to_next": 0,
                "next_level": level,
                "floor_xp": floor_xp,
            }

        xp_for_level = self._floors[level] - floor_xp
        return {
            "level": level,
            "title": title_for_level(level),
            "xp_into_level": xp_into_level,
            "xp_for_level": xp_for_level,
            "xp_to_next": xp_for_level - xp_into_level,
            "next_level": level + 1,
            "floor_xp": floor_xp,
        }

    def resolve_level(self, total_xp: int, previous_level: int = 1) -> int:
        """Level for ``total_xp``, never below a level already reached."""
        return max(previous_level, self.level_for(total_xp))


@lru_cache(maxsize=8)
def get_curve(base_xp: int = 100, growth: float = 2.0, max_level: int = 100) -> LevelCurve:
    """Shared curve instance per parameter set."""
    return LevelCurve(base_xp, growth, max_level)


def compute_level(total_xp: int) -> dict:
    """Compute level info on the default curve."""
    return get_curve().compute_level(total_xp)


def level_floor(level: int) -> int:
    """Minimum total XP for ``level`` on the default curve."""
    return get_curve().level_floor(level)
