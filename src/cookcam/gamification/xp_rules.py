"""XP amounts per action and the diminishing-returns rule.

Amounts match the mobile client's XP table. Internal actions are only
written by the engine itself (achievement unlock XP, mystery-box XP) and
are rejected when supplied by a caller.
"""

from __future__ import annotations

from enum import Enum

from cookcam.errors import ValidationError


class ActionType(str, Enum):
    SCAN_INGREDIENT = "scan_ingredient"
    COMPLETE_RECIPE = "complete_recipe"
    DAILY_LOGIN = "daily_login"
    SHARE_RECIPE = "share_recipe"
    SAVE_RECIPE = "save_recipe"
    SUBMIT_RATING = "submit_rating"
    CREATE_RECIPE = "create_recipe"
    CLAIM_RECIPE = "claim_recipe"
    COMPLETE_PREFERENCES = "complete_preferences"
    JOIN_COMPETITION = "join_competition"

    # Internal
    ACHIEVEMENT_REWARD = "achievement_reward"
    MYSTERY_BOX = "mystery_box"


BASE_XP: dict[ActionType, int] = {
    ActionType.SCAN_INGREDIENT: 15,
    ActionType.COMPLETE_RECIPE: 75,
    ActionType.DAILY_LOGIN: 5,
    ActionType.SHARE_RECIPE: 50,
    ActionType.SAVE_RECIPE: 15,
    ActionType.SUBMIT_RATING: 15,
    ActionType.CREATE_RECIPE: 100,
    ActionType.CLAIM_RECIPE: 200,
    ActionType.COMPLETE_PREFERENCES: 20,
    ActionType.JOIN_COMPETITION: 20,
}

INTERNAL_ACTIONS = frozenset({ActionType.ACHIEVEMENT_REWARD, ActionType.MYSTERY_BOX})


def parse_action(value: str | ActionType, *, allow_internal: bool = False) -> ActionType:
    """Resolve a caller-supplied action type or raise ValidationError."""
    try:
        action = ActionType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown action type: {value!r}",
            operation="award_xp",
            context={"action_type": str(value)},
        ) from None
    if action in INTERNAL_ACTIONS and not allow_internal:
        raise ValidationError(
            f"Action type {action.value!r} cannot be awarded directly",
            operation="award_xp",
            context={"action_type": action.value},
        )
    return action


def diminished_amount(base: int, prior_count: int, factor: float, floor: int) -> int:
    """XP for the (prior_count + 1)-th repeat of an action within one session.

    ``max(floor, int(base * factor ** prior_count))``: full value the first
    time, then decaying geometrically, never below ``floor``.
    """
    if prior_count <= 0:
        return base
    return max(floor, int(base * factor**prior_count))


def compute_raw_amount(
    action: ActionType,
    *,
    prior_session_count: int = 0,
    already_logged_in_today: bool = False,
    diminishing_actions: frozenset[str] | set[str] = frozenset(),
    factor: float = 0.5,
    floor: int = 1,
) -> tuple[int, int]:
    """Return ``(base_amount, raw_amount)`` for a user action."""
    base = BASE_XP[action]
    if action is ActionType.DAILY_LOGIN and already_logged_in_today:
        return base, 0
    if action.value in diminishing_actions:
        return base, diminished_amount(base, prior_session_count, factor, floor)
    return base, base
