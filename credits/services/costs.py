from __future__ import annotations
from typing import Dict, Mapping, Optional
from plans.catalog import (
    ACTION_TYPES, FIXED_ACTION_COSTS, POST_ANALYSIS,
    POST_ANALYSIS_BASE_COST, PER_REACTION_COST, PER_COMMENT_COST,
    get_plan,
)

# Variable quantities an action is billed on
QUANTITY_KEYS = {
    POST_ANALYSIS: ("reaction_count", "comment_count"),
}


def _quantity(quantities: Mapping[str, object], key: str) -> int:
    raw = quantities.get(key, 0)
    if raw is None:
        return 0
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValueError(f"{key} must be an integer, got {raw!r}")
    if raw < 0:
        raise ValueError(f"{key} must be >= 0")
    return raw


def _check_action(action_type: str) -> None:
    if action_type not in ACTION_TYPES:
        raise ValueError(f"Unknown action type: {action_type}")


def post_analysis_cost(reaction_count: int, comment_count: int) -> int:
    """
    1 (post metadata) + 1 per reaction + 1 per comment.
    e.g. 300 reactions and 200 comments => 501 cents.
    """
    return (POST_ANALYSIS_BASE_COST
            + reaction_count * PER_REACTION_COST
            + comment_count * PER_COMMENT_COST)


def cost_of(action_type: str, quantities: Optional[Mapping[str, object]] = None) -> int:
    _check_action(action_type)
    quantities = quantities or {}
    if action_type == POST_ANALYSIS:
        return post_analysis_cost(
            _quantity(quantities, "reaction_count"),
            _quantity(quantities, "comment_count"),
        )
    return FIXED_ACTION_COSTS[action_type]


def plan_caps(plan_id: str, action_type: str) -> Dict[str, int]:
    plan = get_plan(plan_id)
    if action_type == POST_ANALYSIS:
        return {"reaction_count": plan.reactions_per_post, "comment_count": plan.comments_per_post}
    return {}


def estimated_max_cost(plan_id: str, action_type: str) -> int:
    """Worst case: the plan's per-post caps substituted for the unknown counts."""
    _check_action(action_type)
    return cost_of(action_type, plan_caps(plan_id, action_type))


def billable_quantities(plan_id: str, action_type: str, quantities: Optional[Mapping[str, object]]) -> Dict[str, int]:
    """Real quantities clamped to the plan's caps, so a settled cost never exceeds estimated_max_cost."""
    _check_action(action_type)
    quantities = quantities or {}
    caps = plan_caps(plan_id, action_type)
    return {
        key: min(_quantity(quantities, key), caps[key])
        for key in QUANTITY_KEYS.get(action_type, ())
    }
