import pytest

from credits.services.costs import (
    billable_quantities,
    cost_of,
    estimated_max_cost,
    post_analysis_cost,
)
from plans.catalog import (
    AI_SEARCH,
    EMAIL_LOOKUP,
    POST_ANALYSIS,
    PROFILE_ENRICHMENT,
    PROFILE_MONITORING,
    PLANS,
    format_credits,
    get_plan,
    usage_percentage,
    is_usage_warning,
)


def test_post_analysis_cost_is_base_plus_per_item():
    assert post_analysis_cost(0, 0) == 1
    assert post_analysis_cost(10, 5) == 16
    assert cost_of(POST_ANALYSIS, {"reaction_count": 300, "comment_count": 200}) == 501


def test_fixed_costs():
    assert cost_of(PROFILE_ENRICHMENT) == 5
    assert cost_of(EMAIL_LOOKUP) == 10
    assert cost_of(AI_SEARCH) == 10
    assert cost_of(PROFILE_MONITORING) == 5


@pytest.mark.parametrize("plan_id,expected", [
    ("free", 176),
    ("pro", 501),
    ("growth", 1001),
    ("scale", 1601),
])
def test_worst_case_uses_plan_caps(plan_id, expected):
    assert estimated_max_cost(plan_id, POST_ANALYSIS) == expected


def test_worst_case_for_fixed_actions_is_the_fixed_cost():
    assert estimated_max_cost("pro", PROFILE_ENRICHMENT) == 5


def test_costs_are_integers():
    assert isinstance(cost_of(POST_ANALYSIS, {"reaction_count": 3}), int)
    assert isinstance(estimated_max_cost("growth", POST_ANALYSIS), int)


@pytest.mark.parametrize("bad", [-1, 1.5, "10", True])
def test_rejects_bad_quantities(bad):
    with pytest.raises(ValueError):
        cost_of(POST_ANALYSIS, {"reaction_count": bad})


def test_rejects_unknown_action():
    with pytest.raises(ValueError):
        cost_of("teleport")
    with pytest.raises(ValueError):
        estimated_max_cost("pro", "teleport")


def test_billable_quantities_clamp_to_caps():
    got = billable_quantities("pro", POST_ANALYSIS, {"reaction_count": 1000, "comment_count": 10})
    assert got == {"reaction_count": 300, "comment_count": 10}
    assert cost_of(POST_ANALYSIS, got) <= estimated_max_cost("pro", POST_ANALYSIS)


def test_plan_allocations():
    assert PLANS["pro"].total_credits == 15000
    assert PLANS["growth"].total_credits == 30000
    assert PLANS["scale"].total_credits == 50000
    assert get_plan("nonsense").id == "free"


def test_format_credits():
    assert format_credits(15000) == "$150.00"
    assert format_credits(5) == "$0.05"
    assert format_credits(-2000) == "-$20.00"


def test_usage_warning_threshold():
    assert usage_percentage(4, 5) == 80
    assert is_usage_warning(4, 5)
    assert not is_usage_warning(3, 5)
    assert usage_percentage(1, 0) == 100
