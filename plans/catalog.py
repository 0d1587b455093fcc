from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional


CENTS = 100 # $1.00 == 100 credit cents


# Plans
FREE_PLAN = "free"
WALLET_PLAN_IDS = ("pro", "growth", "scale")
PLAN_IDS = (FREE_PLAN,) + WALLET_PLAN_IDS


# Action types
POST_ANALYSIS = "post_analysis"
PROFILE_ENRICHMENT = "profile_enrichment"
EMAIL_LOOKUP = "email_lookup"
AI_SEARCH = "ai_search"
PROFILE_MONITORING = "profile_monitoring"

ACTION_TYPES = (POST_ANALYSIS, PROFILE_ENRICHMENT, EMAIL_LOOKUP, AI_SEARCH, PROFILE_MONITORING)


# Cost schedule (cents)
POST_ANALYSIS_BASE_COST = 1
PER_REACTION_COST = 1
PER_COMMENT_COST = 1
PROFILE_ENRICHMENT_COST = 5
EMAIL_LOOKUP_COST = 10
AI_SEARCH_COST = 10
PROFILE_MONITORING_SETUP_COST = 5

FIXED_ACTION_COSTS: Dict[str, int] = {
    PROFILE_ENRICHMENT: PROFILE_ENRICHMENT_COST,
    EMAIL_LOOKUP: EMAIL_LOOKUP_COST,
    AI_SEARCH: AI_SEARCH_COST,
    PROFILE_MONITORING: PROFILE_MONITORING_SETUP_COST,
}


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    description: str
    reactions_per_post: int
    comments_per_post: int
    price_cents: int = 0
    base_credits: int = 0
    bonus_credits: int = 0
    monitored_reactions: int = 0
    monitored_comments: int = 0
    # free-tier monthly allowances; unused by wallet plans
    analyses_allowance: int = 0
    enrichments_allowance: int = 0

    @property
    def total_credits(self) -> int:
        return self.base_credits + self.bonus_credits

    @property
    def is_metered(self) -> bool:
        return self.id in WALLET_PLAN_IDS


PLANS: Dict[str, Plan] = {
    "free": Plan(
        "free", "Free", "Limited access for trying the platform",
        reactions_per_post=100, comments_per_post=75,
        analyses_allowance=5, enrichments_allowance=10,
    ),
    "pro": Plan(
        "pro", "Pro", "For solo founders and SDRs discovering intent-based leads",
        reactions_per_post=300, comments_per_post=200,
        price_cents=7900, base_credits=10000, bonus_credits=5000,
        monitored_reactions=200, monitored_comments=200,
    ),
    "growth": Plan(
        "growth", "Growth", "For sales teams capturing buying signals at scale",
        reactions_per_post=600, comments_per_post=400,
        price_cents=17900, base_credits=20000, bonus_credits=10000,
        monitored_reactions=400, monitored_comments=400,
    ),
    "scale": Plan(
        "scale", "Scale", "For agencies running intent-based campaigns for clients",
        reactions_per_post=1000, comments_per_post=600,
        price_cents=27900, base_credits=30000, bonus_credits=20000,
        monitored_reactions=600, monitored_comments=600,
    ),
}


# Free-tier counters per action; actions missing here are not included in Free
FREE_COUNTERS: Dict[str, str] = {
    POST_ANALYSIS: "analyses_used",
    PROFILE_ENRICHMENT: "enrichments_used",
}


def get_plan(plan_id: Optional[str]) -> Plan:
    """Unknown or empty plan ids fall back to Free."""
    return PLANS.get(plan_id or FREE_PLAN, PLANS[FREE_PLAN])


def is_wallet_plan(plan_id: Optional[str]) -> bool:
    return plan_id in WALLET_PLAN_IDS


def free_allowance(action_type: str) -> int:
    free = PLANS[FREE_PLAN]
    if action_type == POST_ANALYSIS:
        return free.analyses_allowance
    if action_type == PROFILE_ENRICHMENT:
        return free.enrichments_allowance
    return 0


def format_credits(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(int(cents)), CENTS)
    return f"{sign}${whole}.{frac:02d}"


def usage_percentage(used: int, limit: int) -> int:
    if limit <= 0:
        return 100
    return min(round(used * 100 / limit), 100)


def is_usage_warning(used: int, limit: int) -> bool:
    return usage_percentage(used, limit) >= 80
