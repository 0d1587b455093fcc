from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from flask import current_app
from extensions import db
from accounts.models import Account
from accounts.services import is_trialing
from errors import BillingError, AccountNotFound, InsufficientFunds, LimitReached, MalformedPayload
from plans.catalog import (
    ACTION_TYPES, FREE_COUNTERS, PLANS, FREE_PLAN,
    POST_ANALYSIS, PROFILE_ENRICHMENT,
    get_plan, is_wallet_plan, free_allowance, format_credits,
    usage_percentage, is_usage_warning,
)
from .costs import estimated_max_cost

COUNTER_NOUNS = {
    POST_ANALYSIS: ("analysis", "analyses"),
    PROFILE_ENRICHMENT: ("enrichment", "enrichments"),
}


@dataclass
class AdmissionDecision:
    allowed: bool
    action_type: str
    reason: Optional[str] = None
    error: Optional[BillingError] = None
    estimated_cost: Optional[int] = None
    usage: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "action_type": self.action_type,
            "reason": self.reason,
            "error": self.error.code if self.error else None,
            "estimated_cost": self.estimated_cost,
            "usage": self.usage,
        }


def usage_snapshot(acct: Account) -> Dict[str, Any]:
    plan = get_plan(acct.plan)
    free = PLANS[FREE_PLAN]
    snap = {
        "plan": plan.id,
        "plan_name": plan.name,
        "metered": plan.is_metered,
        "is_trialing": is_trialing(acct),
        "trial_ends_at": acct.trial_ends_at.isoformat() if acct.trial_ends_at else None,
    }
    if plan.is_metered:
        snap.update({
            "wallet_balance": acct.wallet_balance,
            "wallet_balance_formatted": format_credits(acct.wallet_balance),
        })
    else:
        snap.update({
            "analyses_used": acct.analyses_used,
            "analyses_limit": free.analyses_allowance,
            "analyses_percentage": usage_percentage(acct.analyses_used, free.analyses_allowance),
            "enrichments_used": acct.enrichments_used,
            "enrichments_limit": free.enrichments_allowance,
            "enrichments_percentage": usage_percentage(acct.enrichments_used, free.enrichments_allowance),
        })
    return snap


def _check_free(acct: Account, action_type: str, usage: Dict[str, Any]) -> AdmissionDecision:
    counter = FREE_COUNTERS.get(action_type)
    allowance = free_allowance(action_type)
    if not counter or allowance <= 0:
        err = LimitReached(
            f"{action_type.replace('_', ' ').capitalize()} is not included in the Free plan. Upgrade to unlock it.",
            details={"action_type": action_type, "limit": 0},
        )
        return AdmissionDecision(False, action_type, err.message, err, usage=usage)

    used = int(getattr(acct, counter) or 0)
    singular, plural = COUNTER_NOUNS[action_type]
    if used >= allowance:
        err = LimitReached(
            f"You've used all {allowance} {plural} this month. Upgrade your plan for more.",
            details={"action_type": action_type, "used": used, "limit": allowance},
        )
        return AdmissionDecision(False, action_type, err.message, err, usage=usage)

    if is_usage_warning(used, allowance):
        left = allowance - used
        noun = singular if left == 1 else plural
        return AdmissionDecision(True, action_type, f"You have {left} {noun} remaining this month.", usage=usage)
    return AdmissionDecision(True, action_type, usage=usage)


def _check_wallet(acct: Account, action_type: str, usage: Dict[str, Any]) -> AdmissionDecision:
    worst = estimated_max_cost(acct.plan, action_type)
    balance = int(acct.wallet_balance or 0)
    if balance >= worst:
        return AdmissionDecision(True, action_type, estimated_cost=worst, usage=usage)
    err = InsufficientFunds(
        f"This action can cost up to {format_credits(worst)} but your wallet has "
        f"{format_credits(balance)}. Top up or wait for your next billing cycle.",
        details={"balance": balance, "required": worst},
    )
    return AdmissionDecision(False, action_type, err.message, err, estimated_cost=worst, usage=usage)


def can_perform(account_id: str, action_type: str) -> AdmissionDecision:
    """
    Gate an action before it starts. Read-only.

    Free accounts are checked against their monthly counters. Wallet accounts
    must hold the plan's worst-case cost for the action, so anything admitted
    can always be settled once its real size is known.
    """
    if action_type not in ACTION_TYPES:
        err = MalformedPayload(f"Unknown action type: {action_type}")
        return AdmissionDecision(False, action_type, err.message, err)

    acct = db.session.get(Account, account_id, populate_existing=True)
    if acct is None:
        err = AccountNotFound("Unable to verify usage limits. Please try again.")
        return AdmissionDecision(False, action_type, err.message, err)

    usage = usage_snapshot(acct)
    if is_wallet_plan(acct.plan):
        decision = _check_wallet(acct, action_type, usage)
    else:
        decision = _check_free(acct, action_type, usage)

    if not decision.allowed:
        current_app.logger.info(
            "admission: rejected %s for %s (%s)", action_type, account_id, decision.error.code,
        )
    return decision
