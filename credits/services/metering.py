from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from flask import current_app
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from extensions import db
from accounts.models import Account
from credits.models import UsageOutcome
from errors import (
    BillingError, AccountNotFound, DeductionRace, InsufficientFunds, LimitReached, MalformedPayload, ServerError,
)
from plans.catalog import ACTION_TYPES, FREE_COUNTERS, FREE_PLAN, POST_ANALYSIS, free_allowance, is_wallet_plan, format_credits
from . import ledger
from .costs import cost_of, billable_quantities
from .usage_log import month_start, record_usage

COUNTER_COLUMNS = {
    "analyses_used": Account.analyses_used,
    "enrichments_used": Account.enrichments_used,
}


@dataclass
class MeteringResult:
    success: bool
    action_type: str
    error: Optional[BillingError] = None
    cost: Optional[int] = None
    new_balance: Optional[int] = None
    counter_value: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action_type": self.action_type,
            "error": self.error.to_dict()["error"] if self.error else None,
            "cost": self.cost,
            "new_balance": self.new_balance,
            "counter_value": self.counter_value,
        }


def increment_counter(account_id: str, counter_name: str, limit: int) -> Tuple[bool, int]:
    """
    Bump a free-tier counter only while it is below limit, as one UPDATE.
    Returns (incremented, value after the statement). Does not commit.
    """
    column = COUNTER_COLUMNS.get(counter_name)
    if column is None:
        raise ValueError(f"Unknown usage counter: {counter_name}")

    res = db.session.execute(
        update(Account)
        .where(Account.id == account_id, column < limit)
        .values({counter_name: column + 1})
        .execution_options(synchronize_session=False)
    )
    value = db.session.execute(select(column).where(Account.id == account_id)).scalar_one_or_none()
    if value is None:
        raise AccountNotFound(f"Account {account_id} not found", details={"account_id": account_id})

    cached = db.session.identity_map.get(db.session.identity_key(Account, account_id))
    if cached is not None:
        db.session.expire(cached, [counter_name])
    return res.rowcount == 1, int(value)


def _debit_reason(action_type: str, billable: Mapping[str, int]) -> str:
    if action_type == POST_ANALYSIS:
        return (f"Post analysis ({billable.get('reaction_count', 0)} reactions, "
                f"{billable.get('comment_count', 0)} comments)")
    return action_type.replace("_", " ").capitalize()


def _settle_wallet(acct: Account, action_type: str, quantities: Optional[Mapping[str, Any]],
                   metadata: Dict[str, Any]) -> MeteringResult:
    account_id = acct.id
    try:
        billable = billable_quantities(acct.plan, action_type, quantities)
    except ValueError as e:
        return MeteringResult(False, action_type, MalformedPayload(str(e)))

    for key, value in billable.items():
        if quantities and quantities.get(key, 0) != value:
            current_app.logger.warning(
                "metering: %s for %s clamped %s from %s to plan cap %s",
                action_type, account_id, key, quantities.get(key), value,
            )

    cost = cost_of(action_type, billable)
    meta = dict(metadata, **billable)
    try:
        new_balance = ledger.deduct(account_id, cost, action_type, _debit_reason(action_type, billable), meta)
        db.session.commit()
    except (InsufficientFunds, DeductionRace) as e:
        db.session.rollback()
        # The external work already happened; nothing is refunded or rolled back.
        current_app.logger.warning(
            "metering: settlement failed for %s on %s, cost %s not collected (%s)",
            account_id, action_type, format_credits(cost), e.code,
        )
        err = DeductionRace(
            "Your wallet no longer covers this action. Top up or wait for your next billing cycle.",
            details={"cost": cost, "cause": e.code, **e.details},
        )
        record_usage(account_id=account_id, action=action_type, outcome=UsageOutcome.SETTLEMENT_FAILED,
                     cost=cost, meta=meta)
        return MeteringResult(False, action_type, err, cost=cost)
    except ValueError as e:
        db.session.rollback()
        return MeteringResult(False, action_type, MalformedPayload(str(e)), cost=cost)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("metering: could not write settlement for %s on %s", account_id, action_type)
        err = ServerError("Could not record this action's cost", details={"cost": cost})
        # caller metadata may be what failed to serialize
        record_usage(account_id=account_id, action=action_type, outcome=UsageOutcome.SETTLEMENT_FAILED,
                     cost=cost, meta=dict(billable))
        return MeteringResult(False, action_type, err, cost=cost)

    record_usage(account_id=account_id, action=action_type, outcome=UsageOutcome.SUCCEEDED,
                 cost=cost, meta=meta)
    return MeteringResult(True, action_type, cost=cost, new_balance=new_balance)


def _settle_free(acct: Account, action_type: str, quantities: Optional[Mapping[str, Any]],
                 metadata: Dict[str, Any]) -> MeteringResult:
    account_id = acct.id
    counter = FREE_COUNTERS.get(action_type)
    allowance = free_allowance(action_type)
    if not counter or allowance <= 0:
        err = LimitReached(f"{action_type} is not included in the Free plan", details={"limit": 0})
        return MeteringResult(False, action_type, err)
    try:
        meta = dict(metadata, **billable_quantities(acct.plan, action_type, quantities))
    except ValueError as e:
        return MeteringResult(False, action_type, MalformedPayload(str(e)))

    try:
        incremented, value = increment_counter(account_id, counter, allowance)
        if incremented:
            db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("metering: could not bump %s for %s", counter, account_id)
        return MeteringResult(False, action_type, ServerError("Could not record this action"))

    if not incremented:
        db.session.rollback()
        current_app.logger.info("metering: %s limit reached for %s (%s/%s)", counter, account_id, value, allowance)
        err = LimitReached(
            f"Free plan limit of {allowance} reached for {action_type.replace('_', ' ')}",
            details={"used": value, "limit": allowance},
        )
        record_usage(account_id=account_id, action=action_type, outcome=UsageOutcome.REJECTED,
                     meta=dict(meta, **{counter: value}))
        return MeteringResult(False, action_type, err, counter_value=value)

    record_usage(account_id=account_id, action=action_type, outcome=UsageOutcome.SUCCEEDED,
                 cost=0, meta=dict(meta, **{counter: value}))
    return MeteringResult(True, action_type, cost=0, counter_value=value)


def record_completion(account_id: str, action_type: str,
                      quantities: Optional[Mapping[str, Any]] = None,
                      metadata: Optional[Dict[str, Any]] = None) -> MeteringResult:
    """
    Settle an action that has finished, with its real quantities.

    Wallet accounts pay the real cost through the ledger; Free accounts bump
    their counter under the limit. Commits the settlement, then appends a
    usage row best-effort. A failed settlement is returned, never raised.
    """
    if action_type not in ACTION_TYPES:
        return MeteringResult(False, action_type, MalformedPayload(f"Unknown action type: {action_type}"))

    acct = db.session.get(Account, account_id, populate_existing=True)
    if acct is None:
        return MeteringResult(False, action_type, AccountNotFound(f"Account {account_id} not found"))

    metadata = dict(metadata or {})
    if is_wallet_plan(acct.plan):
        return _settle_wallet(acct, action_type, quantities, metadata)
    return _settle_free(acct, action_type, quantities, metadata)


def reset_free_usage(account_id: str) -> bool:
    """Zero both free-tier counters and stamp usage_reset_at. Commits."""
    res = db.session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(analyses_used=0, enrichments_used=0, usage_reset_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return res.rowcount == 1


def reset_stale_free_usage(now: Optional[datetime] = None) -> int:
    """
    Bulk monthly reset: every Free account whose counting window began before
    the current UTC month starts over. Returns the number of accounts reset.
    """
    now = now or datetime.now(timezone.utc)
    window = month_start(now)
    res = db.session.execute(
        update(Account)
        .where(
            Account.plan == FREE_PLAN,
            or_(Account.usage_reset_at.is_(None), Account.usage_reset_at < window),
        )
        .values(analyses_used=0, enrichments_used=0, usage_reset_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    db.session.expire_all()
    current_app.logger.info("metering: monthly free usage reset for %s account(s)", res.rowcount)
    return int(res.rowcount or 0)
