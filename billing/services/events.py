from __future__ import annotations
import calendar
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from flask import current_app
from sqlalchemy.exc import IntegrityError
from extensions import db
from accounts.models import Account
from accounts.services import resolve_billing_account
from credits.models import UsageOutcome
from credits.services import ledger
from credits.services.usage_log import record_usage
from errors import MalformedPayload
from plans.catalog import FREE_PLAN, is_wallet_plan, format_credits
from ..models import Subscription, SubscriptionStatus, WebhookEventRecord
from .checkout import complete_pending_session
from .dodo_client import plan_for_product, map_subscription_status


@dataclass
class HandlerOutcome:
    success: bool = True
    message: Optional[str] = None
    account_id: Optional[str] = None
    audit_action: Optional[str] = None
    audit_meta: Dict[str, Any] = field(default_factory=dict)

    def to_result(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message}


def add_month(dt: datetime) -> datetime:
    month = dt.month % 12 + 1
    year = dt.year + (1 if dt.month == 12 else 0)
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _period(data: Dict[str, Any]) -> Tuple[datetime, datetime]:
    start = _parse_ts(data.get("current_period_start")) or datetime.now(timezone.utc)
    end = _parse_ts(data.get("current_period_end") or data.get("next_billing_date")) or add_month(start)
    return start, end


def _trial_end(data: Dict[str, Any]) -> Optional[datetime]:
    explicit = _parse_ts(data.get("trial_ends_at"))
    if explicit:
        return explicit
    days = data.get("trial_period_days")
    if isinstance(days, int) and not isinstance(days, bool) and days > 0:
        return datetime.now(timezone.utc) + timedelta(days=days)
    return None


def _metadata(data: Dict[str, Any]) -> Dict[str, Any]:
    meta = data.get("metadata")
    return meta if isinstance(meta, dict) else {}


def _account(data: Dict[str, Any]) -> Optional[Account]:
    return resolve_billing_account(data.get("customer_id"), _metadata(data))


def _subscription(subscription_id: Optional[str], account_id: Optional[str] = None) -> Optional[Subscription]:
    q = db.session.query(Subscription)
    if subscription_id:
        return q.filter_by(external_subscription_id=subscription_id).first()
    if account_id:
        return q.filter_by(account_id=account_id).order_by(Subscription.id.desc()).first()
    return None


def _upsert_subscription(acct: Account, data: Dict[str, Any], plan_id: Optional[str],
                         status: Optional[str] = None,
                         period: Optional[Tuple[datetime, datetime]] = None) -> Subscription:
    subscription_id = data.get("subscription_id")
    sub = _subscription(subscription_id, acct.id)
    if sub is None:
        sub = Subscription(
            account_id=acct.id,
            plan=plan_id or acct.plan,
            status=status or SubscriptionStatus.ACTIVE,
            external_subscription_id=subscription_id,
        )
        db.session.add(sub)
        period = period or _period(data)
    # last write wins on the external id
    sub.account_id = acct.id
    if plan_id:
        sub.plan = plan_id
    if status:
        sub.status = status
    if period:
        sub.current_period_start, sub.current_period_end = period
    db.session.flush()
    return sub


def _soft_fail(event: str, message: str, **ids) -> HandlerOutcome:
    current_app.logger.warning("billing_webhook: %s %s %s", event, message, ids)
    return HandlerOutcome(success=False, message=message)


def on_payment_succeeded(data: Dict[str, Any]) -> HandlerOutcome:
    acct = _account(data)
    if acct is None:
        return _soft_fail("payment.succeeded", "Account not found", customer_id=data.get("customer_id"))
    plan_id = plan_for_product(data.get("product_id"))
    if not plan_id or not is_wallet_plan(plan_id):
        return _soft_fail("payment.succeeded", "Unknown product", product_id=data.get("product_id"))

    account_id = acct.id
    previous = int(acct.wallet_balance or 0)
    new_balance = ledger.reset(account_id, plan_id)
    acct = db.session.get(Account, account_id)

    subscription_id = data.get("subscription_id")
    if subscription_id:
        _upsert_subscription(acct, data, plan_id, SubscriptionStatus.ACTIVE, _period(data))

    # fallback for when subscription.active has not arrived yet
    session = complete_pending_session(account_id, _metadata(data).get("callback_token"), subscription_id)

    return HandlerOutcome(
        message=f"Wallet reset to {format_credits(new_balance)}",
        account_id=account_id,
        audit_action="payment_succeeded",
        audit_meta={
            "plan": plan_id,
            "payment_id": data.get("payment_id"),
            "subscription_id": subscription_id,
            "credits_allocated": new_balance,
            "credits_forfeited": previous,
            "checkout_session_completed": session is not None,
        },
    )


def on_payment_failed(data: Dict[str, Any]) -> HandlerOutcome:
    acct = _account(data)
    sub = _subscription(data.get("subscription_id"), acct.id if acct else None)
    if sub is not None:
        sub.status = SubscriptionStatus.PAST_DUE
    # wallet untouched: grace period
    return HandlerOutcome(
        account_id=acct.id if acct else None,
        audit_action="payment_failed",
        audit_meta={"subscription_id": data.get("subscription_id")},
    )


def on_subscription_active(data: Dict[str, Any]) -> HandlerOutcome:
    acct = _account(data)
    if acct is None:
        return _soft_fail("subscription.active", "Account not found", customer_id=data.get("customer_id"))
    plan_id = plan_for_product(data.get("product_id"))
    if not plan_id or not is_wallet_plan(plan_id):
        return _soft_fail("subscription.active", "Unknown product", product_id=data.get("product_id"))

    status = map_subscription_status(data.get("status") or "active")
    _upsert_subscription(acct, data, plan_id, status, _period(data))
    acct.plan = plan_id
    trial_end = _trial_end(data)
    if trial_end or status == SubscriptionStatus.TRIALING:
        acct.trial_ends_at = trial_end

    session = complete_pending_session(acct.id, _metadata(data).get("callback_token"), data.get("subscription_id"))
    return HandlerOutcome(
        message="Checkout completed" if session else "Subscription active",
        account_id=acct.id,
    )


def on_subscription_updated(data: Dict[str, Any]) -> HandlerOutcome:
    acct = _account(data)
    plan_id = plan_for_product(data.get("product_id"))
    status = map_subscription_status(data.get("status") or "active")
    if acct is None:
        sub = _subscription(data.get("subscription_id"))
        if sub is None:
            return _soft_fail("subscription.updated", "Account not found", customer_id=data.get("customer_id"))
        sub.status = status
        if plan_id:
            sub.plan = plan_id
            owner = db.session.get(Account, sub.account_id)
            if owner is not None:
                owner.plan = plan_id
        return HandlerOutcome(account_id=sub.account_id)

    _upsert_subscription(acct, data, plan_id, status)
    if plan_id:
        # credits follow on the next payment.succeeded
        acct.plan = plan_id
    return HandlerOutcome(account_id=acct.id)


def on_subscription_cancelled(data: Dict[str, Any]) -> HandlerOutcome:
    acct = _account(data)
    sub = _subscription(data.get("subscription_id"), acct.id if acct else None)
    if sub is not None:
        sub.status = SubscriptionStatus.CANCELLED
    # credits stay usable until subscription.expired
    return HandlerOutcome(
        account_id=acct.id if acct else None,
        audit_action="subscription_cancelled",
        audit_meta={
            "subscription_id": data.get("subscription_id"),
            "remaining_credits": acct.wallet_balance if acct else None,
        },
    )


def on_subscription_expired(data: Dict[str, Any]) -> HandlerOutcome:
    acct = _account(data)
    sub = _subscription(data.get("subscription_id"), acct.id if acct else None)
    if sub is not None:
        sub.status = SubscriptionStatus.EXPIRED
    if acct is None:
        return _soft_fail("subscription.expired", "Account not found", customer_id=data.get("customer_id"))

    account_id = acct.id
    previous = int(acct.wallet_balance or 0)
    ledger.clear(account_id, reason="Credits forfeited: subscription expired")
    acct = db.session.get(Account, account_id)
    # clear() is a no-op at zero balance, so demote explicitly
    acct.plan = FREE_PLAN
    acct.trial_ends_at = None
    return HandlerOutcome(
        message=f"Wallet cleared ({format_credits(previous)} forfeited)",
        account_id=account_id,
        audit_action="subscription_expired",
        audit_meta={"subscription_id": data.get("subscription_id"), "credits_forfeited": previous},
    )


def on_subscription_renewed(data: Dict[str, Any]) -> HandlerOutcome:
    # the credit reset comes from the paired payment.succeeded
    acct = _account(data)
    if acct is None:
        sub = _subscription(data.get("subscription_id"))
        if sub is None:
            return _soft_fail("subscription.renewed", "Account not found", customer_id=data.get("customer_id"))
        sub.current_period_start, sub.current_period_end = _period(data)
        return HandlerOutcome(account_id=sub.account_id)
    _upsert_subscription(acct, data, plan_for_product(data.get("product_id")), period=_period(data))
    return HandlerOutcome(account_id=acct.id)


def on_trial_ending(data: Dict[str, Any]) -> HandlerOutcome:
    acct = _account(data)
    return HandlerOutcome(
        account_id=acct.id if acct else None,
        audit_action="trial_ending_soon",
        audit_meta={"subscription_id": data.get("subscription_id")},
    )


def on_payment_refunded(data: Dict[str, Any]) -> HandlerOutcome:
    return HandlerOutcome(message="Acknowledged")


HANDLERS: Dict[str, Callable[[Dict[str, Any]], HandlerOutcome]] = {
    "payment.succeeded": on_payment_succeeded,
    "payment.failed": on_payment_failed,
    "payment.refunded": on_payment_refunded,
    "subscription.active": on_subscription_active,
    "subscription.updated": on_subscription_updated,
    "subscription.cancelled": on_subscription_cancelled,
    "subscription.expired": on_subscription_expired,
    "subscription.renewed": on_subscription_renewed,
    "subscription.trial_ending": on_trial_ending,
}


def _already_processed(event_id: str) -> bool:
    return db.session.query(WebhookEventRecord.id).filter_by(event_id=event_id).first() is not None


def process_event(payload: Dict[str, Any], event_id: str) -> Dict[str, Any]:
    """
    Apply one delivery at most once.

    The handler's writes and the WebhookEventRecord commit together; a
    concurrent twin loses on the unique event_id and rolls back whole.
    Handler exceptions roll back without a record so the sender retries.
    Returns the response body.
    """
    event_type = payload.get("event_type")
    data = payload.get("data")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedPayload("Missing event_type")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedPayload("data must be an object")

    if _already_processed(event_id):
        current_app.logger.info("billing_webhook: duplicate %s %s, skipping", event_type, event_id)
        return {"received": True, "duplicate": True}

    handler = HANDLERS.get(event_type)
    try:
        if handler is None:
            current_app.logger.info("billing_webhook: unhandled event type %s (%s)", event_type, event_id)
            outcome = HandlerOutcome(message="ignored")
        else:
            outcome = handler(data)
        db.session.add(WebhookEventRecord(
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            processing_result=outcome.to_result(),
        ))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        if _already_processed(event_id):
            current_app.logger.info("billing_webhook: %s %s processed concurrently", event_type, event_id)
            return {"received": True, "duplicate": True}
        raise
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        "billing_webhook: processed %s %s (success=%s)", event_type, event_id, outcome.success,
    )
    if outcome.audit_action and outcome.account_id:
        record_usage(account_id=outcome.account_id, action=outcome.audit_action,
                     outcome=UsageOutcome.EVENT, meta=outcome.audit_meta)

    body: Dict[str, Any] = {"received": True}
    if handler is None:
        body["ignored"] = event_type
    return body
