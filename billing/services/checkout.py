from __future__ import annotations
import secrets
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional
from flask import current_app
from sqlalchemy import update
from extensions import db
from accounts.models import Account, as_utc
from accounts.services import complete_onboarding
from errors import MalformedPayload, SessionNotFound
from plans.catalog import is_wallet_plan
from ..models import CheckoutSession, CheckoutStatus

STATUS_MESSAGES = {
    CheckoutStatus.PENDING: "Waiting for payment confirmation.",
    CheckoutStatus.COMPLETED: "Payment confirmed. Your plan is active.",
    CheckoutStatus.FAILED: "Payment failed. Please try again.",
    CheckoutStatus.EXPIRED: "This checkout link has expired. Please start again.",
}


def create_session(account_id: str, plan_id: str) -> CheckoutSession:
    if not is_wallet_plan(plan_id):
        raise MalformedPayload(f"Invalid plan: {plan_id}", details={"plan_id": plan_id})
    ttl = int(current_app.config.get("CHECKOUT_SESSION_TTL_MINUTES", 30))
    session = CheckoutSession(
        callback_token=secrets.token_urlsafe(32),
        account_id=account_id,
        plan_id=plan_id,
        status=CheckoutStatus.PENDING,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=ttl),
    )
    db.session.add(session)
    db.session.commit()
    current_app.logger.info("checkout: created session for %s on %s", account_id, plan_id)
    return session


def _transition(session: CheckoutSession, new_status: str, **values) -> bool:
    """pending -> new_status, only if still pending."""
    res = db.session.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == session.id, CheckoutSession.status == CheckoutStatus.PENDING)
        .values(status=new_status, updated_at=datetime.now(timezone.utc), **values)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(session)
    return res.rowcount == 1


def poll(token: Optional[str], caller_account_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Read-only status check for a callback token, except that a pending session
    past its expiry is moved to expired here. A completed session also marks
    onboarding done, but only for the account that owns it.
    """
    if not token:
        raise MalformedPayload("Missing token")
    session = db.session.query(CheckoutSession).filter_by(callback_token=token).first()
    if session is None:
        raise SessionNotFound("Checkout session not found")

    now = datetime.now(timezone.utc)
    if session.status == CheckoutStatus.PENDING and as_utc(session.expires_at) <= now:
        if _transition(session, CheckoutStatus.EXPIRED):
            current_app.logger.info("checkout: session %s expired", session.id)
        db.session.commit()

    acct = db.session.get(Account, session.account_id)
    owner = caller_account_id is not None and caller_account_id == session.account_id
    body = {
        "success": True,
        "status": session.status,
        "plan_id": session.plan_id,
        "message": STATUS_MESSAGES.get(session.status, ""),
    }
    if session.status == CheckoutStatus.COMPLETED:
        body["user_email"] = acct.email if acct else None
        body["requires_login"] = not owner
        if owner and acct is not None and complete_onboarding(acct):
            db.session.commit()
            current_app.logger.info("checkout: onboarding finished on poll for %s", acct.id)
    return body


def complete_pending_session(account_id: str, callback_token: Optional[str] = None,
                             subscription_id: Optional[str] = None) -> Optional[CheckoutSession]:
    """
    Complete the pending session behind a confirmed subscription: the one
    named by callback_token if it belongs to the account, else the account's
    most recent pending one. Does not commit.
    """
    candidates = []
    if callback_token:
        by_token = (db.session.query(CheckoutSession)
                    .filter_by(callback_token=callback_token, account_id=account_id,
                               status=CheckoutStatus.PENDING)
                    .first())
        if by_token:
            candidates.append(by_token)
    latest = (db.session.query(CheckoutSession)
              .filter_by(account_id=account_id, status=CheckoutStatus.PENDING)
              .order_by(CheckoutSession.created_at.desc(), CheckoutSession.id.desc())
              .first())
    if latest:
        candidates.append(latest)

    for session in candidates:
        if _transition(session, CheckoutStatus.COMPLETED,
                       completed_at=datetime.now(timezone.utc),
                       external_subscription_id=subscription_id):
            acct = db.session.get(Account, account_id)
            if acct is not None:
                complete_onboarding(acct)
            current_app.logger.info("checkout: session %s completed for %s", session.id, account_id)
            return session
    return None
