from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from flask import current_app
from flask_jwt_extended import get_jwt, get_jwt_identity
from sqlalchemy.exc import IntegrityError
from extensions import db
from errors import Unauthorized
from .models import Account, as_utc


def get_or_create_account(account_id: str, email: Optional[str] = None) -> Account:
    """
    Accounts are created on first authentication. Commits the new row so a
    concurrent first request sees it; a lost insert race falls back to a re-read.
    """
    acct = db.session.get(Account, account_id)
    if acct:
        if email and acct.email != email:
            acct.email = email
            db.session.commit()
        return acct
    acct = Account(id=account_id, email=email)
    db.session.add(acct)
    try:
        db.session.commit()
        current_app.logger.info("accounts: created %s", account_id)
    except IntegrityError:
        db.session.rollback()
        acct = db.session.get(Account, account_id)
    return acct


def current_account() -> Account:
    """Resolve the JWT identity of the current request. Use behind @jwt_required()."""
    ident = get_jwt_identity()
    if ident is None or not str(ident).strip():
        raise Unauthorized("Authorization required")
    email = (get_jwt() or {}).get("email")
    return get_or_create_account(str(ident), email=email)


def account_by_customer(customer_id: Optional[str]) -> Optional[Account]:
    if not customer_id:
        return None
    return db.session.query(Account).filter_by(dodo_customer_id=customer_id).first()


def resolve_billing_account(customer_id: Optional[str], metadata: Optional[dict] = None) -> Optional[Account]:
    """
    Find the account a payment-processor event belongs to: by customer
    reference first, else by the account id we attached at checkout. The
    latter binds the customer reference to the account (last write wins).
    """
    acct = account_by_customer(customer_id)
    if acct:
        return acct
    account_id = (metadata or {}).get("account_id")
    if not account_id:
        return None
    acct = db.session.get(Account, str(account_id))
    if acct and customer_id:
        acct.dodo_customer_id = customer_id
        db.session.flush()
    return acct


def is_trialing(acct: Account, now: Optional[datetime] = None) -> bool:
    if not acct.trial_ends_at or not acct.plan or acct.plan == "free":
        return False
    now = now or datetime.now(timezone.utc)
    return as_utc(acct.trial_ends_at) > now


def complete_onboarding(acct: Account) -> bool:
    """Idempotent. Returns True only when the flag actually flipped."""
    if acct.onboarding_completed:
        return False
    acct.onboarding_completed = True
    return True
