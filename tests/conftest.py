"""
Pytest configuration for the wallet/billing service.
Each test gets its own app bound to a throwaway SQLite file.
"""

import base64
import json
import time
import uuid
from datetime import datetime, timezone

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from flask_jwt_extended import create_access_token
from standardwebhooks.webhooks import Webhook

from app import create_app
from extensions import db
from accounts.models import Account
from credits.models import UsageLog

WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"test-webhook-signing-secret-0123").decode()

PRODUCTS = {
    "pro": "prod_test_pro",
    "growth": "prod_test_growth",
    "scale": "prod_test_scale",
}


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
        # threaded tests wait on the writer lock instead of failing
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
        "WTF_CSRF_ENABLED": False,
        "RATELIMIT_ENABLED": False,
        "JWT_SECRET_KEY": "test-jwt-secret-key-that-is-long-enough",
        "APP_ENV": "test",
        "DODO_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "WEBHOOK_ALLOW_UNSIGNED": False,
        "WEBHOOK_TOLERANCE_SECONDS": 300,
        "DODO_PRODUCT_PRO_MONTHLY": PRODUCTS["pro"],
        "DODO_PRODUCT_GROWTH_MONTHLY": PRODUCTS["growth"],
        "DODO_PRODUCT_SCALE_MONTHLY": PRODUCTS["scale"],
        "CHECKOUT_SESSION_TTL_MINUTES": 30,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_account(app):
    """Insert an account with the given fields set directly (no ledger entries)."""
    def _make(account_id="acct_1", plan="free", balance=0, **fields):
        acct = Account(id=account_id, plan=plan, wallet_balance=balance, **fields)
        db.session.add(acct)
        db.session.commit()
        return acct
    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(account_id="acct_1", email=None):
        claims = {"email": email} if email else None
        token = create_access_token(identity=account_id, additional_claims=claims)
        return {"Authorization": f"Bearer {token}"}
    return _headers


def signed_headers(body: bytes, webhook_id=None, timestamp=None, secret=WEBHOOK_SECRET):
    webhook_id = webhook_id or f"msg_{uuid.uuid4().hex}"
    ts = int(time.time()) if timestamp is None else int(timestamp)
    signature = Webhook(secret).sign(webhook_id, datetime.fromtimestamp(ts, tz=timezone.utc), body.decode())
    return {
        "webhook-id": webhook_id,
        "webhook-timestamp": str(ts),
        "webhook-signature": signature,
        "Content-Type": "application/json",
    }


@pytest.fixture
def send_webhook(client):
    """POST a payload to the webhook endpoint signed the way the payment processor signs it."""
    def _send(payload, **sign_kwargs):
        body = json.dumps(payload).encode()
        return client.post("/billing/webhook", data=body, headers=signed_headers(body, **sign_kwargs))
    return _send


def event(event_type, event_id=None, **data):
    return {
        "event_type": event_type,
        "event_id": event_id or f"evt_{uuid.uuid4().hex}",
        "data": data,
    }


@pytest.fixture
def usage_log_down(app):
    """Every usage-log insert fails at flush time; other writes are untouched."""
    def _refuse(session, flush_context, instances):
        if any(isinstance(obj, UsageLog) for obj in session.new):
            raise SQLAlchemyError("usage_log table unavailable")

    sa.event.listen(db.session, "before_flush", _refuse)
    yield
    sa.event.remove(db.session, "before_flush", _refuse)
