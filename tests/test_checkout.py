from datetime import datetime, timedelta, timezone

from extensions import db
from accounts.models import Account
from billing.models import CheckoutSession
from billing.services import checkout

from conftest import PRODUCTS, event


def test_start_checkout_returns_token_and_metadata(client, auth_headers):
    resp = client.post("/billing/checkout", json={"plan_id": "pro"},
                       headers=auth_headers("acct_1", email="a@example.com"))

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["plan_id"] == "pro"
    assert body["product_id"] == PRODUCTS["pro"]
    assert body["metadata"] == {"callback_token": body["callback_token"], "account_id": "acct_1"}
    session = db.session.query(CheckoutSession).filter_by(callback_token=body["callback_token"]).one()
    assert session.status == "pending"
    assert db.session.get(Account, "acct_1").email == "a@example.com"


def test_start_checkout_rejects_free_or_unknown_plan(client, auth_headers):
    for plan_id in ("free", "platinum", None):
        resp = client.post("/billing/checkout", json={"plan_id": plan_id}, headers=auth_headers())
        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "malformed_payload"


def test_tokens_are_unique(make_account):
    make_account("acct_1")
    tokens = {checkout.create_session("acct_1", "pro").callback_token for _ in range(5)}
    assert len(tokens) == 5


def test_poll_pending(client, make_account):
    make_account("acct_1")
    session = checkout.create_session("acct_1", "pro")

    resp = client.get(f"/billing/checkout/status?token={session.callback_token}")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["status"] == "pending"
    assert body["plan_id"] == "pro"


def test_poll_missing_and_unknown_token(client):
    assert client.get("/billing/checkout/status").status_code == 400
    assert client.get("/billing/checkout/status?token=nope").status_code == 404


def test_poll_expires_stale_pending_session(client, make_account):
    make_account("acct_1")
    session = checkout.create_session("acct_1", "pro")
    session.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db.session.commit()

    body = client.get(f"/billing/checkout/status?token={session.callback_token}").get_json()
    assert body["status"] == "expired"
    db.session.expire_all()
    assert db.session.get(CheckoutSession, session.id).status == "expired"


def test_poll_never_completes_a_session(client, make_account, auth_headers):
    make_account("acct_1")
    session = checkout.create_session("acct_1", "pro")

    for _ in range(3):
        client.get(f"/billing/checkout/status?token={session.callback_token}", headers=auth_headers("acct_1"))

    db.session.expire_all()
    assert db.session.get(CheckoutSession, session.id).status == "pending"
    assert db.session.get(Account, "acct_1").onboarding_completed is False


def _complete_via_webhook(send_webhook, token):
    send_webhook(event("subscription.active", customer_id="cus_1", product_id=PRODUCTS["pro"],
                       subscription_id="sub_1", metadata={"callback_token": token}))


def test_completed_session_reports_to_owner(client, make_account, auth_headers, send_webhook):
    make_account("acct_1", dodo_customer_id="cus_1", email="owner@example.com")
    session = checkout.create_session("acct_1", "pro")
    _complete_via_webhook(send_webhook, session.callback_token)

    body = client.get(f"/billing/checkout/status?token={session.callback_token}",
                      headers=auth_headers("acct_1")).get_json()
    assert body["status"] == "completed"
    assert body["requires_login"] is False
    assert body["user_email"] == "owner@example.com"


def test_completed_session_asks_strangers_to_log_in(client, make_account, auth_headers, send_webhook):
    make_account("acct_1", dodo_customer_id="cus_1")
    session = checkout.create_session("acct_1", "pro")
    _complete_via_webhook(send_webhook, session.callback_token)

    anonymous = client.get(f"/billing/checkout/status?token={session.callback_token}").get_json()
    stranger = client.get(f"/billing/checkout/status?token={session.callback_token}",
                          headers=auth_headers("acct_2")).get_json()
    assert anonymous["requires_login"] is True
    assert stranger["requires_login"] is True


def test_poll_finishes_onboarding_only_for_owner(make_account):
    make_account("acct_1")
    session = checkout.create_session("acct_1", "pro")
    # completed by the webhook path, but onboarding flag still unset
    db.session.query(CheckoutSession).filter_by(id=session.id).update({"status": "completed"})
    db.session.commit()

    checkout.poll(session.callback_token, caller_account_id="acct_2")
    assert db.session.get(Account, "acct_1").onboarding_completed is False
    checkout.poll(session.callback_token, caller_account_id=None)
    assert db.session.get(Account, "acct_1").onboarding_completed is False

    checkout.poll(session.callback_token, caller_account_id="acct_1")
    db.session.expire_all()
    assert db.session.get(Account, "acct_1").onboarding_completed is True


def test_expired_session_is_not_revived_by_webhook(client, make_account, send_webhook):
    make_account("acct_1", dodo_customer_id="cus_1")
    session = checkout.create_session("acct_1", "pro")
    session.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    db.session.commit()
    client.get(f"/billing/checkout/status?token={session.callback_token}")

    _complete_via_webhook(send_webhook, session.callback_token)
    db.session.expire_all()
    assert db.session.get(CheckoutSession, session.id).status == "expired"
    # the subscription itself still took effect
    assert db.session.get(Account, "acct_1").plan == "pro"


def test_billing_status_and_plans(client, make_account, auth_headers, send_webhook):
    make_account("acct_1", dodo_customer_id="cus_1")
    send_webhook(event("payment.succeeded", customer_id="cus_1", product_id=PRODUCTS["pro"], subscription_id="sub_1"))

    status = client.get("/billing/status", headers=auth_headers("acct_1")).get_json()
    assert status["plan"] == "pro"
    assert status["subscription_status"] == "active"
    assert status["period"]["days_to_renewal"] >= 27

    plans = client.get("/billing/plans").get_json()["plans"]
    assert {p["id"] for p in plans} == {"free", "pro", "growth", "scale"}
    pro = next(p for p in plans if p["id"] == "pro")
    assert pro["credits_formatted"] == "$150.00"
