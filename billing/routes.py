from __future__ import annotations
from datetime import datetime, timezone
from flask import request, jsonify
from flask_jwt_extended import jwt_required, get_jwt_identity
from extensions import db, limiter
from accounts.models import as_utc
from accounts.services import current_account, is_trialing
from plans.catalog import PLANS, format_credits
from .models import Subscription
from .services import checkout
from .services.dodo_client import product_for_plan
from . import billing_bp


@billing_bp.post("/checkout")
@limiter.limit("20 per hour")
@jwt_required()
def start_checkout():
    acct = current_account()
    data = request.get_json(silent=True) or {}
    plan_id = str(data.get("plan_id") or "").strip().lower()
    session = checkout.create_session(acct.id, plan_id)
    return jsonify({
        "ok": True,
        "callback_token": session.callback_token,
        "expires_at": as_utc(session.expires_at).isoformat(),
        "plan_id": session.plan_id,
        "product_id": product_for_plan(session.plan_id),
        # must ride along on the external checkout so the webhook can correlate
        "metadata": {"callback_token": session.callback_token, "account_id": acct.id},
    })


@billing_bp.get("/checkout/status")
@jwt_required(optional=True)
def checkout_status():
    ident = get_jwt_identity()
    body = checkout.poll(request.args.get("token"), caller_account_id=str(ident) if ident else None)
    return jsonify(body)


@billing_bp.get("/status")
@jwt_required()
def billing_status():
    acct = current_account()
    sub = (db.session.query(Subscription)
           .filter(Subscription.account_id == acct.id)
           .order_by(Subscription.id.desc())
           .first())
    period_start = as_utc(sub.current_period_start) if sub else None
    period_end = as_utc(sub.current_period_end) if sub else None
    now = datetime.now(timezone.utc)
    seconds_to_renewal = int((period_end - now).total_seconds()) if period_end else None
    days_to_renewal = (seconds_to_renewal // 86400) if seconds_to_renewal and seconds_to_renewal > 0 else None
    return jsonify({
        "ok": True,
        "plan": acct.plan,
        "subscription_status": sub.status if sub else None,
        "subscription_id": sub.external_subscription_id if sub else None,
        "onboarding_completed": acct.onboarding_completed,
        "trial": {
            "is_trialing": is_trialing(acct),
            "ends_at": as_utc(acct.trial_ends_at).isoformat() if acct.trial_ends_at else None,
        },
        "period": {
            "start": period_start.isoformat() if period_start else None,
            "end": period_end.isoformat() if period_end else None,
            "seconds_to_renewal": seconds_to_renewal,
            "days_to_renewal": days_to_renewal,
        },
    })


@billing_bp.get("/plans")
def list_plans():
    items = [{
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "price_cents": p.price_cents,
        "price_formatted": format_credits(p.price_cents),
        "credits": p.total_credits,
        "credits_formatted": format_credits(p.total_credits),
        "base_credits": p.base_credits,
        "bonus_credits": p.bonus_credits,
        "reactions_per_post": p.reactions_per_post,
        "comments_per_post": p.comments_per_post,
        "metered": p.is_metered,
    } for p in PLANS.values()]
    return jsonify({"ok": True, "plans": items})
