from __future__ import annotations
import csv
import io
from flask import Response, jsonify, request
from flask_jwt_extended import jwt_required
from extensions import db
from accounts.models import as_utc
from accounts.services import current_account
from billing.models import Subscription
from plans.catalog import (
    ACTION_TYPES, FIXED_ACTION_COSTS, PLANS,
    POST_ANALYSIS_BASE_COST, PER_REACTION_COST, PER_COMMENT_COST,
    format_credits,
)
from .services import ledger
from .services.admission import can_perform, usage_snapshot
from .services.costs import estimated_max_cost
from .services.usage_log import usage_stats
from . import credits_bp


def _limit_arg(default: int = 50, ceiling: int = 500) -> int:
    try:
        limit = int(request.args.get("limit", default))
    except (TypeError, ValueError):
        limit = default
    return max(1, min(limit, ceiling))


@credits_bp.get("/wallet")
@jwt_required()
def get_wallet():
    acct = current_account()
    sub = (db.session.query(Subscription)
           .filter(Subscription.account_id == acct.id)
           .order_by(Subscription.id.desc())
           .first())
    next_reset = as_utc(sub.current_period_end) if sub and sub.current_period_end else None
    return jsonify({
        "ok": True,
        "plan": acct.plan,
        "balance": acct.wallet_balance,
        "balance_formatted": format_credits(acct.wallet_balance),
        "wallet_reset_at": as_utc(acct.wallet_reset_at).isoformat() if acct.wallet_reset_at else None,
        "next_reset_at": next_reset.isoformat() if next_reset else None,
    })


@credits_bp.get("/activity")
@jwt_required()
def get_activity():
    acct = current_account()
    rows = ledger.list_transactions(acct.id, limit=_limit_arg())
    return jsonify({"ok": True, "items": [ledger.serialize_transaction(tx) for tx in rows]})


@credits_bp.get("/activity.csv")
@jwt_required()
def download_activity():
    acct = current_account()
    rows = ledger.list_transactions(acct.id, limit=_limit_arg(default=500, ceiling=5000))
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(["created_at", "type", "amount", "balance_after", "action_type", "reason"])
    for tx in rows:
        writer.writerow([
            as_utc(tx.created_at).isoformat() if tx.created_at else "",
            tx.type,
            format_credits(tx.amount),
            format_credits(tx.balance_after),
            tx.action_type or "",
            tx.reason,
        ])
    return Response(
        buf.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=wallet-activity.csv"},
    )


@credits_bp.get("/usage")
@jwt_required()
def get_usage():
    acct = current_account()
    return jsonify({"ok": True, "usage": usage_snapshot(acct), "stats": usage_stats(acct.id)})


@credits_bp.get("/can-perform/<action_type>")
@jwt_required()
def get_can_perform(action_type: str):
    acct = current_account()
    decision = can_perform(acct.id, action_type)
    return jsonify({"ok": True, **decision.to_dict()})


@credits_bp.get("/config")
def get_config():
    worst_cases = {
        plan_id: {action: estimated_max_cost(plan_id, action) for action in ACTION_TYPES}
        for plan_id in PLANS
    }
    return jsonify({
        "ok": True,
        "costs": {
            "post_analysis": {
                "base": POST_ANALYSIS_BASE_COST,
                "per_reaction": PER_REACTION_COST,
                "per_comment": PER_COMMENT_COST,
            },
            **FIXED_ACTION_COSTS,
        },
        "estimated_max_costs": worst_cases,
    })
