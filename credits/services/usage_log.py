from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from extensions import db
from credits.models import UsageLog, UsageOutcome
from plans.catalog import POST_ANALYSIS, PROFILE_ENRICHMENT


def record_usage(
    *,
    account_id: str,
    action: str,
    outcome: str,
    cost: Optional[int] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Append a usage/audit row in its own commit, after the primary operation
    has been committed. Never raises; a failed write is logged and rolled back.
    """
    db.session.add(UsageLog(
        account_id=account_id,
        action=action,
        outcome=outcome,
        cost=cost,
        meta=meta or {},
    ))
    # don't raise if audit write fails; best-effort
    try:
        db.session.commit()
        return True
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("usage_log: failed to record %s for %s", action, account_id)
        return False


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def usage_stats(account_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or datetime.now(timezone.utc)
    since_month = month_start(now)

    def _count(action: str, since: Optional[datetime] = None) -> int:
        q = db.session.query(func.count(UsageLog.id)).filter(
            UsageLog.account_id == account_id,
            UsageLog.action == action,
            UsageLog.outcome == UsageOutcome.SUCCEEDED,
        )
        if since is not None:
            q = q.filter(UsageLog.created_at >= since)
        return int(q.scalar() or 0)

    return {
        "total_analyses": _count(POST_ANALYSIS),
        "total_enrichments": _count(PROFILE_ENRICHMENT),
        "this_month_analyses": _count(POST_ANALYSIS, since_month),
        "this_month_enrichments": _count(PROFILE_ENRICHMENT, since_month),
    }
