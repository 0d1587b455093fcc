from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from extensions import db
from plans.catalog import FREE_PLAN

utcnow = lambda: datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TimestampMixin:
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


class Account(TimestampMixin, db.Model):
    """
    One row per authenticated identity.

    wallet_balance is only meaningful on a wallet plan; Free accounts are
    metered by the analyses/enrichments counters instead. wallet_version is
    bumped on every balance change and guards compare-and-swap updates.
    """
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    plan: Mapped[str] = mapped_column(String(16), nullable=False, default=FREE_PLAN)

    wallet_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wallet_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wallet_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    analyses_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enrichments_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    dodo_customer_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    onboarding_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<Account {self.id} plan={self.plan}>"
