from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlalchemy import ForeignKey, Integer, String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column
from extensions import db


class TransactionType(str):
    CREDIT = "credit"
    DEBIT = "debit"


class UsageOutcome(str):
    SUCCEEDED = "succeeded"
    REJECTED = "rejected"
    SETTLEMENT_FAILED = "settlement_failed"
    EVENT = "event"


class WalletTransaction(db.Model):
    """
    Append-only. Written in the same transaction as the balance change it
    describes, so folding amounts in id order reproduces Account.wallet_balance.
    """
    __tablename__ = "wallet_transactions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False) # signed cents
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False) # TransactionType
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[Optional[str]] = mapped_column(String(32))
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        db.Index('ix_wallet_tx_account_id', 'account_id', 'id'),
        db.Index('ix_wallet_tx_account_created', 'account_id', 'created_at'),
    )


class UsageLog(db.Model):
    """Audit/analytics trail of completed actions and billing events. Best-effort."""
    __tablename__ = "usage_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False) # UsageOutcome
    cost: Mapped[Optional[int]] = mapped_column(Integer)
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)

    __table_args__ = (
        db.Index('ix_usage_account_action_created', 'account_id', 'action', 'created_at'),
    )
