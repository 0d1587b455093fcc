from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from flask import current_app
from sqlalchemy import select, update
from extensions import db
from accounts.models import Account
from credits.models import WalletTransaction, TransactionType
from errors import AccountNotFound, InsufficientFunds, DeductionRace
from plans.catalog import FREE_PLAN, get_plan, is_wallet_plan, format_credits

# Retries for the version-guarded swap. On dialects with SELECT ... FOR UPDATE
# the first attempt always wins; on SQLite a loser re-reads and tries again.
MAX_SWAP_ATTEMPTS = 8


def _supports_for_update() -> bool:
    try:
        # SQLite doesn't support SELECT ... FOR UPDATE
        return (db.session.bind.dialect.name or "").lower() not in ("sqlite",)
    except Exception:
        return False


def _read_wallet(account_id: str):
    stmt = select(Account.wallet_balance, Account.wallet_version, Account.plan).where(Account.id == account_id)
    if _supports_for_update():
        stmt = stmt.with_for_update()
    row = db.session.execute(stmt).first()
    if row is None:
        raise AccountNotFound(f"Account {account_id} not found", details={"account_id": account_id})
    return row


def _swap_wallet(account_id: str, expected_version: int, **values) -> bool:
    """Apply values iff nobody changed the wallet since expected_version was read."""
    now = datetime.now(timezone.utc)
    res = db.session.execute(
        update(Account)
        .where(Account.id == account_id, Account.wallet_version == expected_version)
        .values(wallet_version=expected_version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False
    cached = db.session.identity_map.get(db.session.identity_key(Account, account_id))
    if cached is not None:
        db.session.expire(cached)
    return True


def _append(account_id: str, amount: int, balance_after: int, tx_type: str, reason: str,
            action_type: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> WalletTransaction:
    entry = WalletTransaction(
        account_id=account_id,
        amount=amount,
        balance_after=balance_after,
        type=tx_type,
        reason=reason[:255],
        action_type=action_type,
        meta=meta,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def get_balance(account_id: str) -> int:
    return int(_read_wallet(account_id).wallet_balance)


def deduct(account_id: str, amount: int, action_type: Optional[str] = None,
           reason: str = "", metadata: Optional[Dict[str, Any]] = None) -> int:
    """
    Atomically take amount cents from the wallet and log a debit.
    Raises InsufficientFunds (nothing written) or AccountNotFound.
    Does not commit; the caller's transaction controls atomicity.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError("amount must be a positive integer number of cents")

    for _ in range(MAX_SWAP_ATTEMPTS):
        snap = _read_wallet(account_id)
        if snap.wallet_balance < amount:
            raise InsufficientFunds(
                "Not enough credits",
                details={"balance": int(snap.wallet_balance), "required": amount},
            )
        new_balance = snap.wallet_balance - amount
        if _swap_wallet(account_id, snap.wallet_version, wallet_balance=new_balance):
            _append(account_id, -amount, new_balance, TransactionType.DEBIT,
                    reason or f"Debit for {action_type or 'action'}", action_type, metadata)
            current_app.logger.info(
                "wallet: deducted %s from %s for %s (balance %s)",
                format_credits(amount), account_id, action_type, format_credits(new_balance),
            )
            return new_balance

    raise DeductionRace("Wallet changed concurrently, please retry", details={"account_id": account_id})


def reset(account_id: str, plan_id: str) -> int:
    """
    Billing-cycle reset: forfeit whatever is left, then grant the plan's full
    allocation. Also records the plan and wallet_reset_at on the account.
    """
    if not is_wallet_plan(plan_id):
        raise ValueError(f"Invalid wallet plan: {plan_id}")
    plan = get_plan(plan_id)
    allocation = plan.total_credits

    for _ in range(MAX_SWAP_ATTEMPTS):
        snap = _read_wallet(account_id)
        previous = int(snap.wallet_balance)
        now = datetime.now(timezone.utc)
        if not _swap_wallet(account_id, snap.wallet_version,
                            wallet_balance=allocation, wallet_reset_at=now, plan=plan.id):
            continue

        if previous > 0:
            _append(account_id, -previous, 0, TransactionType.DEBIT,
                    f"Credits forfeited at billing cycle end (unused: {format_credits(previous)})",
                    meta={"forfeited": True, "previous_balance": previous})
        _append(account_id, allocation, allocation, TransactionType.CREDIT,
                f"Billing cycle credit allocation for {plan.name} plan",
                meta={
                    "plan_id": plan.id,
                    "base_credits": plan.base_credits,
                    "bonus_credits": plan.bonus_credits,
                    "total_credits": allocation,
                })
        current_app.logger.info(
            "wallet: reset %s to %s on %s (forfeited %s)",
            account_id, format_credits(allocation), plan.id, format_credits(previous),
        )
        return allocation

    raise DeductionRace("Wallet changed concurrently during reset", details={"account_id": account_id})


def clear(account_id: str, reason: str = "Subscription ended") -> int:
    """Zero the wallet and demote to Free. No-op when the balance is already zero."""
    for _ in range(MAX_SWAP_ATTEMPTS):
        snap = _read_wallet(account_id)
        previous = int(snap.wallet_balance)
        if previous <= 0:
            return 0
        if not _swap_wallet(account_id, snap.wallet_version, wallet_balance=0, plan=FREE_PLAN):
            continue
        _append(account_id, -previous, 0, TransactionType.DEBIT, reason,
                meta={"cleared": True, "previous_balance": previous})
        current_app.logger.info(
            "wallet: cleared %s from %s (%s)", format_credits(previous), account_id, reason,
        )
        return 0

    raise DeductionRace("Wallet changed concurrently during clear", details={"account_id": account_id})


def list_transactions(account_id: str, limit: int = 50) -> List[WalletTransaction]:
    return (db.session.query(WalletTransaction)
            .filter(WalletTransaction.account_id == account_id)
            .order_by(WalletTransaction.id.desc())
            .limit(limit).all())


def replay_balance(account_id: str) -> int:
    """Fold the transaction stream from zero, in the order it was written."""
    amounts = db.session.execute(
        select(WalletTransaction.amount)
        .where(WalletTransaction.account_id == account_id)
        .order_by(WalletTransaction.id.asc())
    ).scalars()
    balance = 0
    for amount in amounts:
        balance += amount
    return balance


def verify_ledger(account_id: str) -> Dict[str, Any]:
    stored = get_balance(account_id)
    replayed = replay_balance(account_id)
    if stored != replayed:
        current_app.logger.warning(
            "wallet: ledger mismatch for %s (stored %s, replayed %s)", account_id, stored, replayed,
        )
    return {"account_id": account_id, "balance": stored, "replayed": replayed, "consistent": stored == replayed}


def serialize_transaction(tx: WalletTransaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "amount": tx.amount,
        "amount_formatted": format_credits(tx.amount),
        "balance_after": tx.balance_after,
        "type": tx.type,
        "reason": tx.reason,
        "action_type": tx.action_type,
        "metadata": tx.meta,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }
