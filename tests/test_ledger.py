import threading

import pytest

from extensions import db
from accounts.models import Account
from credits.models import WalletTransaction
from credits.services import ledger
from errors import AccountNotFound, InsufficientFunds


def _transactions(account_id):
    return (db.session.query(WalletTransaction)
            .filter_by(account_id=account_id)
            .order_by(WalletTransaction.id.asc())
            .all())


def test_reset_grants_allocation(make_account):
    make_account("acct_1")
    assert ledger.reset("acct_1", "pro") == 15000
    db.session.commit()

    acct = db.session.get(Account, "acct_1")
    assert acct.wallet_balance == 15000
    assert acct.plan == "pro"
    assert acct.wallet_reset_at is not None
    txs = _transactions("acct_1")
    assert [(t.amount, t.type, t.balance_after) for t in txs] == [(15000, "credit", 15000)]


def test_reset_forfeits_remaining_balance(make_account):
    make_account("acct_1")
    ledger.reset("acct_1", "pro")
    ledger.deduct("acct_1", 3000, "post_analysis", "used")
    db.session.commit()

    ledger.reset("acct_1", "growth")
    db.session.commit()

    assert ledger.get_balance("acct_1") == 30000
    forfeit, grant = _transactions("acct_1")[-2:]
    assert forfeit.amount == -12000
    assert forfeit.balance_after == 0
    assert "forfeited" in forfeit.reason
    assert grant.amount == 30000
    assert grant.balance_after == 30000


def test_reset_rejects_free_plan(make_account):
    make_account("acct_1")
    with pytest.raises(ValueError):
        ledger.reset("acct_1", "free")


def test_deduct_logs_debit(make_account):
    make_account("acct_1")
    ledger.reset("acct_1", "pro")
    new_balance = ledger.deduct("acct_1", 501, "post_analysis", "Post analysis", {"post": "x"})
    db.session.commit()

    assert new_balance == 14499
    last = _transactions("acct_1")[-1]
    assert last.amount == -501
    assert last.type == "debit"
    assert last.balance_after == 14499
    assert last.action_type == "post_analysis"
    assert last.meta == {"post": "x"}


def test_deduct_insufficient_funds_writes_nothing(make_account):
    make_account("acct_1", plan="pro", balance=400)
    with pytest.raises(InsufficientFunds) as exc:
        ledger.deduct("acct_1", 501, "post_analysis")
    db.session.rollback()

    assert exc.value.details == {"balance": 400, "required": 501}
    assert ledger.get_balance("acct_1") == 400
    assert _transactions("acct_1") == []


def test_deduct_rejects_non_positive_amounts(make_account):
    make_account("acct_1", plan="pro", balance=400)
    with pytest.raises(ValueError):
        ledger.deduct("acct_1", 0)
    with pytest.raises(ValueError):
        ledger.deduct("acct_1", -5)


def test_unknown_account(app):
    with pytest.raises(AccountNotFound):
        ledger.get_balance("missing")
    with pytest.raises(AccountNotFound):
        ledger.deduct("missing", 10)


def test_clear_zeroes_and_demotes(make_account):
    make_account("acct_1")
    ledger.reset("acct_1", "pro")
    ledger.deduct("acct_1", 13000, "ai_search")
    db.session.commit()

    assert ledger.clear("acct_1", "Credits forfeited: subscription expired") == 0
    db.session.commit()

    acct = db.session.get(Account, "acct_1")
    assert acct.wallet_balance == 0
    assert acct.plan == "free"
    last = _transactions("acct_1")[-1]
    assert last.amount == -2000
    assert "forfeited" in last.reason


def test_clear_is_noop_at_zero(make_account):
    make_account("acct_1", plan="pro", balance=0)
    assert ledger.clear("acct_1") == 0
    db.session.commit()
    assert _transactions("acct_1") == []


def test_replay_matches_stored_balance(make_account):
    make_account("acct_1")
    ledger.reset("acct_1", "pro")
    for amount in (501, 5, 10, 10, 1):
        ledger.deduct("acct_1", amount, "post_analysis")
    ledger.reset("acct_1", "pro")
    ledger.deduct("acct_1", 77, "post_analysis")
    ledger.clear("acct_1")
    db.session.commit()

    report = ledger.verify_ledger("acct_1")
    assert report["consistent"] is True
    assert report["balance"] == report["replayed"] == 0


def test_list_transactions_newest_first(make_account):
    make_account("acct_1")
    ledger.reset("acct_1", "pro")
    ledger.deduct("acct_1", 5, "profile_enrichment")
    db.session.commit()

    items = ledger.list_transactions("acct_1")
    assert [tx.amount for tx in items] == [-5, 15000]
    assert ledger.serialize_transaction(items[0])["amount_formatted"] == "-$0.05"


def test_concurrent_deducts_never_overdraw(app, make_account):
    make_account("acct_1")
    ledger.reset("acct_1", "pro")
    ledger.deduct("acct_1", 15000 - 1000, "ai_search")
    db.session.commit()

    results = []
    lock = threading.Lock()

    def worker():
        with app.app_context():
            try:
                ledger.deduct("acct_1", 150, "post_analysis")
                db.session.commit()
                outcome = "ok"
            except InsufficientFunds:
                db.session.rollback()
                outcome = "short"
            finally:
                db.session.remove()
            with lock:
                results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 10
    assert results.count("ok") == 6  # 1000 // 150
    db.session.expire_all()
    assert ledger.get_balance("acct_1") == 1000 - 6 * 150
    assert ledger.verify_ledger("acct_1")["consistent"] is True
