from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from balance_db import (
    cancel_withdrawal,
    get_balance_summary,
    get_or_create_balance,
    record_adjustment,
    release_matured_commissions,
    reserve_withdrawal,
    resync_balance,
    settle_withdrawal,
    transition_entry_status,
)
from crediting_db import credit_purchase_commissions
from errors import (
    BeneficiaryNotFound,
    InsufficientBalance,
    InvalidAmount,
    InvalidStatusTransition,
)
from models import Category, CommissionPolicy, Direction, EntryStatus


IMMEDIATE = CommissionPolicy(hold_days=0)
HELD = CommissionPolicy(hold_days=14)


@pytest.fixture
def earned(db, seed, chain):
    """
    parent has 1299 available from one 1999 purchase (grand has 100).
    """
    grand, parent, buyer = chain
    package = seed.package(Decimal("1999"))
    purchase = seed.purchase(buyer, package)
    credit_purchase_commissions(db, purchase, IMMEDIATE)
    return parent


def test_balance_created_zeroed_on_first_access(db, seed):
    user = seed.user("fresh")

    balance = get_or_create_balance(db, user)

    assert balance.user_id == user
    assert balance.available == Decimal("0")
    assert balance.pending == Decimal("0")
    assert balance.total_earnings == Decimal("0")


def test_balance_for_unknown_user_rejected(db):
    with pytest.raises(BeneficiaryNotFound):
        get_or_create_balance(db, 999_999)


def test_summary_lists_newest_entries_first(db, earned):
    record_adjustment(db, earned, Direction.CREDIT, Decimal("10"), "goodwill")

    summary = get_balance_summary(db, earned, limit=10)

    assert summary.balance.available == Decimal("1309")
    assert [e.category for e in summary.recent_entries] == [Category.ADJUSTMENT, Category.COMMISSION]

    limited = get_balance_summary(db, earned, limit=1)
    assert len(limited.recent_entries) == 1


def test_resync_matches_ledger_conservation(db, seed, earned):
    """
    resync result = completed credits - completed debits, whatever the
    stored aggregate said before.
    """
    record_adjustment(db, earned, Direction.DEBIT, Decimal("99"), "chargeback")
    seed.execute(
        "UPDATE balances SET available = 1, total_earnings = 7 WHERE user_id = %s",
        (earned,),
    )

    balance = resync_balance(db, earned)

    credits = seed.scalar(
        """
        SELECT COALESCE(SUM(amount), 0) FROM ledger_entries
        WHERE beneficiary_user_id = %s AND direction = 'credit' AND status = 'completed'
        """,
        (earned,),
    )
    debits = seed.scalar(
        """
        SELECT COALESCE(SUM(amount), 0) FROM ledger_entries
        WHERE beneficiary_user_id = %s AND direction = 'debit' AND status = 'completed'
        """,
        (earned,),
    )
    assert balance.available == credits - debits == Decimal("1200")
    assert balance.total_earnings == Decimal("1299")


def test_resync_without_drift_changes_nothing(db, earned):
    before = get_or_create_balance(db, earned)
    after = resync_balance(db, earned)

    assert (after.available, after.pending, after.total_earnings) == (
        before.available,
        before.pending,
        before.total_earnings,
    )


def test_resync_for_unknown_user_rejected(db, seed):
    with pytest.raises(BeneficiaryNotFound):
        resync_balance(db, 999_999)

    assert seed.scalar("SELECT COUNT(*) FROM balances WHERE user_id = %s", (999_999,)) == 0


def test_matured_commissions_move_to_available(db, seed, chain):
    grand, parent, buyer = chain
    package = seed.package(Decimal("1999"))
    purchase = seed.purchase(buyer, package)
    credit_purchase_commissions(db, purchase, HELD)

    # nothing has matured yet
    assert release_matured_commissions(db)["found"] == 0

    later = datetime.now(timezone.utc) + timedelta(days=15)
    result = release_matured_commissions(db, now=later)

    assert result == {"found": 2, "released": 2, "failed": 0}
    parent_balance = get_or_create_balance(db, parent)
    assert parent_balance.pending == Decimal("0")
    assert parent_balance.available == Decimal("1299")
    assert parent_balance.total_earnings == Decimal("1299")

    # running again is a no-op
    assert release_matured_commissions(db, now=later) == {"found": 0, "released": 0, "failed": 0}
    assert resync_balance(db, parent).available == Decimal("1299")


def test_release_can_be_limited_to_one_user(db, seed, chain):
    grand, parent, buyer = chain
    package = seed.package(Decimal("1999"))
    purchase = seed.purchase(buyer, package)
    credit_purchase_commissions(db, purchase, HELD)

    later = datetime.now(timezone.utc) + timedelta(days=15)
    result = release_matured_commissions(db, now=later, user_id=grand)

    assert result["released"] == 1
    assert get_or_create_balance(db, grand).available == Decimal("100")
    assert get_or_create_balance(db, parent).pending == Decimal("1299")


def test_cancelled_pending_commission_leaves_earnings(db, seed, chain):
    grand, parent, buyer = chain
    package = seed.package(Decimal("1999"))
    purchase = seed.purchase(buyer, package)
    result = credit_purchase_commissions(db, purchase, HELD)
    entry_id = seed.scalar(
        "SELECT id FROM ledger_entries WHERE beneficiary_user_id = %s", (parent,)
    )

    entry = transition_entry_status(db, entry_id, EntryStatus.CANCELLED)

    assert result.credits_added == 2
    assert entry.status == EntryStatus.CANCELLED
    balance = get_or_create_balance(db, parent)
    assert balance.pending == Decimal("0")
    assert balance.total_earnings == Decimal("0")
    assert resync_balance(db, parent).total_earnings == Decimal("0")


def test_terminal_status_cannot_change(db, seed, earned):
    entry_id = seed.scalar(
        "SELECT id FROM ledger_entries WHERE beneficiary_user_id = %s", (earned,)
    )

    with pytest.raises(InvalidStatusTransition):
        transition_entry_status(db, entry_id, EntryStatus.CANCELLED)

    with pytest.raises(InvalidStatusTransition):
        transition_entry_status(db, entry_id, EntryStatus.PENDING)


def test_withdrawal_reserve_and_settle(db, earned):
    entry = reserve_withdrawal(db, earned, withdrawal_id=1, amount=Decimal("500"))

    assert entry.status == EntryStatus.PENDING
    balance = get_or_create_balance(db, earned)
    assert balance.available == Decimal("799")
    assert balance.processing == Decimal("500")

    # same withdrawal id: recorded once
    again = reserve_withdrawal(db, earned, withdrawal_id=1, amount=Decimal("500"))
    assert again.id == entry.id
    assert get_or_create_balance(db, earned).available == Decimal("799")

    settle_withdrawal(db, earned, 1)

    balance = get_or_create_balance(db, earned)
    assert balance.processing == Decimal("0")
    assert balance.withdrawn == Decimal("500")
    assert balance.available == Decimal("799")

    rebuilt = resync_balance(db, earned)
    assert (rebuilt.available, rebuilt.processing, rebuilt.withdrawn) == (
        Decimal("799"),
        Decimal("0"),
        Decimal("500"),
    )


def test_withdrawal_cancel_returns_funds(db, earned):
    reserve_withdrawal(db, earned, withdrawal_id=2, amount=Decimal("300"))

    entry = cancel_withdrawal(db, earned, 2)

    assert entry.status == EntryStatus.CANCELLED
    balance = get_or_create_balance(db, earned)
    assert balance.available == Decimal("1299")
    assert balance.processing == Decimal("0")
    assert resync_balance(db, earned).available == Decimal("1299")


def test_failed_withdrawal_returns_funds(db, earned):
    reserve_withdrawal(db, earned, withdrawal_id=3, amount=Decimal("1299"))

    entry = cancel_withdrawal(db, earned, 3, failed=True)

    assert entry.status == EntryStatus.FAILED
    assert get_or_create_balance(db, earned).available == Decimal("1299")


def test_in_flight_withdrawal_survives_resync(db, earned):
    reserve_withdrawal(db, earned, withdrawal_id=4, amount=Decimal("200"))

    rebuilt = resync_balance(db, earned)

    assert rebuilt.available == Decimal("1099")
    assert rebuilt.processing == Decimal("200")


def test_withdrawal_over_available_rejected(db, seed, earned):
    with pytest.raises(InsufficientBalance):
        reserve_withdrawal(db, earned, withdrawal_id=5, amount=Decimal("10000"))

    # the whole transaction rolled back, ledger entry included
    assert seed.scalar(
        "SELECT COUNT(*) FROM ledger_entries WHERE category = 'withdrawal'"
    ) == 0
    assert get_or_create_balance(db, earned).available == Decimal("1299")


def test_withdrawal_amount_must_be_positive(db, earned):
    with pytest.raises(InvalidAmount):
        reserve_withdrawal(db, earned, withdrawal_id=6, amount=Decimal("0"))


def test_adjustments(db, earned):
    credit = record_adjustment(db, earned, Direction.CREDIT, Decimal("50"), "promo", performed_by="ops")

    assert credit.status == EntryStatus.COMPLETED
    assert credit.metadata.reason == "promo"
    assert credit.metadata.performed_by == "ops"
    balance = get_or_create_balance(db, earned)
    assert balance.available == Decimal("1349")
    assert balance.total_earnings == Decimal("1349")

    record_adjustment(db, earned, "debit", Decimal("49"), "correction")
    balance = get_or_create_balance(db, earned)
    assert balance.available == Decimal("1300")
    assert balance.total_earnings == Decimal("1349")


def test_adjustment_debit_over_available_rejected(db, earned):
    with pytest.raises(InsufficientBalance):
        record_adjustment(db, earned, Direction.DEBIT, Decimal("5000"), "chargeback")

    assert get_or_create_balance(db, earned).available == Decimal("1299")


def test_adjustment_needs_reason(db, earned):
    with pytest.raises(ValueError):
        record_adjustment(db, earned, Direction.CREDIT, Decimal("5"), "")
