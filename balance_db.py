"""
Balance aggregate maintenance.

The balances table is a projection of ledger_entries. Every change to it
happens in the same transaction as the ledger change that explains it;
resync_balance rebuilds it from the ledger alone.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

from loguru import logger
from psycopg import Connection

from db.db import Database
from db.repositories import (
    apply_balance_delta,
    ensure_balance_row,
    fetch_matured_commission_ids,
    get_balance,
    get_ledger_entry,
    get_recent_ledger_entries,
    get_withdrawal_entry,
    insert_ledger_entry,
    insert_withdrawal_entry,
    overwrite_balance,
    sum_ledger_buckets,
    update_entry_status,
    user_exists,
)
from errors import (
    BeneficiaryNotFound,
    InsufficientBalance,
    InvalidAmount,
    InvalidStatusTransition,
    LedgerError,
)
from models import (
    AdjustmentMetadata,
    Balance,
    BalanceDelta,
    BalanceSummary,
    Category,
    Direction,
    EntryStatus,
    LedgerEntry,
    WithdrawalMetadata,
)


ALLOWED_TRANSITIONS = {
    EntryStatus.PENDING: {EntryStatus.COMPLETED, EntryStatus.FAILED, EntryStatus.CANCELLED},
}


def _run_in_tx(db: Database, fn, *args, **kwargs):
    with db.get_conn() as conn:
        try:
            result = fn(conn, *args, **kwargs)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise


# ---------
# reads
# ---------

def _get_or_create_balance_in_tx(conn: Connection, user_id: int) -> Balance:
    if not user_exists(conn, user_id):
        raise BeneficiaryNotFound(f"User {user_id} not found")
    ensure_balance_row(conn, user_id)
    return get_balance(conn, user_id)


def get_or_create_balance(db: Database, user_id: int) -> Balance:
    """return the user's balance, creating a zeroed one on first access."""
    return _run_in_tx(db, _get_or_create_balance_in_tx, user_id)


def get_recent_entries(db: Database, user_id: int, limit: int = 10) -> list:
    with db.get_conn() as conn:
        entries = get_recent_ledger_entries(conn, user_id, limit)
        conn.rollback()
    return entries


def get_balance_summary(db: Database, user_id: int, limit: int = 10) -> BalanceSummary:
    """balance plus the most recent ledger entries, newest first."""

    def _summary(conn: Connection) -> BalanceSummary:
        balance = _get_or_create_balance_in_tx(conn, user_id)
        entries = get_recent_ledger_entries(conn, user_id, limit)
        return BalanceSummary(balance=balance, recent_entries=entries)

    return _run_in_tx(db, _summary)


# ---------
# resync
# ---------

def balance_from_sums(user_id: int, sums: Dict[str, Decimal]) -> Balance:
    """
    project ledger sums onto the balance buckets.

    available excludes pending debits: a withdrawal in flight has already
    left available and sits in processing until it settles or is cancelled.
    """
    return Balance(
        user_id=user_id,
        total_earnings=sums["earnings"],
        pending=sums["pending_credits"],
        available=sums["completed_credits"] - sums["completed_debits"] - sums["pending_debits"],
        processing=sums["pending_withdrawals"],
        withdrawn=sums["completed_withdrawals"],
    )


def _resync_balance_in_tx(conn: Connection, user_id: int) -> Balance:
    if not user_exists(conn, user_id):
        raise BeneficiaryNotFound(f"User {user_id} not found")
    ensure_balance_row(conn, user_id)
    # lock first, then aggregate: a concurrent credit either committed before
    # the lock (and is summed) or applies its increment after we write
    before = get_balance(conn, user_id, for_update=True)
    rebuilt = balance_from_sums(user_id, sum_ledger_buckets(conn, user_id))
    after = overwrite_balance(conn, user_id, rebuilt)

    if before is not None and (
        before.available != after.available
        or before.pending != after.pending
        or before.processing != after.processing
        or before.withdrawn != after.withdrawn
        or before.total_earnings != after.total_earnings
    ):
        logger.warning(
            f"Balance drift corrected for user {user_id}: "
            f"available {before.available} -> {after.available}, "
            f"pending {before.pending} -> {after.pending}, "
            f"processing {before.processing} -> {after.processing}, "
            f"withdrawn {before.withdrawn} -> {after.withdrawn}"
        )
    return after


def resync_balance(db: Database, user_id: int) -> Balance:
    """
    rebuild the user's balance strictly from their ledger entries and
    overwrite the stored aggregate. the only sanctioned fix for drift.
    """
    return _run_in_tx(db, _resync_balance_in_tx, user_id)


# ---------
# status transitions
# ---------

def _delta_for_transition(entry: LedgerEntry, new_status: EntryStatus) -> BalanceDelta:
    amount = entry.amount

    if entry.direction == Direction.CREDIT:
        if new_status == EntryStatus.COMPLETED:
            return BalanceDelta(pending=-amount, available=amount)
        # failed / cancelled: the credit never matures
        earned = -amount if entry.category in (Category.COMMISSION, Category.ADJUSTMENT) else Decimal("0")
        return BalanceDelta(pending=-amount, total_earnings=earned)

    if entry.category == Category.WITHDRAWAL:
        if new_status == EntryStatus.COMPLETED:
            return BalanceDelta(processing=-amount, withdrawn=amount)
        return BalanceDelta(processing=-amount, available=amount)

    # other pending debits were reserved out of available
    if new_status == EntryStatus.COMPLETED:
        return BalanceDelta()
    return BalanceDelta(available=amount)


def _transition_in_tx(conn: Connection, entry_id: int, new_status: EntryStatus) -> LedgerEntry:
    entry = get_ledger_entry(conn, entry_id)
    if entry is None:
        raise LedgerError(f"Ledger entry {entry_id} not found")

    if new_status not in ALLOWED_TRANSITIONS.get(entry.status, set()):
        raise InvalidStatusTransition(
            f"Cannot move ledger entry {entry_id} from {entry.status.value} to {new_status.value}"
        )

    updated = update_entry_status(conn, entry_id, entry.status, new_status)
    if updated is None:
        raise InvalidStatusTransition(
            f"Ledger entry {entry_id} changed status concurrently, not moving it to {new_status.value}"
        )

    apply_balance_delta(conn, entry.beneficiary_user_id, _delta_for_transition(entry, new_status))
    return updated


def transition_entry_status(db: Database, entry_id: int, new_status: EntryStatus) -> LedgerEntry:
    """
    move a ledger entry pending -> completed | failed | cancelled and shift
    the matching balance buckets in the same transaction.
    """
    entry = _run_in_tx(db, _transition_in_tx, entry_id, EntryStatus(new_status))
    logger.info(f"Ledger entry {entry_id} -> {entry.status.value}")
    return entry


# ---------
# maturity
# ---------

def release_matured_commissions(
    db: Database,
    now: Optional[datetime] = None,
    user_id: Optional[int] = None,
    limit: int = 1000,
) -> Dict[str, int]:
    """
    move pending commissions whose holding period has passed into available.
    one transaction per entry; a failure is logged and the rest continue.
    safe to run repeatedly.
    """
    now = now or datetime.now(timezone.utc)

    with db.get_conn() as conn:
        entry_ids = fetch_matured_commission_ids(conn, now, user_id=user_id, limit=limit)
        conn.rollback()

    logger.info(f"Found {len(entry_ids)} matured commissions to release")

    released = 0
    failed = 0
    for entry_id in entry_ids:
        try:
            _run_in_tx(db, _transition_in_tx, entry_id, EntryStatus.COMPLETED)
            released += 1
        except InvalidStatusTransition:
            # another worker released it first
            logger.info(f"Commission {entry_id} already released, skipping")
        except Exception as e:
            failed += 1
            logger.error(f"Error releasing commission {entry_id}: {e}")

    logger.info(f"Released {released} commissions ({failed} failed)")
    return {"found": len(entry_ids), "released": released, "failed": failed}


# ---------
# withdrawals (bookkeeping only; payout happens elsewhere)
# ---------

def _reserve_withdrawal_in_tx(
    conn: Connection,
    user_id: int,
    withdrawal_id: int,
    amount: Decimal,
    note: Optional[str],
) -> LedgerEntry:
    entry = insert_withdrawal_entry(
        conn,
        user_id,
        withdrawal_id,
        amount,
        WithdrawalMetadata(withdrawal_id=withdrawal_id, note=note),
    )
    if entry is None:
        return get_withdrawal_entry(conn, user_id, withdrawal_id)

    apply_balance_delta(conn, user_id, BalanceDelta(available=-amount, processing=amount))
    return entry


def reserve_withdrawal(
    db: Database,
    user_id: int,
    withdrawal_id: int,
    amount: Decimal,
    note: Optional[str] = None,
) -> LedgerEntry:
    """
    record a pending withdrawal debit and move the amount available -> processing.
    raises InsufficientBalance if available can't cover it. keyed on withdrawal_id.
    """
    amount = Decimal(amount)
    if amount <= 0:
        raise InvalidAmount(f"Withdrawal amount must be positive, got {amount}")
    entry = _run_in_tx(db, _reserve_withdrawal_in_tx, user_id, withdrawal_id, amount, note)
    logger.info(f"Withdrawal {withdrawal_id} reserved: {amount} for user {user_id}")
    return entry


def _withdrawal_transition(db: Database, user_id: int, withdrawal_id: int, new_status: EntryStatus):
    def _in_tx(conn: Connection) -> LedgerEntry:
        entry = get_withdrawal_entry(conn, user_id, withdrawal_id)
        if entry is None:
            raise LedgerError(f"Withdrawal {withdrawal_id} for user {user_id} not found")
        return _transition_in_tx(conn, entry.id, new_status)

    return _run_in_tx(db, _in_tx)


def settle_withdrawal(db: Database, user_id: int, withdrawal_id: int) -> LedgerEntry:
    """processing -> withdrawn once the payout went through."""
    entry = _withdrawal_transition(db, user_id, withdrawal_id, EntryStatus.COMPLETED)
    logger.info(f"Withdrawal {withdrawal_id} settled for user {user_id}")
    return entry


def cancel_withdrawal(
    db: Database,
    user_id: int,
    withdrawal_id: int,
    failed: bool = False,
) -> LedgerEntry:
    """processing -> available; the entry ends cancelled (or failed)."""
    status = EntryStatus.FAILED if failed else EntryStatus.CANCELLED
    entry = _withdrawal_transition(db, user_id, withdrawal_id, status)
    logger.info(f"Withdrawal {withdrawal_id} {status.value} for user {user_id}")
    return entry


# ---------
# adjustments
# ---------

def record_adjustment(
    db: Database,
    user_id: int,
    direction: Direction,
    amount: Decimal,
    reason: str,
    performed_by: Optional[str] = None,
) -> LedgerEntry:
    """
    completed corrective entry. credits add to available and total_earnings,
    debits come out of available.
    """
    direction = Direction(direction)
    amount = Decimal(amount)
    if amount <= 0:
        raise InvalidAmount(f"Adjustment amount must be positive, got {amount}")
    if not reason:
        raise LedgerError("Adjustment needs a reason")

    if direction == Direction.CREDIT:
        delta = BalanceDelta(available=amount, total_earnings=amount)
    else:
        delta = BalanceDelta(available=-amount)

    def _in_tx(conn: Connection) -> LedgerEntry:
        if not user_exists(conn, user_id):
            raise BeneficiaryNotFound(f"User {user_id} not found")
        entry = insert_ledger_entry(
            conn,
            user_id,
            direction,
            Category.ADJUSTMENT,
            amount,
            EntryStatus.COMPLETED,
            AdjustmentMetadata(reason=reason, performed_by=performed_by),
        )
        try:
            apply_balance_delta(conn, user_id, delta)
        except InsufficientBalance:
            logger.warning(f"Adjustment debit of {amount} exceeds available for user {user_id}")
            raise
        return entry

    entry = _run_in_tx(db, _in_tx)
    logger.info(f"Adjustment {direction.value} {amount} recorded for user {user_id}: {reason}")
    return entry
