"""
Commission reconciliation.

Finds approved purchases whose commissions were never credited, credits the
gaps through the same idempotent operation the approval path uses, then
rebuilds every commission beneficiary's balance from the ledger.

A cursor over approval order (approved_at, purchase id) keeps repeated runs
from rescanning all history; a full run ignores it and is equally safe.
Purchases approved late sort after the cursor whatever their id.
"""

from decimal import Decimal
from typing import Optional, Tuple

from loguru import logger

from crediting_db import beneficiaries_for_purchase, credit_purchase
from balance_db import resync_balance
from db.db import Database
from db.repositories import (
    commission_totals,
    fetch_unreconciled_purchases,
    get_reconciliation_cursor,
    list_commission_beneficiaries,
    set_reconciliation_cursor,
)
from errors import LedgerError
from models import (
    CommissionPolicy,
    PurchaseTransaction,
    ReconciliationCursor,
    ReconciliationFailure,
    ReconciliationReport,
)


CURSOR_NAME = "commissions"


def _credit_one(db: Database, purchase: PurchaseTransaction, policy: CommissionPolicy):
    with db.get_conn() as conn:
        try:
            beneficiaries = beneficiaries_for_purchase(conn, purchase)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    return credit_purchase(db, purchase, beneficiaries, policy)


def _credit_missing(
    db: Database,
    policy: CommissionPolicy,
    report: ReconciliationReport,
    start_after: ReconciliationCursor,
    batch_size: int,
) -> Tuple[ReconciliationCursor, bool]:
    """
    returns (cursor, blocked): cursor is the last scanned purchase, in
    approval order, with no retryable failure at or before it; blocked is
    True if such a failure happened.
    """
    after = start_after
    cursor = start_after
    blocked = False

    while True:
        with db.get_conn() as conn:
            batch = fetch_unreconciled_purchases(conn, after, batch_size)
            conn.rollback()

        if not batch:
            break

        for purchase in batch:
            report.purchases_scanned += 1
            try:
                result = _credit_one(db, purchase, policy)
            except LedgerError as e:
                # bad record (missing price, unknown user, ...): rescanning won't fix it
                logger.error(f"Purchase {purchase.id} skipped: {e}")
                report.failures.append(ReconciliationFailure(purchase_id=purchase.id, reason=str(e)))
            except Exception as e:
                logger.exception(f"Error crediting purchase {purchase.id}: {e}")
                report.failures.append(ReconciliationFailure(purchase_id=purchase.id, reason=str(e)))
                blocked = True
            else:
                # tiers already applied count even if a later tier failed
                report.credits_added += result.credits_added
                for outcome in result.failed:
                    report.failures.append(
                        ReconciliationFailure(
                            purchase_id=purchase.id,
                            reason=f"tier {outcome.tier}: {outcome.reason}",
                        )
                    )
                    if outcome.retryable:
                        blocked = True

            if not blocked:
                cursor = ReconciliationCursor(approved_at=purchase.approved_at, purchase_id=purchase.id)

        last = batch[-1]
        after = ReconciliationCursor(approved_at=last.approved_at, purchase_id=last.id)

    return cursor, blocked


def _resync_beneficiaries(db: Database, report: ReconciliationReport) -> None:
    with db.get_conn() as conn:
        user_ids = list_commission_beneficiaries(conn)
        conn.rollback()

    logger.info(f"Resyncing balances for {len(user_ids)} users")
    for user_id in user_ids:
        try:
            resync_balance(db, user_id)
            report.users_resynced += 1
        except Exception as e:
            logger.error(f"Error syncing balance for user {user_id}: {e}")
            report.failures.append(ReconciliationFailure(user_id=user_id, reason=str(e)))


def _summarize(db: Database, report: ReconciliationReport) -> None:
    with db.get_conn() as conn:
        totals = commission_totals(conn)
        conn.rollback()

    report.total_commission = Decimal(totals["total_commission"])
    report.commission_count = totals["commission_count"]
    report.tier1_total = Decimal(totals["tier1_total"])
    report.tier2_total = Decimal(totals["tier2_total"])


def run_reconciliation(
    db: Database,
    policy: Optional[CommissionPolicy] = None,
    full: bool = False,
    batch_size: int = 500,
) -> ReconciliationReport:
    """
    one reconciliation pass:
      1) credit missing tier-1 / tier-2 commissions for approved purchases
      2) resync the balance of every commission beneficiary
      3) summarize ledger-wide commission totals

    failures are isolated per purchase and per user; they are logged and
    listed in the report, never raised.
    """
    policy = policy or CommissionPolicy()
    report = ReconciliationReport()

    with db.get_conn() as conn:
        stored = get_reconciliation_cursor(conn, CURSOR_NAME)
        conn.rollback()
    start_after = ReconciliationCursor() if full else stored

    if full:
        scope = "full scan"
    else:
        scope = f"after purchase {start_after.purchase_id} approved {start_after.approved_at}"
    logger.info(f"Starting commission reconciliation ({scope})...")

    cursor, blocked = _credit_missing(db, policy, report, start_after, batch_size)
    if not blocked:
        # a clean full scan never moves the cursor backwards
        cursor = max(cursor, stored, key=ReconciliationCursor.sort_key)

    with db.get_conn() as conn:
        try:
            set_reconciliation_cursor(conn, CURSOR_NAME, cursor)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    report.cursor = cursor

    _resync_beneficiaries(db, report)
    _summarize(db, report)

    logger.info(
        f"Commission reconciliation complete: {report.credits_added} credits added, "
        f"{report.users_resynced} users resynced, {len(report.failures)} failures"
    )
    logger.info(
        f"Commission summary: total {report.total_commission} over "
        f"{report.commission_count} entries (tier 1 {report.tier1_total}, "
        f"tier 2 {report.tier2_total})"
    )
    return report
