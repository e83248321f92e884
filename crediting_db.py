from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from loguru import logger
from psycopg import Connection, OperationalError

from commission_engine import commission_rate_percent, commission_splits
from db.db import Database
from db.repositories import (
    apply_balance_delta,
    get_commission_entry,
    get_purchase,
    get_purchase_status,
    get_user_referrer_id,
    insert_commission_entry,
    user_exists,
)
from errors import (
    BeneficiaryNotFound,
    InvalidAmount,
    LedgerError,
    PersistenceFailure,
    PurchaseNotApproved,
)
from models import (
    BalanceDelta,
    Beneficiaries,
    CommissionMetadata,
    CommissionPolicy,
    CreditResult,
    EntryStatus,
    PurchaseCreditResult,
    PurchaseTransaction,
    TierOutcome,
)
from referral_db import resolve_beneficiaries_in_tx


APPROVED = "approved"


def credit_commission(
    db: Database,
    purchase_id: int,
    beneficiary_user_id: int,
    tier: int,
    amount: Decimal,
    context: CommissionMetadata,
    policy: Optional[CommissionPolicy] = None,
) -> CreditResult:
    """
    credit one commission exactly once.

    the ledger insert and the balance increment commit together or not at
    all. a second call for the same (purchase, beneficiary, tier) is a no-op
    that returns the existing entry with status "duplicate".

    transient storage errors are retried up to policy.retry_attempts times;
    retrying is safe because the insert is keyed.
    """
    policy = policy or CommissionPolicy()

    attempt = 0
    while True:
        attempt += 1
        try:
            with db.get_conn() as conn:
                try:
                    result = _credit_commission_in_tx(
                        conn, purchase_id, beneficiary_user_id, tier, amount, context, policy
                    )
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            break
        except OperationalError as e:
            if attempt >= policy.retry_attempts:
                raise PersistenceFailure(
                    f"Crediting tier {tier} of purchase {purchase_id} to user "
                    f"{beneficiary_user_id} failed after {attempt} attempts: {e}"
                ) from e
            logger.warning(
                f"Transient error crediting purchase {purchase_id} tier {tier}, "
                f"retrying ({attempt}/{policy.retry_attempts}): {e}"
            )

    if result.status == "applied":
        logger.info(
            f"Commission credited: {amount} to user {beneficiary_user_id} "
            f"(purchase {purchase_id}, tier {tier}, {result.entry.status.value})"
        )
    else:
        logger.info(
            f"Commission already credited for purchase {purchase_id} tier {tier} "
            f"to user {beneficiary_user_id}, skipping"
        )
    return result


def _credit_commission_in_tx(
    conn: Connection,
    purchase_id: int,
    beneficiary_user_id: int,
    tier: int,
    amount: Decimal,
    context: CommissionMetadata,
    policy: CommissionPolicy,
) -> CreditResult:
    # 1) preconditions
    commission_rate_percent(tier)  # rejects unknown tiers
    if amount is None or Decimal(amount) <= 0:
        raise InvalidAmount(f"Commission amount must be positive, got {amount}")

    status = get_purchase_status(conn, purchase_id)
    if status != APPROVED:
        raise PurchaseNotApproved(f"Purchase {purchase_id} is {status}, not approved")

    if not user_exists(conn, beneficiary_user_id):
        raise BeneficiaryNotFound(f"Beneficiary {beneficiary_user_id} not found")

    # 2) maturity policy decides which bucket the money lands in
    now = datetime.now(timezone.utc)
    if policy.hold_days > 0:
        entry_status = EntryStatus.PENDING
        available_at = now + timedelta(days=policy.hold_days)
        delta = BalanceDelta(total_earnings=amount, pending=amount)
    else:
        entry_status = EntryStatus.COMPLETED
        available_at = now
        delta = BalanceDelta(total_earnings=amount, available=amount)

    # 3) keyed insert; the unique index turns a repeat into "no row returned"
    entry = insert_commission_entry(
        conn,
        beneficiary_user_id=beneficiary_user_id,
        purchase_id=purchase_id,
        tier=tier,
        amount=amount,
        status=entry_status,
        available_at=available_at,
        metadata=context,
    )
    if entry is None:
        existing = get_commission_entry(conn, beneficiary_user_id, purchase_id, tier)
        return CreditResult(status="duplicate", entry=existing)

    # 4) balance moves in the same transaction as the insert
    balance = apply_balance_delta(conn, beneficiary_user_id, delta)
    return CreditResult(status="applied", entry=entry, balance=balance)


def beneficiaries_for_purchase(
    conn: Connection,
    purchase: PurchaseTransaction,
    referral_code: Optional[str] = None,
) -> Beneficiaries:
    """
    prefer the affiliates captured on the purchase; fall back to the graph.
    """
    if purchase.affiliate_id is None:
        return resolve_beneficiaries_in_tx(conn, purchase.user_id, referral_code)

    tier2 = purchase.tier2_affiliate_id
    if tier2 is None:
        tier2 = get_user_referrer_id(conn, purchase.affiliate_id)
    return Beneficiaries(tier1=purchase.affiliate_id, tier2=tier2)


def credit_purchase(
    db: Database,
    purchase: PurchaseTransaction,
    beneficiaries: Beneficiaries,
    policy: Optional[CommissionPolicy] = None,
) -> PurchaseCreditResult:
    """
    walk tier 1 then tier 2 for one approved purchase.
    each tier is its own crediting unit; a missing tier is skipped, not an error.
    a tier that fails to credit is reported as a "failed" outcome and the
    walk goes on, so an applied tier 1 is never lost behind a tier-2 error.
    """
    outcomes = []

    if beneficiaries.tier1 is None:
        logger.warning(f"Purchase {purchase.id}: user {purchase.user_id} has no referrer, skipping")
        outcomes.append(TierOutcome(tier=1, status="skipped", reason="no referrer"))
        return PurchaseCreditResult(purchase_id=purchase.id, outcomes=outcomes)

    if purchase.package_price is None:
        raise InvalidAmount(f"Purchase {purchase.id} has no package price")

    splits = commission_splits(purchase.package_price, beneficiaries)

    for tier, beneficiary in ((1, beneficiaries.tier1), (2, beneficiaries.tier2)):
        if beneficiary is None:
            outcomes.append(TierOutcome(tier=tier, status="skipped", reason="no referrer"))
            continue

        amount = splits[f"tier{tier}"]
        if amount <= 0:
            logger.warning(
                f"Purchase {purchase.id}: tier {tier} commission rounds to 0, skipping"
            )
            outcomes.append(
                TierOutcome(
                    tier=tier,
                    beneficiary_user_id=beneficiary,
                    status="skipped",
                    reason="commission rounds to zero",
                )
            )
            continue

        context = CommissionMetadata(
            purchase_id=purchase.id,
            purchaser_user_id=purchase.user_id,
            package_id=purchase.package_id,
            package_title=purchase.package_title,
            package_price=purchase.package_price,
            commission_rate=commission_rate_percent(tier),
        )
        try:
            result = credit_commission(db, purchase.id, beneficiary, tier, amount, context, policy)
        except LedgerError as e:
            logger.error(f"Purchase {purchase.id}: tier {tier} not credited: {e}")
            outcomes.append(
                TierOutcome(
                    tier=tier,
                    beneficiary_user_id=beneficiary,
                    amount=amount,
                    status="failed",
                    reason=str(e),
                )
            )
            continue
        except Exception as e:
            logger.exception(f"Purchase {purchase.id}: tier {tier} not credited: {e}")
            outcomes.append(
                TierOutcome(
                    tier=tier,
                    beneficiary_user_id=beneficiary,
                    amount=amount,
                    status="failed",
                    reason=str(e),
                    retryable=True,
                )
            )
            continue

        outcomes.append(
            TierOutcome(
                tier=tier,
                beneficiary_user_id=beneficiary,
                amount=amount,
                status=result.status,
            )
        )

    return PurchaseCreditResult(purchase_id=purchase.id, outcomes=outcomes)


def credit_purchase_commissions(
    db: Database,
    purchase_id: int,
    policy: Optional[CommissionPolicy] = None,
    referral_code: Optional[str] = None,
) -> PurchaseCreditResult:
    """
    approval-time entry point: load the purchase, resolve who gets paid, credit.
    errors are raised to the caller; whatever is missed here the next
    reconciliation run picks up.
    """
    with db.get_conn() as conn:
        try:
            purchase = get_purchase(conn, purchase_id)
            if purchase.status != APPROVED:
                raise PurchaseNotApproved(
                    f"Purchase {purchase_id} is {purchase.status}, not approved"
                )
            beneficiaries = beneficiaries_for_purchase(conn, purchase, referral_code)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    return credit_purchase(db, purchase, beneficiaries, policy)
