from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import secrets
import string

from psycopg import Connection
from psycopg.errors import CheckViolation
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from errors import (
    InsufficientBalance,
    PurchaseNotFound,
    ReferralConflict,
    ReferrerNotFound,
)
from models import (
    Balance,
    BalanceDelta,
    Category,
    Direction,
    EntryStatus,
    LedgerEntry,
    PurchaseTransaction,
    ReconciliationCursor,
)


# arbitrary constant; every referral-graph write takes this transaction-level lock
REFERRAL_GRAPH_LOCK_KEY = 7_310_442

LEDGER_COLUMNS = """
    id, beneficiary_user_id, direction, category, amount, status,
    reference_id, tier, metadata, available_at, created_at, updated_at
"""

BALANCE_COLUMNS = """
    user_id, total_earnings, available, pending, processing, withdrawn, last_synced_at
"""

PURCHASE_SELECT = """
    SELECT
        p.id, p.user_id, p.package_id, pk.title AS package_title,
        pk.price AS package_price, p.amount, p.status,
        p.affiliate_id, p.tier2_affiliate_id, p.approved_at
    FROM purchase_transactions p
    LEFT JOIN packages pk ON pk.id = p.package_id
"""


# ---------
# users / referral graph
# ---------

def get_user_by_referral_code(conn: Connection, referral_code: str) -> int:
    """
    return user_id for a given referral_code.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id FROM users WHERE referral_code = %s",
            (referral_code,),
        )
        row = cur.fetchone()
        if row is None:
            raise ReferrerNotFound(f"No user found with referral_code={referral_code}")
        return row[0]


def get_user_referrer_id(conn: Connection, user_id: int) -> Optional[int]:
    """
    fetch referred_by for a user, or None if they have no referrer.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT referred_by FROM users WHERE id = %s",
            (user_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise ReferrerNotFound(f"User {user_id} not found")
        return row[0]


def user_exists(conn: Connection, user_id: int) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM users WHERE id = %s", (user_id,))
        return cur.fetchone() is not None


def lock_referral_graph(conn: Connection) -> None:
    """
    serialize referral-graph writes for the rest of this transaction, so two
    concurrent registrations can't each pass the cycle check and close a loop.
    """
    with conn.cursor() as cur:
        cur.execute("SELECT pg_advisory_xact_lock(%s)", (REFERRAL_GRAPH_LOCK_KEY,))


def set_user_referrer_id(conn: Connection, child_id: int, parent_id: int) -> None:
    """
    set referred_by for child to parent. one-time: only succeeds while it is NULL.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE users
            SET referred_by = %s, updated_at = NOW()
            WHERE id = %s AND referred_by IS NULL
            """,
            (parent_id, child_id),
        )
        if cur.rowcount != 1:
            raise ReferralConflict(f"Failed to set referrer for user {child_id}")


def get_or_generate_referral_code(conn: Connection, user_id: int) -> str:
    """
    return the user's existing referral_code if present, otherwise generate
    a unique one (REF_XXXXXXXX), persist it, and return it.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT referral_code FROM users WHERE id = %s",
            (user_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise ReferrerNotFound(f"User {user_id} not found")
        existing = row[0]

    if existing:
        return existing

    alphabet = string.ascii_uppercase + string.digits
    while True:
        candidate = "REF_" + "".join(secrets.choice(alphabet) for _ in range(8))
        with conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM users WHERE referral_code = %s",
                (candidate,),
            )
            if cur.fetchone() is None:
                cur.execute(
                    "UPDATE users SET referral_code = %s, updated_at = NOW() WHERE id = %s",
                    (candidate, user_id),
                )
                return candidate


# ---------
# purchases (read-only here)
# ---------

def get_purchase(conn: Connection, purchase_id: int) -> PurchaseTransaction:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(PURCHASE_SELECT + " WHERE p.id = %s", (purchase_id,))
        row = cur.fetchone()
    if row is None:
        raise PurchaseNotFound(f"Purchase {purchase_id} not found")
    return PurchaseTransaction.model_validate(row)


def get_purchase_status(conn: Connection, purchase_id: int) -> str:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT status FROM purchase_transactions WHERE id = %s",
            (purchase_id,),
        )
        row = cur.fetchone()
    if row is None:
        raise PurchaseNotFound(f"Purchase {purchase_id} not found")
    return row[0]


def fetch_unreconciled_purchases(
    conn: Connection,
    after: ReconciliationCursor,
    limit: int,
) -> List[PurchaseTransaction]:
    """
    approved purchases past `after` in approval order that have a tier-1
    beneficiary but are missing the tier-1 commission, or have a tier-2
    beneficiary and are missing the tier-2 commission.

    approval order is (approved_at, id), approved_at falling back to
    created_at for rows the order subsystem approved without a timestamp.
    purchases approved late keep a small id but sort after the cursor.
    """
    after_clause = ""
    params: List[Any] = []
    if after.approved_at is not None:
        after_clause = "AND (COALESCE(p.approved_at, p.created_at), p.id) > (%s, %s)"
        params = [after.approved_at, after.purchase_id]

    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT
                p.id, p.user_id, p.package_id, pk.title AS package_title,
                pk.price AS package_price, p.amount, p.status,
                p.affiliate_id, p.tier2_affiliate_id,
                COALESCE(p.approved_at, p.created_at) AS approved_at
            FROM purchase_transactions p
            JOIN users u ON u.id = p.user_id
            LEFT JOIN packages pk ON pk.id = p.package_id
            LEFT JOIN users r1 ON r1.id = COALESCE(p.affiliate_id, u.referred_by)
            WHERE p.status = 'approved'
              {after_clause}
              AND r1.id IS NOT NULL
              AND (
                NOT EXISTS (
                    SELECT 1 FROM ledger_entries le
                    WHERE le.category = 'commission'
                      AND le.reference_id = p.id
                      AND le.tier = 1
                )
                OR (
                    COALESCE(p.tier2_affiliate_id, r1.referred_by) IS NOT NULL
                    AND NOT EXISTS (
                        SELECT 1 FROM ledger_entries le
                        WHERE le.category = 'commission'
                          AND le.reference_id = p.id
                          AND le.tier = 2
                    )
                )
              )
            ORDER BY COALESCE(p.approved_at, p.created_at), p.id
            LIMIT %s
            """,
            tuple(params + [limit]),
        )
        rows = cur.fetchall()
    return [PurchaseTransaction.model_validate(r) for r in rows]


# ---------
# ledger entries
# ---------

def _entry(row: Optional[Dict[str, Any]]) -> Optional[LedgerEntry]:
    return LedgerEntry.model_validate(row) if row is not None else None


def insert_commission_entry(
    conn: Connection,
    beneficiary_user_id: int,
    purchase_id: int,
    tier: int,
    amount: Decimal,
    status: EntryStatus,
    available_at: Optional[datetime],
    metadata,
) -> Optional[LedgerEntry]:
    """
    insert a commission credit keyed by (beneficiary, purchase, commission, tier).
    returns the new entry, or None if that key already exists.

    the partial unique index ledger_entries_commission_key is what makes this
    idempotent, concurrent callers included.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            INSERT INTO ledger_entries
                (beneficiary_user_id, direction, category, amount, status,
                 reference_id, tier, metadata, available_at)
            VALUES (%s, 'credit', 'commission', %s, %s, %s, %s, %s, %s)
            ON CONFLICT (beneficiary_user_id, reference_id, category, tier)
                WHERE category = 'commission'
            DO NOTHING
            RETURNING {LEDGER_COLUMNS}
            """,
            (
                beneficiary_user_id,
                amount,
                status.value,
                purchase_id,
                tier,
                Jsonb(metadata.model_dump(mode="json")),
                available_at,
            ),
        )
        return _entry(cur.fetchone())


def get_commission_entry(
    conn: Connection,
    beneficiary_user_id: int,
    purchase_id: int,
    tier: int,
) -> Optional[LedgerEntry]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {LEDGER_COLUMNS}
            FROM ledger_entries
            WHERE beneficiary_user_id = %s
              AND reference_id = %s
              AND category = 'commission'
              AND tier = %s
            """,
            (beneficiary_user_id, purchase_id, tier),
        )
        return _entry(cur.fetchone())


def insert_withdrawal_entry(
    conn: Connection,
    user_id: int,
    withdrawal_id: int,
    amount: Decimal,
    metadata,
) -> Optional[LedgerEntry]:
    """pending debit for a withdrawal request; None if already recorded."""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            INSERT INTO ledger_entries
                (beneficiary_user_id, direction, category, amount, status,
                 reference_id, metadata)
            VALUES (%s, 'debit', 'withdrawal', %s, 'pending', %s, %s)
            ON CONFLICT (beneficiary_user_id, reference_id, category)
                WHERE category = 'withdrawal'
            DO NOTHING
            RETURNING {LEDGER_COLUMNS}
            """,
            (user_id, amount, withdrawal_id, Jsonb(metadata.model_dump(mode="json"))),
        )
        return _entry(cur.fetchone())


def get_withdrawal_entry(
    conn: Connection,
    user_id: int,
    withdrawal_id: int,
) -> Optional[LedgerEntry]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {LEDGER_COLUMNS}
            FROM ledger_entries
            WHERE beneficiary_user_id = %s
              AND reference_id = %s
              AND category = 'withdrawal'
            """,
            (user_id, withdrawal_id),
        )
        return _entry(cur.fetchone())


def insert_ledger_entry(
    conn: Connection,
    user_id: int,
    direction: Direction,
    category: Category,
    amount: Decimal,
    status: EntryStatus,
    metadata,
    reference_id: Optional[int] = None,
) -> LedgerEntry:
    """plain insert for adjustment / refund entries (no idempotency key)."""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            INSERT INTO ledger_entries
                (beneficiary_user_id, direction, category, amount, status,
                 reference_id, metadata)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING {LEDGER_COLUMNS}
            """,
            (
                user_id,
                direction.value,
                category.value,
                amount,
                status.value,
                reference_id,
                Jsonb(metadata.model_dump(mode="json")),
            ),
        )
        return _entry(cur.fetchone())


def get_ledger_entry(conn: Connection, entry_id: int) -> Optional[LedgerEntry]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {LEDGER_COLUMNS} FROM ledger_entries WHERE id = %s",
            (entry_id,),
        )
        return _entry(cur.fetchone())


def update_entry_status(
    conn: Connection,
    entry_id: int,
    from_status: EntryStatus,
    to_status: EntryStatus,
) -> Optional[LedgerEntry]:
    """
    compare-and-set on status. returns the updated entry, or None if the entry
    was no longer in from_status (someone else already moved it).
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            UPDATE ledger_entries
            SET status = %s, updated_at = NOW()
            WHERE id = %s AND status = %s
            RETURNING {LEDGER_COLUMNS}
            """,
            (to_status.value, entry_id, from_status.value),
        )
        return _entry(cur.fetchone())


def get_recent_ledger_entries(
    conn: Connection,
    user_id: int,
    limit: int = 10,
) -> List[LedgerEntry]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"""
            SELECT {LEDGER_COLUMNS}
            FROM ledger_entries
            WHERE beneficiary_user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        rows = cur.fetchall()
    return [LedgerEntry.model_validate(r) for r in rows]


def fetch_matured_commission_ids(
    conn: Connection,
    now: datetime,
    user_id: Optional[int] = None,
    limit: int = 1000,
) -> List[int]:
    params: List[Any] = [now]
    where = [
        "category = 'commission'",
        "status = 'pending'",
        "available_at <= %s",
    ]
    if user_id is not None:
        where.append("beneficiary_user_id = %s")
        params.append(user_id)

    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT id FROM ledger_entries
            WHERE {" AND ".join(where)}
            ORDER BY available_at, id
            LIMIT %s
            """,
            tuple(params + [limit]),
        )
        return [r[0] for r in cur.fetchall()]


def sum_ledger_buckets(conn: Connection, user_id: int) -> Dict[str, Decimal]:
    """
    aggregate a user's ledger into the sums the balance projection is built from.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT
                COALESCE(SUM(amount) FILTER (
                    WHERE direction = 'credit' AND status = 'pending'), 0) AS pending_credits,
                COALESCE(SUM(amount) FILTER (
                    WHERE direction = 'credit' AND status = 'completed'), 0) AS completed_credits,
                COALESCE(SUM(amount) FILTER (
                    WHERE direction = 'debit' AND status = 'pending'), 0) AS pending_debits,
                COALESCE(SUM(amount) FILTER (
                    WHERE direction = 'debit' AND status = 'completed'), 0) AS completed_debits,
                COALESCE(SUM(amount) FILTER (
                    WHERE category = 'withdrawal' AND direction = 'debit'
                      AND status = 'pending'), 0) AS pending_withdrawals,
                COALESCE(SUM(amount) FILTER (
                    WHERE category = 'withdrawal' AND direction = 'debit'
                      AND status = 'completed'), 0) AS completed_withdrawals,
                COALESCE(SUM(amount) FILTER (
                    WHERE direction = 'credit'
                      AND status IN ('pending', 'completed')
                      AND category IN ('commission', 'adjustment')), 0) AS earnings
            FROM ledger_entries
            WHERE beneficiary_user_id = %s
            """,
            (user_id,),
        )
        return dict(cur.fetchone())


def list_commission_beneficiaries(conn: Connection) -> List[int]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT DISTINCT beneficiary_user_id
            FROM ledger_entries
            WHERE category = 'commission'
            ORDER BY beneficiary_user_id
            """
        )
        return [r[0] for r in cur.fetchall()]


def commission_totals(conn: Connection) -> Dict[str, Any]:
    """ledger-wide commission totals over live (pending + completed) entries."""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT
                COALESCE(SUM(amount), 0) AS total_commission,
                COUNT(*) AS commission_count,
                COALESCE(SUM(amount) FILTER (WHERE tier = 1), 0) AS tier1_total,
                COALESCE(SUM(amount) FILTER (WHERE tier = 2), 0) AS tier2_total
            FROM ledger_entries
            WHERE category = 'commission'
              AND status IN ('pending', 'completed')
            """
        )
        return dict(cur.fetchone())


# ---------
# balances
# ---------

def ensure_balance_row(conn: Connection, user_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO balances (user_id)
            VALUES (%s)
            ON CONFLICT (user_id) DO NOTHING
            """,
            (user_id,),
        )


def get_balance(conn: Connection, user_id: int, for_update: bool = False) -> Optional[Balance]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {BALANCE_COLUMNS} FROM balances WHERE user_id = %s"
            + (" FOR UPDATE" if for_update else ""),
            (user_id,),
        )
        row = cur.fetchone()
    return Balance.model_validate(row) if row is not None else None


def apply_balance_delta(conn: Connection, user_id: int, delta: BalanceDelta) -> Balance:
    """
    add delta to every bucket of the user's balance, creating the row first
    if needed. the UPDATE increments in place under the row lock, so
    concurrent callers for the same user serialize instead of losing updates.

    a bucket going negative trips the table's CHECK constraints and is
    reported as InsufficientBalance.
    """
    ensure_balance_row(conn, user_id)
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                UPDATE balances
                SET total_earnings = total_earnings + %s,
                    available      = available + %s,
                    pending        = pending + %s,
                    processing     = processing + %s,
                    withdrawn      = withdrawn + %s,
                    last_synced_at = NOW(),
                    updated_at     = NOW()
                WHERE user_id = %s
                RETURNING {BALANCE_COLUMNS}
                """,
                (
                    delta.total_earnings,
                    delta.available,
                    delta.pending,
                    delta.processing,
                    delta.withdrawn,
                    user_id,
                ),
            )
            row = cur.fetchone()
    except CheckViolation as e:
        raise InsufficientBalance(
            f"Balance change for user {user_id} would make a bucket negative"
        ) from e
    return Balance.model_validate(row)


def overwrite_balance(conn: Connection, user_id: int, balance: Balance) -> Balance:
    try:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                UPDATE balances
                SET total_earnings = %s,
                    available      = %s,
                    pending        = %s,
                    processing     = %s,
                    withdrawn      = %s,
                    last_synced_at = NOW(),
                    updated_at     = NOW()
                WHERE user_id = %s
                RETURNING {BALANCE_COLUMNS}
                """,
                (
                    balance.total_earnings,
                    balance.available,
                    balance.pending,
                    balance.processing,
                    balance.withdrawn,
                    user_id,
                ),
            )
            row = cur.fetchone()
    except CheckViolation as e:
        raise InsufficientBalance(
            f"Ledger for user {user_id} implies a negative balance bucket"
        ) from e
    return Balance.model_validate(row)


# ---------
# reconciliation cursor
# ---------

def get_reconciliation_cursor(conn: Connection, name: str) -> ReconciliationCursor:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT last_approved_at AS approved_at, last_purchase_id AS purchase_id
            FROM reconciliation_cursors
            WHERE name = %s
            """,
            (name,),
        )
        row = cur.fetchone()
    if row is None or row["approved_at"] is None:
        return ReconciliationCursor()
    return ReconciliationCursor.model_validate(row)


def set_reconciliation_cursor(conn: Connection, name: str, cursor: ReconciliationCursor) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO reconciliation_cursors (name, last_approved_at, last_purchase_id)
            VALUES (%s, %s, %s)
            ON CONFLICT (name)
            DO UPDATE SET
                last_approved_at = EXCLUDED.last_approved_at,
                last_purchase_id = EXCLUDED.last_purchase_id,
                updated_at = NOW()
            """,
            (name, cursor.approved_at, cursor.purchase_id),
        )
