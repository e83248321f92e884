from typing import Any, Dict, Optional

from loguru import logger
from psycopg import Connection

from db.db import Database
from db.repositories import (
    get_user_by_referral_code,
    get_user_referrer_id,
    lock_referral_graph,
    set_user_referrer_id,
)
from errors import ReferrerNotFound
from models import Beneficiaries
from referral_engine import check_referral_link, resolve_beneficiaries


def _link_by_code_in_tx(conn: Connection, child_id: int, referral_code: str) -> int:
    lock_referral_graph(conn)

    # 1) resolve parent_id from referral_code
    parent_id = get_user_by_referral_code(conn, referral_code)

    # 2) self / already-assigned / cycle checks, walking the graph in the DB
    check_referral_link(
        child_id,
        parent_id,
        lambda user_id: get_user_referrer_id(conn, user_id),
    )

    # 3) safe to link (one-time: the UPDATE only matches while referred_by IS NULL)
    set_user_referrer_id(conn, child_id, parent_id)
    return parent_id


def register_referral_db(db: Database, child_id: int, referral_code: str) -> Dict[str, Any]:
    """
    DB-backed referral registration.

    child_id: user_id of the new user
    referral_code: code of the referrer (e.g. 'REF_A')

    rules:
      - child must exist
      - referrer must exist
      - child cannot already have a referrer
      - child cannot refer themselves (directly or via cycle)
    """
    with db.get_conn() as conn:
        try:
            parent_id = _link_by_code_in_tx(conn, child_id, referral_code)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(f"Linked user {child_id} under referrer {parent_id}")
    return {"status": "linked", "child_id": child_id, "parent_id": parent_id}


def resolve_beneficiaries_in_tx(
    conn: Connection,
    purchaser_id: int,
    referral_code: Optional[str] = None,
) -> Beneficiaries:
    """
    tier1 = purchaser's referred_by, tier2 = tier1's referred_by.

    if the purchaser has no referrer yet and a referral code came with the
    purchase, the referrer is looked up by code and assigned first (once).
    a code that matches no user is logged and ignored.
    """
    if referral_code and get_user_referrer_id(conn, purchaser_id) is None:
        try:
            parent_id = get_user_by_referral_code(conn, referral_code)
        except ReferrerNotFound:
            # an unknown code leaves the purchaser unlinked; nobody is paid
            logger.warning(
                f"Referral code {referral_code} on purchase by user {purchaser_id} "
                f"matches no user, crediting without a referrer"
            )
        else:
            _link_by_code_in_tx(conn, purchaser_id, referral_code)
            logger.info(f"Assigned referrer {parent_id} to user {purchaser_id} from code {referral_code}")

    return resolve_beneficiaries(
        purchaser_id,
        lambda user_id: get_user_referrer_id(conn, user_id),
    )


def resolve_beneficiaries_db(
    db: Database,
    purchaser_id: int,
    referral_code: Optional[str] = None,
) -> Beneficiaries:
    with db.get_conn() as conn:
        try:
            beneficiaries = resolve_beneficiaries_in_tx(conn, purchaser_id, referral_code)
            conn.commit()
            return beneficiaries
        except Exception:
            conn.rollback()
            raise
