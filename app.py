from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from balance_db import get_balance_summary, get_recent_entries, release_matured_commissions, resync_balance
from crediting_db import credit_purchase_commissions
from db.db import Database
from db.repositories import get_or_generate_referral_code
from errors import LedgerError, PersistenceFailure, PurchaseNotFound, ReferrerNotFound
from models import CommissionPolicy
from reconciliation import run_reconciliation
from referral_db import register_referral_db, resolve_beneficiaries_db
from settings import settings, setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    app.state.db = Database.from_settings(settings)
    app.state.policy = CommissionPolicy.from_settings(settings)
    logger.info("Commission ledger API started")
    try:
        yield
    finally:
        app.state.db.close()
        logger.info("Commission ledger API stopped")


app = FastAPI(title="Referral Commission Ledger", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_policy(request: Request) -> CommissionPolicy:
    return getattr(request.app.state, "policy", None) or CommissionPolicy.from_settings(settings)


# ---------
# pydantic models (requests)
# ---------

class ReferralRegisterRequest(BaseModel):
    child_user_id: int = Field(..., description="ID of the user being referred")
    referral_code: str = Field(..., description="Referral code used on signup")


class ReferralGenerateRequest(BaseModel):
    user_id: int = Field(..., description="User ID to generate or fetch referral code for")


class PurchaseCommissionRequest(BaseModel):
    referral_code: Optional[str] = Field(
        None,
        description="Referral code supplied with the purchase, used only if the buyer has no referrer yet",
    )


class ReconcileRequest(BaseModel):
    full: bool = Field(False, description="Ignore the cursor and rescan all approved purchases")
    batch_size: int = Field(settings.reconciliation_batch_size, ge=1, le=10_000)


def _http_error(e: Exception) -> HTTPException:
    """map ledger errors onto status codes."""
    if isinstance(e, (PurchaseNotFound, ReferrerNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, LedgerError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, PersistenceFailure):
        return HTTPException(status_code=503, detail=str(e))
    logger.exception(f"Unexpected error: {e}")
    return HTTPException(status_code=500, detail="Internal server error")


# ---------
# endpoints
# ---------


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "commission-ledger"}


@app.get("/api/balance/{user_id}")
def balance_summary(
    user_id: int,
    limit: int = Query(10, ge=1, le=100, description="How many recent ledger entries to include"),
    db: Database = Depends(get_db),
):
    """
    balance buckets plus the most recent ledger entries for a user.
    decimals serialize as strings.
    """
    try:
        summary = get_balance_summary(db, user_id, limit=limit)
    except Exception as e:
        raise _http_error(e)
    return summary.model_dump(mode="json")


@app.get("/api/ledger/{user_id}")
def ledger_entries(
    user_id: int,
    limit: int = Query(50, ge=1, le=500, description="Max number of entries to return"),
    db: Database = Depends(get_db),
):
    try:
        entries = get_recent_entries(db, user_id, limit=limit)
    except Exception as e:
        raise _http_error(e)
    return {
        "user_id": user_id,
        "entries": [e.model_dump(mode="json") for e in entries],
    }


@app.post("/api/purchases/{purchase_id}/commissions")
def purchase_commissions(
    purchase_id: int,
    payload: Optional[PurchaseCommissionRequest] = None,
    db: Database = Depends(get_db),
    policy: CommissionPolicy = Depends(get_policy),
):
    """
    called by the order subsystem right after a purchase is approved.
    a failure here does not undo the approval; reconciliation retries it.
    """
    referral_code = payload.referral_code if payload else None
    try:
        result = credit_purchase_commissions(db, purchase_id, policy, referral_code=referral_code)
    except Exception as e:
        logger.error(f"Commission crediting failed for purchase {purchase_id}: {e}")
        raise _http_error(e)
    return result.model_dump(mode="json")


@app.post("/api/referral/register")
def referral_register(payload: ReferralRegisterRequest, db: Database = Depends(get_db)):
    """
    attach a child user to a referrer using a referral_code.
    business rule violations (already has referrer, invalid code, cycle) are 400/404s.
    """
    try:
        return register_referral_db(db, payload.child_user_id, payload.referral_code)
    except Exception as e:
        raise _http_error(e)


@app.post("/api/referral/generate")
def referral_generate(payload: ReferralGenerateRequest, db: Database = Depends(get_db)):
    """
    return the user's referral code, generating one if they don't have it yet.
    """
    try:
        with db.get_conn() as conn:
            try:
                code = get_or_generate_referral_code(conn, payload.user_id)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
    except Exception as e:
        raise _http_error(e)
    return {"user_id": payload.user_id, "referral_code": code}


@app.get("/api/referral/beneficiaries/{user_id}")
def referral_beneficiaries(user_id: int, db: Database = Depends(get_db)):
    try:
        beneficiaries = resolve_beneficiaries_db(db, user_id)
    except Exception as e:
        raise _http_error(e)
    return {"user_id": user_id, "tier1": beneficiaries.tier1, "tier2": beneficiaries.tier2}


@app.post("/api/admin/reconcile")
def admin_reconcile(
    payload: Optional[ReconcileRequest] = None,
    db: Database = Depends(get_db),
    policy: CommissionPolicy = Depends(get_policy),
):
    payload = payload or ReconcileRequest()
    report = run_reconciliation(db, policy, full=payload.full, batch_size=payload.batch_size)
    return report.model_dump(mode="json")


@app.post("/api/admin/balances/{user_id}/resync")
def admin_resync_balance(user_id: int, db: Database = Depends(get_db)):
    try:
        balance = resync_balance(db, user_id)
    except Exception as e:
        raise _http_error(e)
    return balance.model_dump(mode="json")


@app.post("/api/admin/commissions/release")
def admin_release_commissions(
    user_id: Optional[int] = Query(None, description="Only release this user's commissions"),
    db: Database = Depends(get_db),
):
    result = release_matured_commissions(db, user_id=user_id)
    return {
        "message": f"Released {result['released']} matured commissions",
        **result,
    }
