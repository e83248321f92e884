from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


ZERO = Decimal("0")


class Direction(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class Category(str, Enum):
    COMMISSION = "commission"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class EntryStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------
# ledger metadata, one variant per category
# ---------

class CommissionMetadata(BaseModel):
    kind: Literal["commission"] = "commission"
    purchase_id: int
    purchaser_user_id: int
    package_id: Optional[int] = None
    package_title: Optional[str] = None
    package_price: Decimal
    commission_rate: int = Field(..., description="rate in percent, e.g. 65")


class WithdrawalMetadata(BaseModel):
    kind: Literal["withdrawal"] = "withdrawal"
    withdrawal_id: int
    note: Optional[str] = None


class RefundMetadata(BaseModel):
    kind: Literal["refund"] = "refund"
    purchase_id: int
    reason: str


class AdjustmentMetadata(BaseModel):
    kind: Literal["adjustment"] = "adjustment"
    reason: str
    performed_by: Optional[str] = None


LedgerMetadata = Annotated[
    Union[CommissionMetadata, WithdrawalMetadata, RefundMetadata, AdjustmentMetadata],
    Field(discriminator="kind"),
]

metadata_adapter: TypeAdapter = TypeAdapter(LedgerMetadata)


class LedgerEntry(BaseModel):
    id: int
    beneficiary_user_id: int
    direction: Direction
    category: Category
    amount: Decimal
    status: EntryStatus
    reference_id: Optional[int] = None
    tier: Optional[int] = None
    metadata: LedgerMetadata
    available_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Balance(BaseModel):
    user_id: int
    total_earnings: Decimal = ZERO
    available: Decimal = ZERO
    pending: Decimal = ZERO
    processing: Decimal = ZERO
    withdrawn: Decimal = ZERO
    last_synced_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BalanceSummary(BaseModel):
    balance: Balance
    recent_entries: List[LedgerEntry]


@dataclass(frozen=True)
class BalanceDelta:
    """signed change per balance bucket, applied in one atomic statement."""

    total_earnings: Decimal = ZERO
    available: Decimal = ZERO
    pending: Decimal = ZERO
    processing: Decimal = ZERO
    withdrawn: Decimal = ZERO


# ---------
# purchases and referral graph (owned by other subsystems)
# ---------

class PurchaseTransaction(BaseModel):
    id: int
    user_id: int
    package_id: Optional[int] = None
    package_title: Optional[str] = None
    package_price: Optional[Decimal] = None
    amount: Decimal
    status: str
    affiliate_id: Optional[int] = None
    tier2_affiliate_id: Optional[int] = None
    approved_at: Optional[datetime] = None


@dataclass(frozen=True)
class Beneficiaries:
    tier1: Optional[int] = None
    tier2: Optional[int] = None


@dataclass(frozen=True)
class CommissionPolicy:
    """
    hold_days > 0 keeps new commissions pending for that many days before
    they count as available. hold_days == 0 credits them as available.
    """

    hold_days: int = 14
    retry_attempts: int = 3

    @classmethod
    def from_settings(cls, settings) -> "CommissionPolicy":
        return cls(
            hold_days=settings.commission_hold_days,
            retry_attempts=settings.credit_retry_attempts,
        )


# ---------
# results
# ---------

class CreditResult(BaseModel):
    status: Literal["applied", "duplicate"]
    entry: LedgerEntry
    balance: Optional[Balance] = None


class TierOutcome(BaseModel):
    tier: int
    beneficiary_user_id: Optional[int] = None
    amount: Decimal = ZERO
    status: Literal["applied", "duplicate", "skipped", "failed"]
    reason: Optional[str] = None
    # failed only: True when a later attempt may succeed (storage trouble)
    retryable: bool = False


class PurchaseCreditResult(BaseModel):
    purchase_id: int
    outcomes: List[TierOutcome]

    @property
    def credits_added(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "applied")

    @property
    def failed(self) -> List[TierOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]


class ReconciliationCursor(BaseModel):
    """
    position in approval order, (approved_at, purchase_id). purchases at or
    before it need no rescan. approved_at None means the beginning.
    """

    approved_at: Optional[datetime] = None
    purchase_id: int = 0

    def sort_key(self):
        return (self.approved_at or datetime.min.replace(tzinfo=timezone.utc), self.purchase_id)


class ReconciliationFailure(BaseModel):
    purchase_id: Optional[int] = None
    user_id: Optional[int] = None
    reason: str


class ReconciliationReport(BaseModel):
    credits_added: int = 0
    users_resynced: int = 0
    purchases_scanned: int = 0
    tier1_total: Decimal = ZERO
    tier2_total: Decimal = ZERO
    total_commission: Decimal = ZERO
    commission_count: int = 0
    cursor: ReconciliationCursor = Field(default_factory=ReconciliationCursor)
    failures: List[ReconciliationFailure] = Field(default_factory=list)
