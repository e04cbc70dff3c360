"""Domain models for the contract billing lifecycle."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

CARD_PAYMENT_METHODS = frozenset({"credit_card", "cartao"})

_ONE_DAY = timedelta(days=1)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ContractStatus(str, Enum):
    """Lifecycle status of a plan contract."""

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"


class InstallmentStatus(str, Enum):
    """Payment status of one installment. ``overdue`` is a legacy unpaid marker."""

    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


class BillingPeriod(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class Contract(BaseModel):
    """A billing agreement tied to a client's pet plan."""

    id: str
    contract_number: str
    status: ContractStatus
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    monthly_amount: Decimal = Field(default=Decimal("0"), ge=0)
    annual_amount: Optional[Decimal] = None
    payment_method: Optional[str] = None
    card_token: Optional[str] = None
    card_brand: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    pet_name: Optional[str] = None
    plan_name: Optional[str] = None
    start_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def amount(self) -> Decimal:
        """Amount billed per period."""
        if self.billing_period == BillingPeriod.ANNUAL and self.annual_amount is not None:
            return self.annual_amount
        return self.monthly_amount

    @property
    def is_cancelled(self) -> bool:
        return self.status == ContractStatus.CANCELLED

    @property
    def pays_by_card(self) -> bool:
        return (self.payment_method or "").strip().lower() in CARD_PAYMENT_METHODS


class Installment(BaseModel):
    """One scheduled payment obligation within a contract."""

    id: str
    contract_id: str
    installment_number: int = 0
    due_date: datetime
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("due_date", "paid_at")
    @classmethod
    def _normalize_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def is_overdue(self, now: datetime) -> bool:
        """Unpaid and due strictly before ``now``."""
        return not self.is_paid and self.due_date < now

    def days_overdue(self, now: datetime) -> int:
        """Whole days elapsed since the due date (floored)."""
        return (now - self.due_date) // _ONE_DAY


class StatusChange(BaseModel):
    """A status transition written by a reconciliation pass."""

    contract_id: str
    contract_number: str
    previous_status: ContractStatus
    new_status: ContractStatus
    days_overdue: Optional[int] = None


class ReconciliationSummary(BaseModel):
    """Counters produced by one reconciliation pass."""

    evaluated: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    changes: List[StatusChange] = Field(default_factory=list)


class ChargeResult(BaseModel):
    """Outcome reported by the payment gateway for one charge attempt."""

    success: bool
    reference: Optional[str] = None
    error_reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class RenewalAttempt(BaseModel):
    """Classification of one automatic renewal attempt."""

    contract_id: str
    installment_id: Optional[str] = None
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None


class RenewalRunSummary(BaseModel):
    """Counters produced by one automatic renewal pass."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    attempts: List[RenewalAttempt] = Field(default_factory=list)

    def record(self, attempt: RenewalAttempt) -> None:
        self.attempts.append(attempt)
        self.processed += 1
        if attempt.success:
            self.successful += 1
        else:
            self.failed += 1


__all__ = [
    "BillingPeriod",
    "CARD_PAYMENT_METHODS",
    "ChargeResult",
    "Contract",
    "ContractStatus",
    "Installment",
    "InstallmentStatus",
    "ReconciliationSummary",
    "RenewalAttempt",
    "RenewalRunSummary",
    "StatusChange",
]
