"""
Core Data Models for Family Bank

These models define the strict schemas for the records the core owns:
accounts, transactions, allowances and savings goals.
They are designed to:
1. Enforce money invariants at runtime (positive amounts, no negative balance)
2. Encode the transaction state machine in one place
3. Be serializable for storage and logging

DESIGN DECISION: Money is always Decimal with two places. Floats never
enter the ledger.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def quantize_money(value) -> Decimal:
    """Normalize a number to a two-place Decimal."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountStatus(str, Enum):
    """Account lifecycle. Accounts are never deleted, only closed."""
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CLOSED = "CLOSED"


class TransactionType(str, Enum):
    ALLOWANCE = "ALLOWANCE"
    PURCHASE = "PURCHASE"
    TRANSFER = "TRANSFER"
    SAVINGS = "SAVINGS"
    WITHDRAWAL = "WITHDRAWAL"
    REFUND = "REFUND"


class TransactionStatus(str, Enum):
    """
    Transaction state machine.

    PENDING -> APPROVED | DECLINED
    APPROVED -> COMPLETED | FAILED
    """
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"
    FAILED = "FAILED"


class AllowanceFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class BalanceDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


TRANSACTION_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.APPROVED, TransactionStatus.DECLINED}),
    TransactionStatus.APPROVED: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.DECLINED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
}

# These types skip parental approval whoever requests them
AUTO_APPROVED_TYPES = frozenset({TransactionType.ALLOWANCE, TransactionType.REFUND})

ACCOUNT_TRANSITIONS: dict[AccountStatus, frozenset[AccountStatus]] = {
    AccountStatus.ACTIVE: frozenset({AccountStatus.SUSPENDED, AccountStatus.CLOSED}),
    AccountStatus.SUSPENDED: frozenset({AccountStatus.ACTIVE, AccountStatus.CLOSED}),
    AccountStatus.CLOSED: frozenset(),
}


# =============================================================================
# ACCOUNT
# =============================================================================

class Account(BaseModel):
    """
    A child's bank-like account.

    The balance is only ever changed through the ledger's atomic
    balance operation.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    child_id: str = Field(
        ...,
        min_length=1,
        description="Owning child profile"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
    )
    balance: Decimal = Field(
        default=Decimal("0.00"),
        ge=0,
        description="Current balance, never negative"
    )
    status: AccountStatus = AccountStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    normalize_dates = field_validator("created_at", "updated_at")(as_utc)

    def can_transition_to(self, status: AccountStatus) -> bool:
        return status in ACCOUNT_TRANSITIONS[self.status]


class BalanceChange(BaseModel):
    """One side of a money movement, applied by the ledger."""

    account_id: UUID
    amount: Decimal = Field(..., gt=0)
    direction: BalanceDirection

    @property
    def signed_amount(self) -> Decimal:
        if self.direction == BalanceDirection.DEBIT:
            return -self.amount
        return self.amount


# =============================================================================
# TRANSACTION
# =============================================================================

class Transaction(BaseModel):
    """
    A money movement between accounts.

    At least one side is set: a credit-only transaction brings money in
    (allowance, refund), a debit-only one takes it out (purchase, withdrawal).
    The amount is fixed at creation.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    from_account_id: Optional[UUID] = None
    to_account_id: Optional[UUID] = None
    type: TransactionType
    amount: Decimal = Field(
        ...,
        gt=0,
        decimal_places=2,
    )
    status: TransactionStatus = TransactionStatus.PENDING
    description: Optional[str] = Field(default=None, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)

    requested_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    declined_reason: Optional[str] = Field(default=None, max_length=500)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    normalize_dates = field_validator(
        "approved_at", "completed_at", "created_at", "updated_at"
    )(as_utc)

    @model_validator(mode='after')
    def validate_accounts(self) -> 'Transaction':
        if self.from_account_id is None and self.to_account_id is None:
            raise ValueError("A transaction needs a source or a destination account")
        if self.from_account_id is not None and self.from_account_id == self.to_account_id:
            raise ValueError("Source and destination accounts must differ")
        return self

    @property
    def is_terminal(self) -> bool:
        return not TRANSACTION_TRANSITIONS[self.status]

    def can_transition_to(self, status: TransactionStatus) -> bool:
        return status in TRANSACTION_TRANSITIONS[self.status]

    def balance_changes(self) -> list[BalanceChange]:
        """The ledger effects of settling this transaction, debit first."""
        changes = []
        if self.from_account_id is not None:
            changes.append(BalanceChange(
                account_id=self.from_account_id,
                amount=self.amount,
                direction=BalanceDirection.DEBIT,
            ))
        if self.to_account_id is not None:
            changes.append(BalanceChange(
                account_id=self.to_account_id,
                amount=self.amount,
                direction=BalanceDirection.CREDIT,
            ))
        return changes

    def touches(self, account_ids: set[UUID]) -> bool:
        return self.from_account_id in account_ids or self.to_account_id in account_ids


class TransactionFilters(BaseModel):
    """Filters for transaction listings."""

    account_id: Optional[UUID] = None
    type: Optional[TransactionType] = None
    status: Optional[TransactionStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)

    normalize_dates = field_validator("start_date", "end_date")(as_utc)

    @model_validator(mode='after')
    def validate_range(self) -> 'TransactionFilters':
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date cannot be before start_date")
        return self


# =============================================================================
# ALLOWANCE
# =============================================================================

class Allowance(BaseModel):
    """
    A recurring payment into a child's primary account.

    next_due_date never precedes start_date and only moves forward.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    child_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    frequency: AllowanceFrequency
    start_date: datetime
    end_date: Optional[datetime] = None
    next_due_date: datetime
    is_active: bool = True
    description: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    normalize_dates = field_validator(
        "start_date", "end_date", "next_due_date", "created_at", "updated_at"
    )(as_utc)

    @model_validator(mode='after')
    def validate_dates(self) -> 'Allowance':
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        if self.next_due_date < self.start_date:
            raise ValueError("Next due date cannot be before start date")
        return self

    def is_due(self, now: datetime) -> bool:
        if not self.is_active or self.next_due_date > now:
            return False
        return self.end_date is None or self.end_date >= now


# =============================================================================
# SAVINGS GOAL
# =============================================================================

class SavingsGoal(BaseModel):
    """
    Something a child is saving towards.

    Once completed a goal stays completed. Progress is reported by the
    caller and is independent of the account balance.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    child_id: str = Field(..., min_length=1)
    account_id: UUID
    name: str = Field(..., min_length=1, max_length=100)
    target_amount: Decimal = Field(..., gt=0, decimal_places=2)
    current_amount: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)
    deadline: Optional[datetime] = None
    description: Optional[str] = Field(default=None, max_length=500)
    image_url: Optional[str] = Field(default=None, max_length=500)
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    normalize_dates = field_validator(
        "deadline", "completed_at", "created_at", "updated_at"
    )(as_utc)

    @property
    def target_reached(self) -> bool:
        return self.current_amount >= self.target_amount

    @property
    def progress(self) -> float:
        """Fraction of the target saved, capped at 1."""
        return min(float(self.current_amount / self.target_amount), 1.0)


class ProcessingReport(BaseModel):
    """Outcome of one allowance processing tick."""

    run_at: datetime
    processed: list[UUID] = Field(default_factory=list)
    skipped: list[UUID] = Field(default_factory=list)
    failed: list[UUID] = Field(default_factory=list)

    normalize_dates = field_validator("run_at")(as_utc)

    @property
    def total(self) -> int:
        return len(self.processed) + len(self.skipped) + len(self.failed)


# =============================================================================
# PARTIAL UPDATES
# =============================================================================

class AllowanceUpdate(BaseModel):
    """Fields a guardian may change on an allowance. Unset fields stay as they are."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    frequency: Optional[AllowanceFrequency] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    description: Optional[str] = Field(default=None, max_length=500)

    normalize_dates = field_validator("end_date")(as_utc)


class SavingsGoalUpdate(BaseModel):
    """Fields that may change on a savings goal. Unset fields stay as they are."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    target_amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    current_amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    deadline: Optional[datetime] = None
    description: Optional[str] = Field(default=None, max_length=500)
    image_url: Optional[str] = Field(default=None, max_length=500)

    normalize_dates = field_validator("deadline")(as_utc)
