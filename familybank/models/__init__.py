"""
Data Models Package

This package contains all Pydantic models used by the Family Bank core.
All data flowing through the system must conform to these schemas.
"""

from familybank.models.finance import (
    AUTO_APPROVED_TYPES,
    Account,
    AccountStatus,
    Allowance,
    AllowanceFrequency,
    AllowanceUpdate,
    BalanceChange,
    BalanceDirection,
    ProcessingReport,
    SavingsGoal,
    SavingsGoalUpdate,
    Transaction,
    TransactionFilters,
    TransactionStatus,
    TransactionType,
    quantize_money,
)
from familybank.models.identity import (
    SYSTEM_PROFILE,
    SYSTEM_USER_ID,
    AccessProfile,
    UserRole,
)
from familybank.models.events import (
    DomainEvent,
    DomainEventBuilder,
    DomainEventType,
    NotificationKind,
)

__all__ = [
    # Finance models
    "AUTO_APPROVED_TYPES",
    "Account",
    "AccountStatus",
    "Allowance",
    "AllowanceFrequency",
    "AllowanceUpdate",
    "BalanceChange",
    "BalanceDirection",
    "ProcessingReport",
    "SavingsGoal",
    "SavingsGoalUpdate",
    "Transaction",
    "TransactionFilters",
    "TransactionStatus",
    "TransactionType",
    "quantize_money",
    # Identity models
    "SYSTEM_PROFILE",
    "SYSTEM_USER_ID",
    "AccessProfile",
    "UserRole",
    # Event models
    "DomainEvent",
    "DomainEventBuilder",
    "DomainEventType",
    "NotificationKind",
]
