"""
Domain Event Models for Family Bank

Core operations never talk to the outside world directly. Each state change
is described by a DomainEvent; subscribers (audit log, notification
dispatcher) decide what to do with it.

DESIGN DECISION: Events are append-only facts. They are never modified.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from familybank.models.finance import (
    Account,
    Allowance,
    SavingsGoal,
    Transaction,
    utcnow,
)


class DomainEventType(str, Enum):
    """Every state change in the core has its own event type."""
    # Transactions
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_APPROVED = "transaction_approved"
    TRANSACTION_DECLINED = "transaction_declined"
    TRANSACTION_COMPLETED = "transaction_completed"
    TRANSACTION_FAILED = "transaction_failed"

    # Allowances
    ALLOWANCE_PAID = "allowance_paid"

    # Savings goals
    SAVINGS_GOAL_REACHED = "savings_goal_reached"

    # Accounts
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_STATUS_CHANGED = "account_status_changed"


class NotificationKind(str, Enum):
    """Kinds of user-facing notifications."""
    TRANSACTION_CREATED = "TRANSACTION_CREATED"
    TRANSACTION_APPROVED = "TRANSACTION_APPROVED"
    TRANSACTION_DECLINED = "TRANSACTION_DECLINED"
    ALLOWANCE_RECEIVED = "ALLOWANCE_RECEIVED"
    SAVINGS_GOAL_REACHED = "SAVINGS_GOAL_REACHED"
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    LOW_BALANCE = "LOW_BALANCE"


class DomainEvent(BaseModel):
    """
    A single fact about the core's state.

    `recipients` lists the child profiles the event concerns. The
    notification dispatcher resolves them to users.
    """
    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    occurred_at: datetime = Field(default_factory=utcnow)
    event_type: DomainEventType
    entity_type: str
    entity_id: UUID
    actor_id: Optional[str] = None
    recipients: tuple[str, ...] = ()
    details: dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": str(self.event_id),
            "occurred_at": self.occurred_at.isoformat(),
            "event_type": self.event_type.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id),
            "actor_id": self.actor_id,
            "recipients": list(self.recipients),
            "details": self.details,
        }


def _money(amount: Decimal) -> str:
    return f"{amount:.2f}"


def _transaction_details(transaction: Transaction) -> dict[str, Any]:
    return {
        "type": transaction.type.value,
        "amount": _money(transaction.amount),
        "status": transaction.status.value,
        "from_account_id": str(transaction.from_account_id) if transaction.from_account_id else None,
        "to_account_id": str(transaction.to_account_id) if transaction.to_account_id else None,
    }


class DomainEventBuilder:
    """
    Helper class to build domain events with common patterns.

    Usage:
        event = DomainEventBuilder.transaction_created(tx, actor_id, to_child_id)
        event = DomainEventBuilder.goal_reached(goal, actor_id)
    """

    @staticmethod
    def transaction_created(
        transaction: Transaction,
        actor_id: str,
        destination_child_id: Optional[str],
    ) -> DomainEvent:
        return DomainEvent(
            event_type=DomainEventType.TRANSACTION_CREATED,
            occurred_at=transaction.created_at,
            entity_type="transaction",
            entity_id=transaction.id,
            actor_id=actor_id,
            recipients=(destination_child_id,) if destination_child_id else (),
            details=_transaction_details(transaction),
        )

    @staticmethod
    def transaction_approved(
        transaction: Transaction,
        source_child_id: Optional[str],
    ) -> DomainEvent:
        return DomainEvent(
            event_type=DomainEventType.TRANSACTION_APPROVED,
            occurred_at=transaction.approved_at or utcnow(),
            entity_type="transaction",
            entity_id=transaction.id,
            actor_id=transaction.approved_by,
            recipients=(source_child_id,) if source_child_id else (),
            details=_transaction_details(transaction),
        )

    @staticmethod
    def transaction_declined(
        transaction: Transaction,
        actor_id: str,
        source_child_id: Optional[str],
    ) -> DomainEvent:
        details = _transaction_details(transaction)
        details["reason"] = transaction.declined_reason
        return DomainEvent(
            event_type=DomainEventType.TRANSACTION_DECLINED,
            occurred_at=transaction.updated_at,
            entity_type="transaction",
            entity_id=transaction.id,
            actor_id=actor_id,
            recipients=(source_child_id,) if source_child_id else (),
            details=details,
        )

    @staticmethod
    def transaction_completed(transaction: Transaction) -> DomainEvent:
        return DomainEvent(
            event_type=DomainEventType.TRANSACTION_COMPLETED,
            occurred_at=transaction.completed_at or utcnow(),
            entity_type="transaction",
            entity_id=transaction.id,
            details=_transaction_details(transaction),
        )

    @staticmethod
    def transaction_failed(transaction: Transaction, error: str) -> DomainEvent:
        details = _transaction_details(transaction)
        details["error"] = error
        return DomainEvent(
            event_type=DomainEventType.TRANSACTION_FAILED,
            occurred_at=transaction.updated_at,
            entity_type="transaction",
            entity_id=transaction.id,
            details=details,
        )

    @staticmethod
    def allowance_paid(
        allowance: Allowance,
        transaction: Transaction,
        next_due_date: datetime,
    ) -> DomainEvent:
        return DomainEvent(
            event_type=DomainEventType.ALLOWANCE_PAID,
            occurred_at=transaction.created_at,
            entity_type="allowance",
            entity_id=allowance.id,
            recipients=(allowance.child_id,),
            details={
                "transaction_id": str(transaction.id),
                "amount": _money(allowance.amount),
                "frequency": allowance.frequency.value,
                "next_due_date": next_due_date.isoformat(),
            },
        )

    @staticmethod
    def goal_reached(goal: SavingsGoal, actor_id: Optional[str] = None) -> DomainEvent:
        return DomainEvent(
            event_type=DomainEventType.SAVINGS_GOAL_REACHED,
            occurred_at=goal.completed_at or utcnow(),
            entity_type="savings_goal",
            entity_id=goal.id,
            actor_id=actor_id,
            recipients=(goal.child_id,),
            details={
                "name": goal.name,
                "target_amount": _money(goal.target_amount),
                "current_amount": _money(goal.current_amount),
            },
        )

    @staticmethod
    def account_created(account: Account, actor_id: str) -> DomainEvent:
        return DomainEvent(
            event_type=DomainEventType.ACCOUNT_CREATED,
            occurred_at=account.created_at,
            entity_type="account",
            entity_id=account.id,
            actor_id=actor_id,
            recipients=(account.child_id,),
            details={"name": account.name},
        )

    @staticmethod
    def account_status_changed(
        account: Account,
        previous: str,
        actor_id: str,
    ) -> DomainEvent:
        return DomainEvent(
            event_type=DomainEventType.ACCOUNT_STATUS_CHANGED,
            occurred_at=account.updated_at,
            entity_type="account",
            entity_id=account.id,
            actor_id=actor_id,
            details={"from": previous, "to": account.status.value},
        )
