"""
Abstract Storage Interface

DESIGN DECISION: The core never talks to a database directly. It receives
an object implementing this interface. This allows us to:
1. Run the whole core against an in-memory store in tests
2. Use a relational database with row locking in production
3. Keep every atomicity guarantee the core relies on in one contract

Plain reads and writes are get/create/update by id. The operations the
money invariants depend on are explicit atomic primitives:
- apply_balance_changes: all-or-nothing balance changes, never negative
- transition_transaction: compare-and-swap on a transaction's status
- advance_allowance: compare-and-swap on an allowance's next due date
- complete_goal: compare-and-swap on a goal's completion flag
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID

from familybank.models.events import DomainEvent
from familybank.models.finance import (
    Account,
    AccountStatus,
    Allowance,
    BalanceChange,
    SavingsGoal,
    Transaction,
    TransactionFilters,
    TransactionStatus,
)


class FinanceStorageInterface(ABC):
    """
    Abstract interface for the core's persistent records.

    Implementations must provide at least read-committed isolation and
    make each atomic primitive safe against concurrent callers.
    """

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_account(self, account: Account) -> Account:
        pass

    @abstractmethod
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        pass

    @abstractmethod
    async def list_accounts(
        self,
        child_ids: Optional[Iterable[str]] = None,
        status: Optional[AccountStatus] = None,
    ) -> list[Account]:
        """
        List accounts, oldest first.

        Args:
            child_ids: Only accounts owned by these children (None = all)
            status: Only accounts in this status
        """
        pass

    @abstractmethod
    async def update_account(self, account_id: UUID, changes: dict[str, Any]) -> Account:
        """
        Update non-balance fields of an account.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    @abstractmethod
    async def apply_balance_changes(
        self,
        changes: Sequence[BalanceChange],
        at: datetime,
    ) -> list[Account]:
        """
        Apply balance changes to one or more accounts as a single unit.

        Every involved account is locked (in id order) for the duration of
        the check-and-write. Either every change is applied or none is.

        Returns:
            The updated accounts, in the order of `changes`

        Raises:
            NotFoundError: If an account doesn't exist
            InsufficientFundsError: If a debit would make a balance negative
        """
        pass

    @abstractmethod
    async def find_primary_account(self, child_id: str) -> Optional[Account]:
        """The child's earliest-created ACTIVE account, if any."""
        pass

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_transaction(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def transition_transaction(
        self,
        transaction_id: UUID,
        expected: TransactionStatus,
        changes: dict[str, Any],
    ) -> Transaction:
        """
        Apply `changes` only if the transaction is still in `expected` status.

        Exactly one of several concurrent callers can win a transition.

        Raises:
            NotFoundError: If the transaction doesn't exist
            InvalidStateError: If its status is no longer `expected`
        """
        pass

    @abstractmethod
    async def list_transactions(
        self,
        account_ids: Optional[set[UUID]],
        filters: TransactionFilters,
        limit: int,
    ) -> list[Transaction]:
        """
        List transactions newest first.

        Args:
            account_ids: Only transactions touching these accounts (None = all)
            filters: Type/status/date filters and offset
            limit: Maximum number of results
        """
        pass

    # -------------------------------------------------------------------------
    # Allowances
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_allowance(self, allowance: Allowance) -> Allowance:
        pass

    @abstractmethod
    async def get_allowance(self, allowance_id: UUID) -> Optional[Allowance]:
        pass

    @abstractmethod
    async def list_allowances(self, child_ids: Optional[Iterable[str]] = None) -> list[Allowance]:
        """List allowances, newest first."""
        pass

    @abstractmethod
    async def update_allowance(self, allowance_id: UUID, changes: dict[str, Any]) -> Allowance:
        pass

    @abstractmethod
    async def delete_allowance(self, allowance_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_due_allowances(self, now: datetime) -> list[Allowance]:
        """
        Active allowances with next_due_date <= now whose end date is
        absent or not yet passed, oldest due first.
        """
        pass

    @abstractmethod
    async def advance_allowance(
        self,
        allowance_id: UUID,
        expected_due: datetime,
        next_due: datetime,
        at: datetime,
    ) -> bool:
        """
        Move next_due_date from `expected_due` to `next_due`.

        Returns False (and changes nothing) if another caller already
        advanced it.
        """
        pass

    # -------------------------------------------------------------------------
    # Savings goals
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_goal(self, goal: SavingsGoal) -> SavingsGoal:
        pass

    @abstractmethod
    async def get_goal(self, goal_id: UUID) -> Optional[SavingsGoal]:
        pass

    @abstractmethod
    async def list_goals(self, child_ids: Optional[Iterable[str]] = None) -> list[SavingsGoal]:
        """List goals, newest first."""
        pass

    @abstractmethod
    async def update_goal(self, goal_id: UUID, changes: dict[str, Any]) -> SavingsGoal:
        """Update goal fields. Never touches the completion flag."""
        pass

    @abstractmethod
    async def delete_goal(self, goal_id: UUID) -> bool:
        pass

    @abstractmethod
    async def complete_goal(self, goal_id: UUID, at: datetime) -> Optional[SavingsGoal]:
        """
        Flip is_completed from False to True.

        Returns the completed goal, or None if it was already completed.
        """
        pass

    # -------------------------------------------------------------------------
    # Event log (append-only)
    # -------------------------------------------------------------------------

    @abstractmethod
    async def append_event(self, event: DomainEvent) -> bool:
        pass

    @abstractmethod
    async def list_events(
        self,
        entity_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> list[DomainEvent]:
        """List events in chronological order."""
        pass

    async def close(self) -> None:
        """Release connections. Stores without any keep the default."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


# Fields the generic update methods refuse to touch. Balances, statuses
# and completion flags only change through the atomic primitives above.
ACCOUNT_PROTECTED_FIELDS = frozenset({"id", "child_id", "balance", "created_at"})
TRANSACTION_PROTECTED_FIELDS = frozenset(
    {"id", "type", "amount", "from_account_id", "to_account_id", "created_at"}
)
ALLOWANCE_PROTECTED_FIELDS = frozenset({"id", "child_id", "next_due_date", "created_at"})
GOAL_PROTECTED_FIELDS = frozenset(
    {"id", "child_id", "account_id", "is_completed", "completed_at", "created_at"}
)


def check_changes(changes: dict[str, Any], protected: frozenset[str]) -> None:
    """Reject an update that names a protected field."""
    illegal = protected.intersection(changes)
    if illegal:
        raise StorageError(f"Fields cannot be updated here: {sorted(illegal)}")
