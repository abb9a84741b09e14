"""
In-Memory Storage Implementation

Keeps every record in process memory. Used by the test-suite and for local
development when no DATABASE_URL is configured.

Records are copied on the way in and out so callers can never mutate stored
state behind the store's back. Per-account asyncio locks serialize balance
changes, and one lock per record kind serializes compare-and-swap updates.
"""

import asyncio
from contextlib import AsyncExitStack
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID

from familybank.exceptions import (
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
)
from familybank.models.events import DomainEvent
from familybank.models.finance import (
    Account,
    AccountStatus,
    Allowance,
    BalanceChange,
    BalanceDirection,
    SavingsGoal,
    Transaction,
    TransactionFilters,
    TransactionStatus,
)
from familybank.storage.interface import (
    ACCOUNT_PROTECTED_FIELDS,
    ALLOWANCE_PROTECTED_FIELDS,
    GOAL_PROTECTED_FIELDS,
    TRANSACTION_PROTECTED_FIELDS,
    FinanceStorageInterface,
    StorageError,
    check_changes,
)


class InMemoryFinanceStorage(FinanceStorageInterface):
    """Dictionary-backed implementation of the finance store."""

    def __init__(self):
        self._accounts: dict[UUID, Account] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._allowances: dict[UUID, Allowance] = {}
        self._goals: dict[UUID, SavingsGoal] = {}
        self._events: list[DomainEvent] = []

        self._account_locks: dict[UUID, asyncio.Lock] = {}
        self._transaction_lock = asyncio.Lock()
        self._allowance_lock = asyncio.Lock()
        self._goal_lock = asyncio.Lock()

    def _account_lock(self, account_id: UUID) -> asyncio.Lock:
        return self._account_locks.setdefault(account_id, asyncio.Lock())

    @staticmethod
    def _apply(record, changes: dict[str, Any], protected: frozenset[str]):
        check_changes(changes, protected)
        return record.model_copy(update=changes, deep=True)

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    async def create_account(self, account: Account) -> Account:
        if account.id in self._accounts:
            raise StorageError(f"Account already exists: {account.id}")
        self._accounts[account.id] = account.model_copy(deep=True)
        return account.model_copy(deep=True)

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def list_accounts(
        self,
        child_ids: Optional[Iterable[str]] = None,
        status: Optional[AccountStatus] = None,
    ) -> list[Account]:
        wanted = set(child_ids) if child_ids is not None else None
        accounts = [
            account.model_copy(deep=True)
            for account in self._accounts.values()
            if (wanted is None or account.child_id in wanted)
            and (status is None or account.status == status)
        ]
        accounts.sort(key=lambda a: (a.created_at, str(a.id)))
        return accounts

    async def update_account(self, account_id: UUID, changes: dict[str, Any]) -> Account:
        async with self._account_lock(account_id):
            account = self._accounts.get(account_id)
            if account is None:
                raise NotFoundError(f"Account not found: {account_id}")
            updated = self._apply(account, changes, ACCOUNT_PROTECTED_FIELDS)
            self._accounts[account_id] = updated
            return updated.model_copy(deep=True)

    async def apply_balance_changes(
        self,
        changes: Sequence[BalanceChange],
        at: datetime,
    ) -> list[Account]:
        account_ids = sorted({change.account_id for change in changes}, key=str)

        async with AsyncExitStack() as stack:
            for account_id in account_ids:
                await stack.enter_async_context(self._account_lock(account_id))

            balances = {}
            for account_id in account_ids:
                account = self._accounts.get(account_id)
                if account is None:
                    raise NotFoundError(f"Account not found: {account_id}")
                balances[account_id] = account.balance

            for change in changes:
                new_balance = balances[change.account_id] + change.signed_amount
                if change.direction == BalanceDirection.DEBIT and new_balance < 0:
                    raise InsufficientFundsError(
                        change.account_id, balances[change.account_id], change.amount
                    )
                balances[change.account_id] = new_balance

            for account_id, balance in balances.items():
                self._accounts[account_id] = self._accounts[account_id].model_copy(
                    update={"balance": balance, "updated_at": at}
                )

        return [self._accounts[change.account_id].model_copy(deep=True) for change in changes]

    async def find_primary_account(self, child_id: str) -> Optional[Account]:
        accounts = await self.list_accounts(child_ids=[child_id], status=AccountStatus.ACTIVE)
        return accounts[0] if accounts else None

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def create_transaction(self, transaction: Transaction) -> Transaction:
        async with self._transaction_lock:
            if transaction.id in self._transactions:
                raise StorageError(f"Transaction already exists: {transaction.id}")
            self._transactions[transaction.id] = transaction.model_copy(deep=True)
        return transaction.model_copy(deep=True)

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        transaction = self._transactions.get(transaction_id)
        return transaction.model_copy(deep=True) if transaction else None

    async def transition_transaction(
        self,
        transaction_id: UUID,
        expected: TransactionStatus,
        changes: dict[str, Any],
    ) -> Transaction:
        async with self._transaction_lock:
            transaction = self._transactions.get(transaction_id)
            if transaction is None:
                raise NotFoundError(f"Transaction not found: {transaction_id}")
            if transaction.status != expected:
                raise InvalidStateError(
                    f"Transaction {transaction_id} is {transaction.status.value}, "
                    f"expected {expected.value}"
                )
            updated = self._apply(transaction, changes, TRANSACTION_PROTECTED_FIELDS)
            self._transactions[transaction_id] = updated
            return updated.model_copy(deep=True)

    async def list_transactions(
        self,
        account_ids: Optional[set[UUID]],
        filters: TransactionFilters,
        limit: int,
    ) -> list[Transaction]:
        results = []
        for transaction in self._transactions.values():
            if account_ids is not None and not transaction.touches(account_ids):
                continue
            if filters.account_id and not transaction.touches({filters.account_id}):
                continue
            if filters.type and transaction.type != filters.type:
                continue
            if filters.status and transaction.status != filters.status:
                continue
            if filters.start_date and transaction.created_at < filters.start_date:
                continue
            if filters.end_date and transaction.created_at > filters.end_date:
                continue
            results.append(transaction)

        # Newest first
        results.sort(key=lambda t: (t.created_at, str(t.id)), reverse=True)
        page = results[filters.offset:filters.offset + limit]
        return [transaction.model_copy(deep=True) for transaction in page]

    # -------------------------------------------------------------------------
    # Allowances
    # -------------------------------------------------------------------------

    async def create_allowance(self, allowance: Allowance) -> Allowance:
        async with self._allowance_lock:
            self._allowances[allowance.id] = allowance.model_copy(deep=True)
        return allowance.model_copy(deep=True)

    async def get_allowance(self, allowance_id: UUID) -> Optional[Allowance]:
        allowance = self._allowances.get(allowance_id)
        return allowance.model_copy(deep=True) if allowance else None

    async def list_allowances(self, child_ids: Optional[Iterable[str]] = None) -> list[Allowance]:
        wanted = set(child_ids) if child_ids is not None else None
        allowances = [
            allowance.model_copy(deep=True)
            for allowance in self._allowances.values()
            if wanted is None or allowance.child_id in wanted
        ]
        allowances.sort(key=lambda a: (a.created_at, str(a.id)), reverse=True)
        return allowances

    async def update_allowance(self, allowance_id: UUID, changes: dict[str, Any]) -> Allowance:
        async with self._allowance_lock:
            allowance = self._allowances.get(allowance_id)
            if allowance is None:
                raise NotFoundError(f"Allowance not found: {allowance_id}")
            updated = self._apply(allowance, changes, ALLOWANCE_PROTECTED_FIELDS)
            self._allowances[allowance_id] = updated
            return updated.model_copy(deep=True)

    async def delete_allowance(self, allowance_id: UUID) -> bool:
        async with self._allowance_lock:
            return self._allowances.pop(allowance_id, None) is not None

    async def list_due_allowances(self, now: datetime) -> list[Allowance]:
        due = [
            allowance.model_copy(deep=True)
            for allowance in self._allowances.values()
            if allowance.is_due(now)
        ]
        due.sort(key=lambda a: (a.next_due_date, str(a.id)))
        return due

    async def advance_allowance(
        self,
        allowance_id: UUID,
        expected_due: datetime,
        next_due: datetime,
        at: datetime,
    ) -> bool:
        async with self._allowance_lock:
            allowance = self._allowances.get(allowance_id)
            if allowance is None:
                raise NotFoundError(f"Allowance not found: {allowance_id}")
            if allowance.next_due_date != expected_due:
                return False
            self._allowances[allowance_id] = allowance.model_copy(
                update={"next_due_date": next_due, "updated_at": at}
            )
            return True

    # -------------------------------------------------------------------------
    # Savings goals
    # -------------------------------------------------------------------------

    async def create_goal(self, goal: SavingsGoal) -> SavingsGoal:
        async with self._goal_lock:
            self._goals[goal.id] = goal.model_copy(deep=True)
        return goal.model_copy(deep=True)

    async def get_goal(self, goal_id: UUID) -> Optional[SavingsGoal]:
        goal = self._goals.get(goal_id)
        return goal.model_copy(deep=True) if goal else None

    async def list_goals(self, child_ids: Optional[Iterable[str]] = None) -> list[SavingsGoal]:
        wanted = set(child_ids) if child_ids is not None else None
        goals = [
            goal.model_copy(deep=True)
            for goal in self._goals.values()
            if wanted is None or goal.child_id in wanted
        ]
        goals.sort(key=lambda g: (g.created_at, str(g.id)), reverse=True)
        return goals

    async def update_goal(self, goal_id: UUID, changes: dict[str, Any]) -> SavingsGoal:
        async with self._goal_lock:
            goal = self._goals.get(goal_id)
            if goal is None:
                raise NotFoundError(f"Savings goal not found: {goal_id}")
            updated = self._apply(goal, changes, GOAL_PROTECTED_FIELDS)
            self._goals[goal_id] = updated
            return updated.model_copy(deep=True)

    async def delete_goal(self, goal_id: UUID) -> bool:
        async with self._goal_lock:
            return self._goals.pop(goal_id, None) is not None

    async def complete_goal(self, goal_id: UUID, at: datetime) -> Optional[SavingsGoal]:
        async with self._goal_lock:
            goal = self._goals.get(goal_id)
            if goal is None:
                raise NotFoundError(f"Savings goal not found: {goal_id}")
            if goal.is_completed:
                return None
            completed = goal.model_copy(
                update={"is_completed": True, "completed_at": at, "updated_at": at}
            )
            self._goals[goal_id] = completed
            return completed.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Event log
    # -------------------------------------------------------------------------

    async def append_event(self, event: DomainEvent) -> bool:
        self._events.append(event)
        return True

    async def list_events(
        self,
        entity_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> list[DomainEvent]:
        events = [
            event for event in self._events
            if entity_id is None or event.entity_id == entity_id
        ]
        return events[:limit]
