"""
Relational Storage Implementation (SQLAlchemy, async)

DESIGN DECISION: Balance changes take row locks. Every account touched by a
settlement is selected FOR UPDATE, in id order, inside one database
transaction; the negative-balance check and the write happen under those
locks and commit or roll back together.

Status changes are conditional UPDATEs (`... WHERE status = :expected`): the
row count tells whether this caller won the race.

Targets PostgreSQL (asyncpg) in production. SQLite (aiosqlite) works for
tests and single-process use; it has no row locks and serializes writers
at the database level instead.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Numeric,
    String,
    Text,
    or_,
    select,
    update,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from familybank.config import DatabaseSettings, get_settings
from familybank.exceptions import (
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
)
from familybank.models.events import DomainEvent, DomainEventType
from familybank.models.finance import (
    Account,
    AccountStatus,
    Allowance,
    AllowanceFrequency,
    BalanceChange,
    BalanceDirection,
    SavingsGoal,
    Transaction,
    TransactionFilters,
    TransactionStatus,
    TransactionType,
    as_utc,
    quantize_money,
)
from familybank.storage.interface import (
    ACCOUNT_PROTECTED_FIELDS,
    ALLOWANCE_PROTECTED_FIELDS,
    GOAL_PROTECTED_FIELDS,
    TRANSACTION_PROTECTED_FIELDS,
    FinanceStorageInterface,
    StorageConnectionError,
    StorageError,
    check_changes,
)


MONEY = Numeric(12, 2, asdecimal=True)


# =============================================================================
# TABLES
# =============================================================================

class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    child_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(100))
    balance: Mapped[Decimal] = mapped_column(MONEY)
    status: Mapped[str] = mapped_column(String(16), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    from_account_id: Mapped[Optional[str]] = mapped_column(String(36), index=True, nullable=True)
    to_account_id: Mapped[Optional[str]] = mapped_column(String(36), index=True, nullable=True)
    type: Mapped[str] = mapped_column(String(16))
    amount: Mapped[Decimal] = mapped_column(MONEY)
    status: Mapped[str] = mapped_column(String(16), index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    requested_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    declined_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class AllowanceRow(Base):
    __tablename__ = "allowances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    child_id: Mapped[str] = mapped_column(String(64), index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    frequency: Mapped[str] = mapped_column(String(16))
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SavingsGoalRow(Base):
    __tablename__ = "savings_goals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    child_id: Mapped[str] = mapped_column(String(64), index=True)
    account_id: Mapped[str] = mapped_column(String(36))
    name: Mapped[str] = mapped_column(String(100))
    target_amount: Mapped[Decimal] = mapped_column(MONEY)
    current_amount: Mapped[Decimal] = mapped_column(MONEY)
    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class DomainEventRow(Base):
    __tablename__ = "domain_events"

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    event_type: Mapped[str] = mapped_column(String(64))
    entity_type: Mapped[str] = mapped_column(String(32))
    entity_id: Mapped[str] = mapped_column(String(36), index=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    recipients: Mapped[list] = mapped_column(JSON, default=list)
    details: Mapped[dict] = mapped_column(JSON, default=dict)


# =============================================================================
# ROW <-> MODEL
# =============================================================================

def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    return value


# Model field name -> mapped attribute name, where they differ
_ATTRIBUTE_NAMES = {"metadata": "metadata_json"}


def _column_values(changes: dict[str, Any]) -> dict[str, Any]:
    return {
        _ATTRIBUTE_NAMES.get(key, key): _column_value(value)
        for key, value in changes.items()
    }


def _account_from_row(row: AccountRow) -> Account:
    return Account(
        id=UUID(row.id),
        child_id=row.child_id,
        name=row.name,
        balance=quantize_money(row.balance),
        status=AccountStatus(row.status),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _transaction_from_row(row: TransactionRow) -> Transaction:
    return Transaction(
        id=UUID(row.id),
        from_account_id=UUID(row.from_account_id) if row.from_account_id else None,
        to_account_id=UUID(row.to_account_id) if row.to_account_id else None,
        type=TransactionType(row.type),
        amount=quantize_money(row.amount),
        status=TransactionStatus(row.status),
        description=row.description,
        metadata=row.metadata_json or {},
        requested_by=row.requested_by,
        approved_by=row.approved_by,
        approved_at=as_utc(row.approved_at),
        completed_at=as_utc(row.completed_at),
        declined_reason=row.declined_reason,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _allowance_from_row(row: AllowanceRow) -> Allowance:
    return Allowance(
        id=UUID(row.id),
        child_id=row.child_id,
        amount=quantize_money(row.amount),
        frequency=AllowanceFrequency(row.frequency),
        start_date=as_utc(row.start_date),
        end_date=as_utc(row.end_date),
        next_due_date=as_utc(row.next_due_date),
        is_active=row.is_active,
        description=row.description,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _goal_from_row(row: SavingsGoalRow) -> SavingsGoal:
    return SavingsGoal(
        id=UUID(row.id),
        child_id=row.child_id,
        account_id=UUID(row.account_id),
        name=row.name,
        target_amount=quantize_money(row.target_amount),
        current_amount=quantize_money(row.current_amount),
        deadline=as_utc(row.deadline),
        description=row.description,
        image_url=row.image_url,
        is_completed=row.is_completed,
        completed_at=as_utc(row.completed_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _event_from_row(row: DomainEventRow) -> DomainEvent:
    return DomainEvent(
        event_id=UUID(row.event_id),
        occurred_at=as_utc(row.occurred_at),
        event_type=DomainEventType(row.event_type),
        entity_type=row.entity_type,
        entity_id=UUID(row.entity_id),
        actor_id=row.actor_id,
        recipients=tuple(row.recipients or ()),
        details=row.details or {},
    )


# =============================================================================
# STORAGE
# =============================================================================

class SqlFinanceStorage(FinanceStorageInterface):
    """SQLAlchemy implementation of the finance store."""

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    async def _insert(self, row) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(row)

    async def _patch(self, row_type, key: UUID, changes: dict[str, Any], label: str):
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(row_type, str(key), with_for_update=True)
                if row is None:
                    raise NotFoundError(f"{label} not found: {key}")
                for field, value in _column_values(changes).items():
                    setattr(row, field, value)
        return row

    async def _delete(self, row_type, key: UUID) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(row_type, str(key))
                if row is None:
                    return False
                await session.delete(row)
        return True

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    async def create_account(self, account: Account) -> Account:
        await self._insert(AccountRow(
            id=str(account.id),
            child_id=account.child_id,
            name=account.name,
            balance=account.balance,
            status=account.status.value,
            created_at=account.created_at,
            updated_at=account.updated_at,
        ))
        return account

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        async with self._session_factory() as session:
            row = await session.get(AccountRow, str(account_id))
            return _account_from_row(row) if row else None

    async def list_accounts(
        self,
        child_ids: Optional[Iterable[str]] = None,
        status: Optional[AccountStatus] = None,
    ) -> list[Account]:
        stmt = select(AccountRow).order_by(AccountRow.created_at, AccountRow.id)
        if child_ids is not None:
            stmt = stmt.where(AccountRow.child_id.in_(list(child_ids)))
        if status is not None:
            stmt = stmt.where(AccountRow.status == status.value)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_account_from_row(row) for row in result.scalars()]

    async def update_account(self, account_id: UUID, changes: dict[str, Any]) -> Account:
        check_changes(changes, ACCOUNT_PROTECTED_FIELDS)
        row = await self._patch(AccountRow, account_id, changes, "Account")
        return _account_from_row(row)

    async def apply_balance_changes(
        self,
        changes: Sequence[BalanceChange],
        at: datetime,
    ) -> list[Account]:
        account_ids = sorted({str(change.account_id) for change in changes})

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(AccountRow)
                    .where(AccountRow.id.in_(account_ids))
                    .order_by(AccountRow.id)
                    .with_for_update()
                )
                rows = {row.id: row for row in result.scalars()}

                balances = {}
                for account_id in account_ids:
                    if account_id not in rows:
                        raise NotFoundError(f"Account not found: {account_id}")
                    balances[account_id] = quantize_money(rows[account_id].balance)

                for change in changes:
                    key = str(change.account_id)
                    new_balance = balances[key] + change.signed_amount
                    if change.direction == BalanceDirection.DEBIT and new_balance < 0:
                        raise InsufficientFundsError(change.account_id, balances[key], change.amount)
                    balances[key] = new_balance

                for account_id, balance in balances.items():
                    rows[account_id].balance = balance
                    rows[account_id].updated_at = at

        return [_account_from_row(rows[str(change.account_id)]) for change in changes]

    async def find_primary_account(self, child_id: str) -> Optional[Account]:
        stmt = (
            select(AccountRow)
            .where(AccountRow.child_id == child_id, AccountRow.status == AccountStatus.ACTIVE.value)
            .order_by(AccountRow.created_at, AccountRow.id)
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _account_from_row(row) if row else None

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def create_transaction(self, transaction: Transaction) -> Transaction:
        await self._insert(TransactionRow(
            id=str(transaction.id),
            from_account_id=str(transaction.from_account_id) if transaction.from_account_id else None,
            to_account_id=str(transaction.to_account_id) if transaction.to_account_id else None,
            type=transaction.type.value,
            amount=transaction.amount,
            status=transaction.status.value,
            description=transaction.description,
            metadata_json=transaction.metadata,
            requested_by=transaction.requested_by,
            approved_by=transaction.approved_by,
            approved_at=transaction.approved_at,
            completed_at=transaction.completed_at,
            declined_reason=transaction.declined_reason,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        ))
        return transaction

    async def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        async with self._session_factory() as session:
            row = await session.get(TransactionRow, str(transaction_id))
            return _transaction_from_row(row) if row else None

    async def transition_transaction(
        self,
        transaction_id: UUID,
        expected: TransactionStatus,
        changes: dict[str, Any],
    ) -> Transaction:
        check_changes(changes, TRANSACTION_PROTECTED_FIELDS)
        key = str(transaction_id)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TransactionRow)
                    .where(TransactionRow.id == key, TransactionRow.status == expected.value)
                    .values(**_column_values(changes))
                    .execution_options(synchronize_session=False)
                )
                row = await session.get(TransactionRow, key, populate_existing=True)
                if row is None:
                    raise NotFoundError(f"Transaction not found: {transaction_id}")
                if result.rowcount != 1:
                    raise InvalidStateError(
                        f"Transaction {transaction_id} is {row.status}, expected {expected.value}"
                    )
        return _transaction_from_row(row)

    async def list_transactions(
        self,
        account_ids: Optional[set[UUID]],
        filters: TransactionFilters,
        limit: int,
    ) -> list[Transaction]:
        stmt = select(TransactionRow)
        if account_ids is not None:
            keys = [str(account_id) for account_id in account_ids]
            stmt = stmt.where(or_(
                TransactionRow.from_account_id.in_(keys),
                TransactionRow.to_account_id.in_(keys),
            ))
        if filters.account_id:
            key = str(filters.account_id)
            stmt = stmt.where(or_(
                TransactionRow.from_account_id == key,
                TransactionRow.to_account_id == key,
            ))
        if filters.type:
            stmt = stmt.where(TransactionRow.type == filters.type.value)
        if filters.status:
            stmt = stmt.where(TransactionRow.status == filters.status.value)
        if filters.start_date:
            stmt = stmt.where(TransactionRow.created_at >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(TransactionRow.created_at <= filters.end_date)

        stmt = (
            stmt.order_by(TransactionRow.created_at.desc(), TransactionRow.id.desc())
            .offset(filters.offset)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_transaction_from_row(row) for row in result.scalars()]

    # -------------------------------------------------------------------------
    # Allowances
    # -------------------------------------------------------------------------

    async def create_allowance(self, allowance: Allowance) -> Allowance:
        await self._insert(AllowanceRow(
            id=str(allowance.id),
            child_id=allowance.child_id,
            amount=allowance.amount,
            frequency=allowance.frequency.value,
            start_date=allowance.start_date,
            end_date=allowance.end_date,
            next_due_date=allowance.next_due_date,
            is_active=allowance.is_active,
            description=allowance.description,
            created_at=allowance.created_at,
            updated_at=allowance.updated_at,
        ))
        return allowance

    async def get_allowance(self, allowance_id: UUID) -> Optional[Allowance]:
        async with self._session_factory() as session:
            row = await session.get(AllowanceRow, str(allowance_id))
            return _allowance_from_row(row) if row else None

    async def list_allowances(self, child_ids: Optional[Iterable[str]] = None) -> list[Allowance]:
        stmt = select(AllowanceRow).order_by(AllowanceRow.created_at.desc(), AllowanceRow.id.desc())
        if child_ids is not None:
            stmt = stmt.where(AllowanceRow.child_id.in_(list(child_ids)))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_allowance_from_row(row) for row in result.scalars()]

    async def update_allowance(self, allowance_id: UUID, changes: dict[str, Any]) -> Allowance:
        check_changes(changes, ALLOWANCE_PROTECTED_FIELDS)
        row = await self._patch(AllowanceRow, allowance_id, changes, "Allowance")
        return _allowance_from_row(row)

    async def delete_allowance(self, allowance_id: UUID) -> bool:
        return await self._delete(AllowanceRow, allowance_id)

    async def list_due_allowances(self, now: datetime) -> list[Allowance]:
        stmt = (
            select(AllowanceRow)
            .where(
                AllowanceRow.is_active.is_(True),
                AllowanceRow.next_due_date <= now,
                or_(AllowanceRow.end_date.is_(None), AllowanceRow.end_date >= now),
            )
            .order_by(AllowanceRow.next_due_date, AllowanceRow.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_allowance_from_row(row) for row in result.scalars()]

    async def advance_allowance(
        self,
        allowance_id: UUID,
        expected_due: datetime,
        next_due: datetime,
        at: datetime,
    ) -> bool:
        key = str(allowance_id)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(AllowanceRow)
                    .where(AllowanceRow.id == key, AllowanceRow.next_due_date == expected_due)
                    .values(next_due_date=next_due, updated_at=at)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return True
                if await session.get(AllowanceRow, key) is None:
                    raise NotFoundError(f"Allowance not found: {allowance_id}")
                return False

    # -------------------------------------------------------------------------
    # Savings goals
    # -------------------------------------------------------------------------

    async def create_goal(self, goal: SavingsGoal) -> SavingsGoal:
        await self._insert(SavingsGoalRow(
            id=str(goal.id),
            child_id=goal.child_id,
            account_id=str(goal.account_id),
            name=goal.name,
            target_amount=goal.target_amount,
            current_amount=goal.current_amount,
            deadline=goal.deadline,
            description=goal.description,
            image_url=goal.image_url,
            is_completed=goal.is_completed,
            completed_at=goal.completed_at,
            created_at=goal.created_at,
            updated_at=goal.updated_at,
        ))
        return goal

    async def get_goal(self, goal_id: UUID) -> Optional[SavingsGoal]:
        async with self._session_factory() as session:
            row = await session.get(SavingsGoalRow, str(goal_id))
            return _goal_from_row(row) if row else None

    async def list_goals(self, child_ids: Optional[Iterable[str]] = None) -> list[SavingsGoal]:
        stmt = select(SavingsGoalRow).order_by(SavingsGoalRow.created_at.desc(), SavingsGoalRow.id.desc())
        if child_ids is not None:
            stmt = stmt.where(SavingsGoalRow.child_id.in_(list(child_ids)))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_goal_from_row(row) for row in result.scalars()]

    async def update_goal(self, goal_id: UUID, changes: dict[str, Any]) -> SavingsGoal:
        check_changes(changes, GOAL_PROTECTED_FIELDS)
        row = await self._patch(SavingsGoalRow, goal_id, changes, "Savings goal")
        return _goal_from_row(row)

    async def delete_goal(self, goal_id: UUID) -> bool:
        return await self._delete(SavingsGoalRow, goal_id)

    async def complete_goal(self, goal_id: UUID, at: datetime) -> Optional[SavingsGoal]:
        key = str(goal_id)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(SavingsGoalRow)
                    .where(SavingsGoalRow.id == key, SavingsGoalRow.is_completed.is_(False))
                    .values(is_completed=True, completed_at=at, updated_at=at)
                    .execution_options(synchronize_session=False)
                )
                row = await session.get(SavingsGoalRow, key, populate_existing=True)
                if row is None:
                    raise NotFoundError(f"Savings goal not found: {goal_id}")
                if result.rowcount != 1:
                    return None
        return _goal_from_row(row)

    # -------------------------------------------------------------------------
    # Event log
    # -------------------------------------------------------------------------

    async def append_event(self, event: DomainEvent) -> bool:
        await self._insert(DomainEventRow(
            event_id=str(event.event_id),
            occurred_at=event.occurred_at,
            event_type=event.event_type.value,
            entity_type=event.entity_type,
            entity_id=str(event.entity_id),
            actor_id=event.actor_id,
            recipients=list(event.recipients),
            details=event.details,
        ))
        return True

    async def list_events(
        self,
        entity_id: Optional[UUID] = None,
        limit: int = 100,
    ) -> list[DomainEvent]:
        stmt = select(DomainEventRow).order_by(DomainEventRow.occurred_at).limit(limit)
        if entity_id is not None:
            stmt = stmt.where(DomainEventRow.entity_id == str(entity_id))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_event_from_row(row) for row in result.scalars()]


async def connect_sql_storage(
    settings: Optional[DatabaseSettings] = None,
) -> SqlFinanceStorage:
    """
    Create the engine, make sure the schema exists, and return the store.

    Connection problems are retried with exponential backoff; the last
    failure is raised as StorageConnectionError.
    """
    settings = settings or get_settings().database
    if not settings.url:
        raise StorageError("DATABASE_URL is not configured")

    engine_kwargs: dict[str, Any] = {"echo": settings.echo}
    if settings.url.startswith("sqlite") and (":memory:" in settings.url or settings.url.endswith("://")):
        # One shared connection, or every session would see its own empty database
        engine_kwargs["poolclass"] = StaticPool
    engine = create_async_engine(settings.url, **engine_kwargs)
    storage = SqlFinanceStorage(engine)

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.connect_retries),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            reraise=True,
        ):
            with attempt:
                await storage.create_schema()
    except Exception as e:
        await engine.dispose()
        raise StorageConnectionError(f"Failed to connect to database: {e}") from e

    return storage
