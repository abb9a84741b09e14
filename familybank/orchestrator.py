"""
Family Bank Orchestrator

Ties the core components together and wires the side-effect subscribers
(audit log, notifications) onto the event bus.

DESIGN DECISION: Every collaborator is injected. Nothing in the core
reaches for a global store or client; the factory below is the one place
that decides which backends a process uses.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from familybank.audit import AuditLogger, EventBus
from familybank.clock import Clock, SystemClock
from familybank.config import Settings, get_settings
from familybank.core import (
    AccountLedger,
    AccountService,
    AllowanceScheduler,
    SavingsGoalTracker,
    TransactionService,
)
from familybank.identity import IdentityProvider, StaticIdentityProvider
from familybank.notifications import LoggingNotifier, NotificationDispatcher, Notifier
from familybank.queries import TransactionQueryExecutor
from familybank.storage import (
    FinanceStorageInterface,
    InMemoryFinanceStorage,
    connect_sql_storage,
)


logger = structlog.get_logger(__name__)


@dataclass
class FamilyBank:
    """All core components of one process, sharing one store and one bus."""

    storage: FinanceStorageInterface
    identity: IdentityProvider
    bus: EventBus
    clock: Clock
    ledger: AccountLedger
    accounts: AccountService
    transactions: TransactionService
    allowances: AllowanceScheduler
    goals: SavingsGoalTracker
    queries: TransactionQueryExecutor
    audit_logger: AuditLogger
    notifications: NotificationDispatcher


def build_family_bank(
    storage: FinanceStorageInterface,
    identity: IdentityProvider,
    notifier: Optional[Notifier] = None,
    clock: Optional[Clock] = None,
    settings: Optional[Settings] = None,
) -> FamilyBank:
    """Assemble the components around an existing store."""
    settings = settings or get_settings()
    clock = clock or SystemClock()
    ledger_settings = settings.ledger

    bus = EventBus()
    audit_logger = AuditLogger(storage)
    dispatcher = NotificationDispatcher(
        notifier or LoggingNotifier(),
        identity,
        settings.notifications,
    )
    bus.subscribe(audit_logger)
    bus.subscribe(dispatcher)

    ledger = AccountLedger(storage, clock)
    transactions = TransactionService(storage, identity, ledger, bus, clock, ledger_settings)

    return FamilyBank(
        storage=storage,
        identity=identity,
        bus=bus,
        clock=clock,
        ledger=ledger,
        accounts=AccountService(storage, identity, bus, clock),
        transactions=transactions,
        allowances=AllowanceScheduler(storage, identity, transactions, bus, clock, ledger_settings),
        goals=SavingsGoalTracker(storage, identity, bus, clock, ledger_settings),
        queries=TransactionQueryExecutor(storage, identity, ledger_settings),
        audit_logger=audit_logger,
        notifications=dispatcher,
    )


async def create_app_components(
    settings: Optional[Settings] = None,
    identity: Optional[IdentityProvider] = None,
    notifier: Optional[Notifier] = None,
    clock: Optional[Clock] = None,
) -> FamilyBank:
    """
    Factory function to create all application components.

    Uses the SQL store when DATABASE_URL is set and the in-memory store
    otherwise.

    Raises:
        StorageConnectionError: If the database cannot be reached
    """
    settings = settings or get_settings()
    database = settings.database

    if database.url:
        storage = await connect_sql_storage(database)
        logger.info("storage_configured", backend="sql")
    else:
        storage = InMemoryFinanceStorage()
        logger.warning("storage_configured", backend="memory")

    return build_family_bank(
        storage,
        identity or StaticIdentityProvider(),
        notifier=notifier,
        clock=clock,
        settings=settings,
    )
