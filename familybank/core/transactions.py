"""
Transaction State Machine

    PENDING -> APPROVED -> COMPLETED
    PENDING -> APPROVED -> FAILED
    PENDING -> DECLINED
    APPROVED (auto-approved at creation) -> COMPLETED | FAILED

DESIGN DECISION: Settlement is never called directly. It only runs for a
transaction this service has just put into APPROVED (auto-approved at
creation, or approved by a guardian), and every status change is a
compare-and-swap in the store, so concurrent approve/decline calls cannot
both win and a transaction settles at most once.

A FAILED transaction is an outcome, not an error: it is stored and stays
FAILED. The ledger error that caused it is still raised to the caller, with
the transaction's id attached as `transaction_id`.
"""

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog

from familybank.audit import EventBus
from familybank.clock import Clock
from familybank.config import LedgerSettings, get_settings
from familybank.core.base import CoreService, build, check_amount, require
from familybank.core.ledger import AccountLedger
from familybank.exceptions import ForbiddenError, InvalidStateError
from familybank.identity import IdentityProvider
from familybank.models.events import DomainEventBuilder
from familybank.models.finance import (
    AUTO_APPROVED_TYPES,
    Account,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from familybank.models.identity import AccessProfile
from familybank.policy import Capability, authorize, is_allowed
from familybank.storage import FinanceStorageInterface


logger = structlog.get_logger(__name__)


class TransactionService(CoreService):

    def __init__(
        self,
        storage: FinanceStorageInterface,
        identity: IdentityProvider,
        ledger: AccountLedger,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        super().__init__(storage, identity, bus, clock)
        self._ledger = ledger
        self._settings = settings or get_settings().ledger

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create(
        self,
        requester_id: str,
        type: TransactionType,
        amount: Decimal,
        from_account_id: Optional[UUID] = None,
        to_account_id: Optional[UUID] = None,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Transaction:
        """
        Create a transaction, settling it at once when it needs no approval.

        Guardians' transactions and ALLOWANCE/REFUND transactions start
        APPROVED; everything else waits in PENDING for a guardian.

        Raises:
            ValidationFailure: Bad amount or account combination
            NotFoundError: A referenced account doesn't exist
            ForbiddenError: Requester may not spend from the source account
            InsufficientFundsError: Settlement debit failed (transaction is FAILED)
        """
        profile = await self._profile(requester_id)
        return await self.create_as(
            profile,
            type,
            amount,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            description=description,
            metadata=metadata,
        )

    async def create_as(
        self,
        profile: AccessProfile,
        type: TransactionType,
        amount: Decimal,
        from_account_id: Optional[UUID] = None,
        to_account_id: Optional[UUID] = None,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Transaction:
        """Create on behalf of an already resolved profile (used by the scheduler)."""
        amount = check_amount(amount, self._settings.max_transaction_amount)

        if from_account_id is not None:
            source = require(
                await self._storage.get_account(from_account_id), "Source account", from_account_id
            )
            authorize(profile, Capability.USE_ACCOUNT, source.child_id)

        destination: Optional[Account] = None
        if to_account_id is not None:
            destination = require(
                await self._storage.get_account(to_account_id), "Destination account", to_account_id
            )

        now = self._clock.now()
        approved = profile.is_guardian or type in AUTO_APPROVED_TYPES
        transaction = build(
            Transaction,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            type=type,
            amount=amount,
            status=TransactionStatus.APPROVED if approved else TransactionStatus.PENDING,
            description=description,
            metadata=metadata or {},
            requested_by=profile.user_id,
            approved_by=profile.user_id if approved else None,
            approved_at=now if approved else None,
            created_at=now,
            updated_at=now,
        )
        transaction = await self._storage.create_transaction(transaction)

        await self._publish(DomainEventBuilder.transaction_created(
            transaction,
            profile.user_id,
            destination.child_id if destination else None,
        ))

        if approved:
            return await self._settle(transaction)
        return transaction

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------

    async def approve(self, approver_id: str, transaction_id: UUID) -> Transaction:
        """
        Approve a PENDING transaction and settle it.

        Raises:
            NotFoundError: Unknown transaction
            InvalidStateError: The transaction is not PENDING (including
                losing a race against another approve/decline)
            ForbiddenError: Approver is not a guardian of the owning child
        """
        transaction, owner = await self._load_for_review(approver_id, transaction_id)

        now = self._clock.now()
        approved = await self._storage.transition_transaction(
            transaction.id,
            TransactionStatus.PENDING,
            {
                "status": TransactionStatus.APPROVED,
                "approved_by": approver_id,
                "approved_at": now,
                "updated_at": now,
            },
        )
        await self._publish(DomainEventBuilder.transaction_approved(approved, owner))

        return await self._settle(approved)

    async def decline(
        self,
        approver_id: str,
        transaction_id: UUID,
        reason: Optional[str] = None,
    ) -> Transaction:
        """Decline a PENDING transaction. No money moves."""
        transaction, owner = await self._load_for_review(approver_id, transaction_id)

        declined = await self._storage.transition_transaction(
            transaction.id,
            TransactionStatus.PENDING,
            {
                "status": TransactionStatus.DECLINED,
                "declined_reason": reason,
                "updated_at": self._clock.now(),
            },
        )
        await self._publish(DomainEventBuilder.transaction_declined(declined, approver_id, owner))
        return declined

    async def _load_for_review(
        self,
        approver_id: str,
        transaction_id: UUID,
    ) -> tuple[Transaction, str]:
        """Returns the pending transaction and the child it is reviewed for."""
        profile = await self._profile(approver_id)
        transaction = require(
            await self._storage.get_transaction(transaction_id), "Transaction", transaction_id
        )
        if transaction.status != TransactionStatus.PENDING:
            raise InvalidStateError("Transaction is not pending")

        account_id = transaction.from_account_id or transaction.to_account_id
        account = require(await self._storage.get_account(account_id), "Account", account_id)
        authorize(profile, Capability.REVIEW_TRANSACTION, account.child_id)
        return transaction, account.child_id

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    async def _settle(self, transaction: Transaction) -> Transaction:
        changes = transaction.balance_changes()
        try:
            if self._settings.atomic_settlement:
                await self._ledger.settle(changes)
            else:
                # Debit, then credit. A failed credit leaves the debit applied.
                for change in changes:
                    await self._ledger.settle([change])
        except Exception as e:
            await self._fail(transaction, e)
            raise

        now = self._clock.now()
        completed = await self._storage.transition_transaction(
            transaction.id,
            TransactionStatus.APPROVED,
            {"status": TransactionStatus.COMPLETED, "completed_at": now, "updated_at": now},
        )
        await self._publish(DomainEventBuilder.transaction_completed(completed))
        return completed

    async def _fail(self, transaction: Transaction, error: Exception) -> Transaction:
        failed = await self._storage.transition_transaction(
            transaction.id,
            TransactionStatus.APPROVED,
            {
                "status": TransactionStatus.FAILED,
                "metadata": {**transaction.metadata, "failure": str(error)},
                "updated_at": self._clock.now(),
            },
        )
        logger.warning(
            "transaction_settlement_failed",
            transaction_id=str(transaction.id),
            error=str(error),
        )
        error.transaction_id = transaction.id
        await self._publish(DomainEventBuilder.transaction_failed(failed, str(error)))
        return failed

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, requester_id: str, transaction_id: UUID) -> Transaction:
        """A transaction the requester can see through either of its accounts."""
        profile = await self._profile(requester_id)
        transaction = require(
            await self._storage.get_transaction(transaction_id), "Transaction", transaction_id
        )
        for account_id in (transaction.from_account_id, transaction.to_account_id):
            if account_id is None:
                continue
            account = await self._storage.get_account(account_id)
            if account and is_allowed(profile, Capability.VIEW_ACCOUNT, account.child_id):
                return transaction
        raise ForbiddenError(f"Access denied to transaction {transaction_id}")
