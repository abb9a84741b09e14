"""
Allowance Scheduler

Recurring payments into a child's primary account. An external trigger
(cron, see app/main.py) calls `process_due()`; the scheduler pays every
allowance that has fallen due since the last run.

DESIGN DECISION: Each period is claimed before it is paid. The scheduler
first moves next_due_date forward with a compare-and-swap and only the
caller that wins the claim creates the ALLOWANCE transaction. Two
overlapping runs therefore never pay the same period twice. The due date
advances whatever the payment's outcome.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from dateutil.relativedelta import relativedelta

from familybank.audit import EventBus
from familybank.clock import Clock
from familybank.config import LedgerSettings, get_settings
from familybank.core.base import CoreService, build, check_amount, require
from familybank.core.transactions import TransactionService
from familybank.exceptions import ValidationFailure
from familybank.identity import IdentityProvider
from familybank.models.events import DomainEventBuilder
from familybank.models.finance import (
    Allowance,
    AllowanceFrequency,
    AllowanceUpdate,
    ProcessingReport,
    TransactionType,
    as_utc,
)
from familybank.models.identity import SYSTEM_PROFILE
from familybank.policy import Capability, authorize, is_allowed
from familybank.storage import FinanceStorageInterface


logger = structlog.get_logger(__name__)

DEFAULT_ALLOWANCE_DESCRIPTION = "Automated allowance payment"


def compute_next_due_date(current: datetime, frequency: AllowanceFrequency) -> datetime:
    """
    The due date one period after `current`.

    MONTHLY keeps the day of month where it exists and clamps to the last
    day otherwise (Jan 31 -> Feb 28/29).
    """
    if frequency == AllowanceFrequency.DAILY:
        return current + timedelta(days=1)
    if frequency == AllowanceFrequency.WEEKLY:
        return current + timedelta(weeks=1)
    if frequency == AllowanceFrequency.MONTHLY:
        return current + relativedelta(months=1)
    raise ValueError(f"Unknown frequency: {frequency}")


class AllowanceScheduler(CoreService):

    def __init__(
        self,
        storage: FinanceStorageInterface,
        identity: IdentityProvider,
        transactions: TransactionService,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        super().__init__(storage, identity, bus, clock)
        self._transactions = transactions
        self._settings = settings or get_settings().ledger

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def process_due(self, now: Optional[datetime] = None) -> ProcessingReport:
        """
        Pay every due allowance once.

        Allowances whose child has no ACTIVE account are skipped without
        touching their due date. A failure on one allowance is logged and
        recorded in the report; the rest of the batch still runs.
        """
        now = as_utc(now) if now else self._clock.now()
        report = ProcessingReport(run_at=now)

        due = await self._storage.list_due_allowances(now)
        logger.info("allowance_processing_started", due_count=len(due), run_at=now.isoformat())

        for allowance in due:
            try:
                outcome = await self._process_one(allowance, now)
            except Exception as e:
                logger.error(
                    "allowance_processing_failed",
                    allowance_id=str(allowance.id),
                    child_id=allowance.child_id,
                    error=str(e),
                    transaction_id=str(getattr(e, "transaction_id", None) or ""),
                )
                report.failed.append(allowance.id)
                continue

            if outcome:
                report.processed.append(allowance.id)
            else:
                report.skipped.append(allowance.id)

        logger.info(
            "allowance_processing_finished",
            processed=len(report.processed),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def _process_one(self, allowance: Allowance, now: datetime) -> bool:
        """Returns False when there was nothing to pay."""
        account = await self._storage.find_primary_account(allowance.child_id)
        if account is None:
            logger.info(
                "allowance_skipped_no_account",
                allowance_id=str(allowance.id),
                child_id=allowance.child_id,
            )
            return False

        next_due = compute_next_due_date(allowance.next_due_date, allowance.frequency)
        claimed = await self._storage.advance_allowance(
            allowance.id, allowance.next_due_date, next_due, now
        )
        if not claimed:
            logger.info("allowance_already_claimed", allowance_id=str(allowance.id))
            return False

        transaction = await self._transactions.create_as(
            SYSTEM_PROFILE,
            TransactionType.ALLOWANCE,
            allowance.amount,
            to_account_id=account.id,
            description=allowance.description or DEFAULT_ALLOWANCE_DESCRIPTION,
            metadata={"allowance_id": str(allowance.id)},
        )
        await self._publish(DomainEventBuilder.allowance_paid(allowance, transaction, next_due))
        return True

    # -------------------------------------------------------------------------
    # Management
    # -------------------------------------------------------------------------

    async def create_allowance(
        self,
        requester_id: str,
        child_id: str,
        amount: Decimal,
        frequency: AllowanceFrequency,
        start_date: datetime,
        end_date: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> Allowance:
        """Guardian only. The first payment falls one period after start_date."""
        profile = await self._profile(requester_id)
        authorize(profile, Capability.MANAGE_ALLOWANCE, child_id)

        amount = check_amount(amount, self._settings.max_allowance_amount)
        now = self._clock.now()
        allowance = build(
            Allowance,
            child_id=child_id,
            amount=amount,
            frequency=frequency,
            start_date=start_date,
            end_date=end_date,
            next_due_date=compute_next_due_date(start_date, frequency),
            description=description,
            created_at=now,
            updated_at=now,
        )
        return await self._storage.create_allowance(allowance)

    async def list_allowances(self, requester_id: str) -> list[Allowance]:
        profile = await self._profile(requester_id)
        if not profile.child_ids:
            return []
        allowances = await self._storage.list_allowances(child_ids=profile.child_ids)
        return [a for a in allowances if is_allowed(profile, Capability.VIEW_ALLOWANCE, a.child_id)]

    async def update_allowance(
        self,
        requester_id: str,
        allowance_id: UUID,
        update: AllowanceUpdate,
    ) -> Allowance:
        """
        Change an allowance.

        A new frequency also moves next_due_date one new period past its
        current value.
        """
        allowance = await self._load_for_management(requester_id, allowance_id)

        changes = update.model_dump(exclude_unset=True)
        if "amount" in changes:
            if changes["amount"] is None:
                raise ValidationFailure("Allowance amount cannot be cleared")
            changes["amount"] = check_amount(
                changes["amount"], self._settings.max_allowance_amount
            )
        for field in ("frequency", "is_active"):
            if field in changes and changes[field] is None:
                raise ValidationFailure(f"Allowance {field} cannot be cleared")
        if changes.get("end_date") and changes["end_date"] < allowance.start_date:
            raise ValidationFailure("End date cannot be before start date")

        now = self._clock.now()
        changes["updated_at"] = now
        updated = await self._storage.update_allowance(allowance_id, changes)

        if "frequency" in changes:
            next_due = compute_next_due_date(allowance.next_due_date, updated.frequency)
            if await self._storage.advance_allowance(
                allowance_id, allowance.next_due_date, next_due, now
            ):
                updated = await self._storage.get_allowance(allowance_id)

        return updated

    async def delete_allowance(self, requester_id: str, allowance_id: UUID) -> None:
        await self._load_for_management(requester_id, allowance_id)
        await self._storage.delete_allowance(allowance_id)

    async def _load_for_management(self, requester_id: str, allowance_id: UUID) -> Allowance:
        profile = await self._profile(requester_id)
        allowance = require(
            await self._storage.get_allowance(allowance_id), "Allowance", allowance_id
        )
        authorize(profile, Capability.MANAGE_ALLOWANCE, allowance.child_id)
        return allowance
