"""
Tests for the allowance scheduler.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from familybank.core import compute_next_due_date
from familybank.exceptions import ForbiddenError, NotFoundError, ValidationFailure
from familybank.models import (
    AccountStatus,
    AllowanceFrequency,
    AllowanceUpdate,
    DomainEventType,
    TransactionFilters,
    TransactionStatus,
    TransactionType,
)
from familybank.models.identity import SYSTEM_USER_ID


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestComputeNextDueDate:

    def test_daily(self):
        assert compute_next_due_date(utc(2024, 2, 28), AllowanceFrequency.DAILY) == utc(2024, 2, 29)

    def test_weekly(self):
        assert compute_next_due_date(utc(2024, 12, 28), AllowanceFrequency.WEEKLY) == utc(2025, 1, 4)

    def test_monthly_keeps_day(self):
        assert compute_next_due_date(utc(2024, 3, 15, 8), AllowanceFrequency.MONTHLY) == utc(2024, 4, 15, 8)

    @pytest.mark.parametrize(
        "current, expected",
        [
            (utc(2023, 1, 31), utc(2023, 2, 28)),
            (utc(2024, 1, 31), utc(2024, 2, 29)),
            (utc(2024, 3, 31), utc(2024, 4, 30)),
            (utc(2024, 12, 31), utc(2025, 1, 31)),
        ],
    )
    def test_monthly_clamps_to_month_end(self, current, expected):
        assert compute_next_due_date(current, AllowanceFrequency.MONTHLY) == expected

    def test_strictly_increasing(self):
        for frequency in AllowanceFrequency:
            date = utc(2024, 1, 31)
            for _ in range(30):
                following = compute_next_due_date(date, frequency)
                assert following > date
                date = following


class TestManagement:

    @pytest.mark.asyncio
    async def test_first_due_is_one_period_after_start(self, bank):
        allowance = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.WEEKLY, utc(2024, 1, 1)
        )
        assert allowance.next_due_date == utc(2024, 1, 8)
        assert allowance.is_active

    @pytest.mark.asyncio
    async def test_only_guardians_create(self, bank):
        with pytest.raises(ForbiddenError):
            await bank.allowances.create_allowance(
                "alice", "alice", Decimal("5"), AllowanceFrequency.WEEKLY, utc(2024, 1, 1)
            )
        with pytest.raises(ForbiddenError):
            await bank.allowances.create_allowance(
                "parent-2", "alice", Decimal("5"), AllowanceFrequency.WEEKLY, utc(2024, 1, 1)
            )

    @pytest.mark.asyncio
    async def test_amount_limit(self, bank):
        with pytest.raises(ValidationFailure):
            await bank.allowances.create_allowance(
                "parent-1", "alice", Decimal("1000.01"), AllowanceFrequency.DAILY, utc(2024, 1, 1)
            )

    @pytest.mark.asyncio
    async def test_end_before_start_rejected(self, bank):
        with pytest.raises(ValidationFailure):
            await bank.allowances.create_allowance(
                "parent-1",
                "alice",
                Decimal("5"),
                AllowanceFrequency.DAILY,
                utc(2024, 2, 1),
                end_date=utc(2024, 1, 1),
            )

    @pytest.mark.asyncio
    async def test_list_is_scoped(self, bank):
        await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.WEEKLY, utc(2024, 1, 1)
        )
        await bank.allowances.create_allowance(
            "parent-2", "carol", Decimal("7"), AllowanceFrequency.WEEKLY, utc(2024, 1, 1)
        )

        assert [a.child_id for a in await bank.allowances.list_allowances("alice")] == ["alice"]
        assert [a.child_id for a in await bank.allowances.list_allowances("parent-2")] == ["carol"]
        assert await bank.allowances.list_allowances("bob") == []

    @pytest.mark.asyncio
    async def test_frequency_change_moves_due_date_forward(self, bank):
        allowance = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.WEEKLY, utc(2024, 1, 1)
        )

        updated = await bank.allowances.update_allowance(
            "parent-1",
            allowance.id,
            AllowanceUpdate(frequency=AllowanceFrequency.MONTHLY, amount=Decimal("20")),
        )

        assert updated.frequency == AllowanceFrequency.MONTHLY
        assert updated.amount == Decimal("20.00")
        assert updated.next_due_date == utc(2024, 2, 8)

    @pytest.mark.asyncio
    async def test_end_date_can_be_cleared(self, bank):
        allowance = await bank.allowances.create_allowance(
            "parent-1",
            "alice",
            Decimal("5"),
            AllowanceFrequency.WEEKLY,
            utc(2024, 1, 1),
            end_date=utc(2024, 6, 1),
        )
        updated = await bank.allowances.update_allowance(
            "parent-1", allowance.id, AllowanceUpdate(end_date=None)
        )
        assert updated.end_date is None

    @pytest.mark.asyncio
    async def test_child_cannot_update_or_delete(self, bank):
        allowance = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.WEEKLY, utc(2024, 1, 1)
        )
        with pytest.raises(ForbiddenError):
            await bank.allowances.update_allowance("alice", allowance.id, AllowanceUpdate(amount=Decimal("50")))
        with pytest.raises(ForbiddenError):
            await bank.allowances.delete_allowance("alice", allowance.id)

    @pytest.mark.asyncio
    async def test_delete(self, bank):
        allowance = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.WEEKLY, utc(2024, 1, 1)
        )
        await bank.allowances.delete_allowance("parent-1", allowance.id)

        assert await bank.storage.get_allowance(allowance.id) is None
        with pytest.raises(NotFoundError):
            await bank.allowances.delete_allowance("parent-1", allowance.id)


class TestProcessDue:

    @pytest.mark.asyncio
    async def test_pays_due_allowance_and_advances(self, bank, alice_account):
        allowance = await bank.allowances.create_allowance(
            "parent-1",
            "alice",
            Decimal("5"),
            AllowanceFrequency.WEEKLY,
            utc(2024, 1, 1),
            description="Pocket money",
        )

        report = await bank.allowances.process_due(utc(2024, 1, 8, 12))

        assert report.processed == [allowance.id]
        assert (await bank.storage.get_account(alice_account.id)).balance == Decimal("5.00")
        assert (await bank.storage.get_allowance(allowance.id)).next_due_date == utc(2024, 1, 15)

        [tx] = await bank.queries.list_transactions("alice", TransactionFilters())
        assert tx.type == TransactionType.ALLOWANCE
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.requested_by == SYSTEM_USER_ID
        assert tx.description == "Pocket money"
        assert tx.metadata["allowance_id"] == str(allowance.id)

        events = await bank.storage.list_events(entity_id=allowance.id)
        assert [e.event_type for e in events] == [DomainEventType.ALLOWANCE_PAID]

    @pytest.mark.asyncio
    async def test_default_description(self, bank, alice_account):
        await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.DAILY, utc(2024, 1, 1)
        )
        await bank.allowances.process_due(utc(2024, 1, 2))

        [tx] = await bank.queries.list_transactions("alice")
        assert tx.description == "Automated allowance payment"

    @pytest.mark.asyncio
    async def test_not_yet_due(self, bank, alice_account):
        await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.WEEKLY, utc(2024, 1, 1)
        )
        report = await bank.allowances.process_due(utc(2024, 1, 7, 23))

        assert report.total == 0
        assert (await bank.storage.get_account(alice_account.id)).balance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_no_active_account_skips_without_advancing(self, bank):
        allowance = await bank.allowances.create_allowance(
            "parent-1", "bob", Decimal("5"), AllowanceFrequency.DAILY, utc(2024, 1, 1)
        )

        report = await bank.allowances.process_due(utc(2024, 1, 3))

        assert report.skipped == [allowance.id]
        assert report.processed == []
        assert report.failed == []
        assert (await bank.storage.get_allowance(allowance.id)).next_due_date == utc(2024, 1, 2)
        assert await bank.storage.list_transactions(None, TransactionFilters(), 100) == []

    @pytest.mark.asyncio
    async def test_suspended_account_is_not_primary(self, bank, alice_account, clock):
        clock.advance(minutes=1)
        savings = await bank.accounts.create_account("parent-1", "alice", "Alice Savings")
        await bank.accounts.set_account_status("parent-1", alice_account.id, AccountStatus.SUSPENDED)
        await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.DAILY, utc(2024, 1, 1)
        )

        await bank.allowances.process_due(utc(2024, 1, 2))

        assert (await bank.storage.get_account(alice_account.id)).balance == Decimal("0.00")
        assert (await bank.storage.get_account(savings.id)).balance == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_earliest_active_account_is_primary(self, bank, alice_account, clock):
        clock.advance(minutes=1)
        later = await bank.accounts.create_account("parent-1", "alice", "Alice Savings")
        await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.DAILY, utc(2024, 1, 1)
        )

        await bank.allowances.process_due(utc(2024, 1, 2))

        assert (await bank.storage.get_account(alice_account.id)).balance == Decimal("5.00")
        assert (await bank.storage.get_account(later.id)).balance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_inactive_and_ended_allowances_ignored(self, bank, alice_account):
        paused = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.DAILY, utc(2024, 1, 1)
        )
        await bank.allowances.update_allowance("parent-1", paused.id, AllowanceUpdate(is_active=False))
        await bank.allowances.create_allowance(
            "parent-1",
            "alice",
            Decimal("5"),
            AllowanceFrequency.DAILY,
            utc(2024, 1, 1),
            end_date=utc(2024, 1, 2),
        )

        report = await bank.allowances.process_due(utc(2024, 1, 5))

        assert report.total == 0
        assert (await bank.storage.get_account(alice_account.id)).balance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_one_period_per_tick(self, bank, alice_account):
        """A run that is days late pays once and catches up on later runs."""
        allowance = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("1"), AllowanceFrequency.DAILY, utc(2024, 1, 1)
        )
        late = utc(2024, 1, 5)

        await bank.allowances.process_due(late)
        assert (await bank.storage.get_allowance(allowance.id)).next_due_date == utc(2024, 1, 3)

        while (await bank.allowances.process_due(late)).processed:
            pass

        assert (await bank.storage.get_account(alice_account.id)).balance == Decimal("4.00")
        assert (await bank.storage.get_allowance(allowance.id)).next_due_date == utc(2024, 1, 6)

    @pytest.mark.asyncio
    async def test_period_claimed_by_another_run_is_not_paid_twice(self, bank, alice_account):
        allowance = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.DAILY, utc(2024, 1, 1)
        )
        # Another worker claims the period after this run listed it
        stale = await bank.storage.list_due_allowances(utc(2024, 1, 2))
        await bank.storage.advance_allowance(
            allowance.id, allowance.next_due_date, utc(2024, 1, 3), utc(2024, 1, 2)
        )

        paid = await bank.allowances._process_one(stale[0], utc(2024, 1, 2))

        assert paid is False
        assert (await bank.storage.get_account(alice_account.id)).balance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, bank, alice_account, storage, monkeypatch):
        broken = await bank.allowances.create_allowance(
            "parent-1", "bob", Decimal("5"), AllowanceFrequency.DAILY, utc(2024, 1, 1)
        )
        healthy = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.DAILY, utc(2024, 1, 1)
        )

        real_find = storage.find_primary_account

        async def find_primary_account(child_id):
            if child_id == "bob":
                raise RuntimeError("database hiccup")
            return await real_find(child_id)

        monkeypatch.setattr(storage, "find_primary_account", find_primary_account)

        report = await bank.allowances.process_due(utc(2024, 1, 2))

        assert report.failed == [broken.id]
        assert report.processed == [healthy.id]
        assert (await bank.storage.get_account(alice_account.id)).balance == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_uses_clock_when_no_time_given(self, bank, alice_account, clock):
        await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.DAILY, clock.now()
        )
        clock.advance(days=1)

        report = await bank.allowances.process_due()

        assert len(report.processed) == 1
        assert report.run_at == clock.now()


class TestEdgeCases:

    @pytest.mark.asyncio
    async def test_update_unknown(self, bank):
        with pytest.raises(NotFoundError):
            await bank.allowances.update_allowance("parent-1", uuid4(), AllowanceUpdate(is_active=False))

    @pytest.mark.asyncio
    async def test_next_due_stays_after_start_for_long_runs(self, bank, alice_account):
        allowance = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("1"), AllowanceFrequency.MONTHLY, utc(2024, 1, 31)
        )
        now = utc(2024, 1, 31)
        previous = allowance.next_due_date
        for _ in range(3):
            now += timedelta(days=31)
            await bank.allowances.process_due(now)
            current = (await bank.storage.get_allowance(allowance.id)).next_due_date
            assert current > previous >= allowance.start_date
            previous = current

    @pytest.mark.asyncio
    async def test_naive_start_date_is_taken_as_utc(self, bank, alice_account, bob_account):
        aware = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.DAILY, utc(2023, 12, 1)
        )
        naive = await bank.allowances.create_allowance(
            "parent-1", "bob", Decimal("3"), AllowanceFrequency.DAILY, datetime(2023, 12, 1)
        )
        assert naive.start_date == utc(2023, 12, 1)
        assert naive.next_due_date == utc(2023, 12, 2)

        report = await bank.allowances.process_due()

        assert sorted(report.processed, key=str) == sorted([aware.id, naive.id], key=str)
        assert report.failed == []
        assert (await bank.storage.get_account(alice_account.id)).balance == Decimal("5.00")
        assert (await bank.storage.get_account(bob_account.id)).balance == Decimal("3.00")

    @pytest.mark.asyncio
    async def test_naive_process_time_is_taken_as_utc(self, bank, alice_account):
        allowance = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.DAILY, utc(2023, 12, 1)
        )
        report = await bank.allowances.process_due(datetime(2023, 12, 2))
        assert report.processed == [allowance.id]

    @pytest.mark.asyncio
    async def test_naive_end_date_before_start_rejected(self, bank):
        allowance = await bank.allowances.create_allowance(
            "parent-1", "alice", Decimal("5"), AllowanceFrequency.DAILY, utc(2023, 12, 1)
        )
        with pytest.raises(ValidationFailure):
            await bank.allowances.update_allowance(
                "parent-1", allowance.id, AllowanceUpdate(end_date=datetime(2023, 11, 1))
            )
