"""
Tests for transaction listings.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio

from familybank.config import LedgerSettings
from familybank.exceptions import ForbiddenError, NotFoundError
from familybank.models import TransactionFilters, TransactionStatus, TransactionType
from familybank.queries import TransactionQueryExecutor


START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def history(bank, clock, alice_account, bob_account):
    """
    A small ledger history, one hour apart:

        allowance $50 -> alice
        allowance $20 -> bob
        transfer   $5  alice -> bob   (pending, created by alice)
        allowance $10 -> carol
    """
    carol_account = await bank.accounts.create_account("parent-2", "carol", "Carol Spending")

    clock.set(START + timedelta(hours=1))
    a = await bank.transactions.create(
        "parent-1", TransactionType.ALLOWANCE, Decimal("50"), to_account_id=alice_account.id
    )
    clock.set(START + timedelta(hours=2))
    b = await bank.transactions.create(
        "parent-1", TransactionType.ALLOWANCE, Decimal("20"), to_account_id=bob_account.id
    )
    clock.set(START + timedelta(hours=3))
    transfer = await bank.transactions.create(
        "alice",
        TransactionType.TRANSFER,
        Decimal("5"),
        from_account_id=alice_account.id,
        to_account_id=bob_account.id,
    )
    clock.set(START + timedelta(hours=4))
    c = await bank.transactions.create(
        "parent-2", TransactionType.ALLOWANCE, Decimal("10"), to_account_id=carol_account.id
    )
    return {"alice": a, "bob": b, "transfer": transfer, "carol": c}


def _ids(transactions):
    return [t.id for t in transactions]


class TestScoping:

    @pytest.mark.asyncio
    async def test_parent_sees_linked_children_newest_first(self, bank, history):
        listed = await bank.queries.list_transactions("parent-1")
        assert _ids(listed) == [history["transfer"].id, history["bob"].id, history["alice"].id]

    @pytest.mark.asyncio
    async def test_child_sees_own_accounts_only(self, bank, history):
        assert _ids(await bank.queries.list_transactions("alice")) == [
            history["transfer"].id,
            history["alice"].id,
        ]
        assert _ids(await bank.queries.list_transactions("carol")) == [history["carol"].id]

    @pytest.mark.asyncio
    async def test_transfer_visible_from_both_sides(self, bank, history):
        assert history["transfer"].id in _ids(await bank.queries.list_transactions("bob"))

    @pytest.mark.asyncio
    async def test_requester_without_accounts(self, bank, identity, history):
        identity.add_parent("parent-3")
        assert await bank.queries.list_transactions("parent-3") == []


class TestFilters:

    @pytest.mark.asyncio
    async def test_account_filter(self, bank, history, bob_account):
        listed = await bank.queries.list_transactions(
            "parent-1", TransactionFilters(account_id=bob_account.id)
        )
        assert _ids(listed) == [history["transfer"].id, history["bob"].id]

    @pytest.mark.asyncio
    async def test_account_filter_forbidden(self, bank, history, bob_account):
        with pytest.raises(ForbiddenError):
            await bank.queries.list_transactions("carol", TransactionFilters(account_id=bob_account.id))

    @pytest.mark.asyncio
    async def test_account_filter_unknown(self, bank, history):
        with pytest.raises(NotFoundError):
            await bank.queries.list_transactions("parent-1", TransactionFilters(account_id=uuid4()))

    @pytest.mark.asyncio
    async def test_type_and_status(self, bank, history):
        transfers = await bank.queries.list_transactions(
            "parent-1", TransactionFilters(type=TransactionType.TRANSFER)
        )
        pending = await bank.queries.list_transactions(
            "parent-1", TransactionFilters(status=TransactionStatus.PENDING)
        )
        completed = await bank.queries.list_transactions(
            "parent-1", TransactionFilters(status=TransactionStatus.COMPLETED)
        )
        assert _ids(transfers) == _ids(pending) == [history["transfer"].id]
        assert _ids(completed) == [history["bob"].id, history["alice"].id]

    @pytest.mark.asyncio
    async def test_date_range_is_inclusive(self, bank, history):
        listed = await bank.queries.list_transactions(
            "parent-1",
            TransactionFilters(
                start_date=START + timedelta(hours=2),
                end_date=START + timedelta(hours=3),
            ),
        )
        assert _ids(listed) == [history["transfer"].id, history["bob"].id]

    @pytest.mark.asyncio
    async def test_limit_and_offset(self, bank, history):
        first = await bank.queries.list_transactions("parent-1", TransactionFilters(limit=1))
        second = await bank.queries.list_transactions("parent-1", TransactionFilters(limit=1, offset=1))
        assert _ids(first) == [history["transfer"].id]
        assert _ids(second) == [history["bob"].id]


class TestPageSize:

    def test_defaults_and_caps(self, storage, identity):
        executor = TransactionQueryExecutor(storage, identity, LedgerSettings())
        assert executor.page_size(None) == 50
        assert executor.page_size(10) == 10
        assert executor.page_size(500) == 100

    @pytest.mark.asyncio
    async def test_cap_applies_to_listing(self, bank, storage, identity, history):
        executor = TransactionQueryExecutor(
            storage, identity, LedgerSettings(default_page_size=1, max_page_size=2)
        )
        assert len(await executor.list_transactions("parent-1")) == 1
        assert len(await executor.list_transactions("parent-1", TransactionFilters(limit=50))) == 2
