"""
Shared fixtures.

Every test gets a fresh in-memory store, a fixed clock and a small family:

    parent-1 -> alice, bob
    parent-2 -> carol
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from familybank.clock import FixedClock
from familybank.config import get_settings
from familybank.identity import StaticIdentityProvider
from familybank.models import TransactionType
from familybank.notifications import InMemoryNotifier
from familybank.orchestrator import build_family_bank
from familybank.storage import InMemoryFinanceStorage


START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Tests never pick up a real database or wait between retries."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("LEDGER_ATOMIC_SETTLEMENT", raising=False)
    monkeypatch.setenv("NOTIFICATIONS_RETRY_WAIT_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def identity():
    provider = StaticIdentityProvider()
    for child in ("alice", "bob", "carol"):
        provider.add_child(child)
    provider.add_parent("parent-1", ["alice", "bob"])
    provider.add_parent("parent-2", ["carol"])
    return provider


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def storage():
    return InMemoryFinanceStorage()


@pytest.fixture
def bank(storage, identity, notifier, clock):
    return build_family_bank(storage, identity, notifier=notifier, clock=clock)


@pytest_asyncio.fixture
async def alice_account(bank):
    return await bank.accounts.create_account("parent-1", "alice", "Alice Spending")


@pytest_asyncio.fixture
async def bob_account(bank, clock):
    clock.advance(seconds=1)
    return await bank.accounts.create_account("parent-1", "bob", "Bob Spending")


@pytest_asyncio.fixture
async def funded_alice(bank, alice_account):
    """Alice's account with $50 of allowance in it."""
    await bank.transactions.create(
        "parent-1",
        TransactionType.ALLOWANCE,
        Decimal("50.00"),
        to_account_id=alice_account.id,
    )
    return await bank.storage.get_account(alice_account.id)
