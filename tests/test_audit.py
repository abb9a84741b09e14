"""
Tests for the event bus and the audit logger.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from familybank.audit import AuditLogger, EventBus
from familybank.models import Account, DomainEventBuilder, DomainEventType, Transaction, TransactionType


def _account_event():
    return DomainEventBuilder.account_created(Account(child_id="alice", name="Spending"), "parent-1")


class TestEventBus:

    @pytest.mark.asyncio
    async def test_handlers_run_in_order(self):
        bus = EventBus()
        seen = []

        async def first(event):
            seen.append(("first", event.event_type))

        async def second(event):
            seen.append(("second", event.event_type))

        bus.subscribe(first)
        bus.subscribe(second)
        await bus.publish(_account_event())

        assert seen == [
            ("first", DomainEventType.ACCOUNT_CREATED),
            ("second", DomainEventType.ACCOUNT_CREATED),
        ]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = EventBus()
        seen = []

        async def broken(event):
            raise RuntimeError("handler exploded")

        async def healthy(event):
            seen.append(event.event_id)

        bus.subscribe(broken)
        bus.subscribe(healthy)
        event = _account_event()
        await bus.publish(event)

        assert seen == [event.event_id]

    @pytest.mark.asyncio
    async def test_type_filter_and_unsubscribe(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.event_type)

        bus.subscribe(handler, [DomainEventType.TRANSACTION_FAILED])
        tx = Transaction(type=TransactionType.PURCHASE, amount=Decimal("1"), from_account_id=uuid4())
        await bus.publish_all([_account_event(), DomainEventBuilder.transaction_failed(tx, "boom")])
        assert seen == [DomainEventType.TRANSACTION_FAILED]

        bus.unsubscribe(handler)
        await bus.publish(DomainEventBuilder.transaction_failed(tx, "boom"))
        assert len(seen) == 1


class TestAuditLogger:

    @pytest.mark.asyncio
    async def test_persists_to_storage(self, storage):
        logger = AuditLogger(storage)
        event = _account_event()

        assert await logger.log(event)
        assert await storage.list_events(entity_id=event.entity_id) == [event]

    @pytest.mark.asyncio
    async def test_without_storage(self):
        assert await AuditLogger().log(_account_event())

    @pytest.mark.asyncio
    async def test_storage_failure_is_reported_not_raised(self, storage, monkeypatch):
        async def broken_append(event):
            raise ConnectionError("event log unavailable")

        monkeypatch.setattr(storage, "append_event", broken_append)
        assert not await AuditLogger(storage).log(_account_event())
