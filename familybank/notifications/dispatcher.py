"""
Notification Dispatcher

Turns domain events into user notifications.

DESIGN DECISION: Delivery is best effort. Each send is retried a bounded
number of times; if it still fails the failure is logged and dropped. The
money movement that produced the event has already happened and must not
be affected.
"""

from typing import Any, Optional

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from familybank.config import NotificationSettings, get_settings
from familybank.identity import IdentityProvider
from familybank.models.events import DomainEvent, DomainEventType, NotificationKind
from familybank.notifications.notifier import Notifier


def _transaction_message(event: DomainEvent) -> Optional[tuple[NotificationKind, str, str]]:
    amount = event.details.get("amount")
    if event.event_type == DomainEventType.TRANSACTION_CREATED:
        tx_type = str(event.details.get("type", "")).lower()
        return (
            NotificationKind.TRANSACTION_CREATED,
            "New Transaction",
            f"You have a new {tx_type} transaction of ${amount}",
        )
    if event.event_type == DomainEventType.TRANSACTION_APPROVED:
        return (
            NotificationKind.TRANSACTION_APPROVED,
            "Transaction Approved",
            f"Your transaction of ${amount} has been approved",
        )
    if event.event_type == DomainEventType.TRANSACTION_DECLINED:
        reason = event.details.get("reason")
        suffix = f": {reason}" if reason else ""
        return (
            NotificationKind.TRANSACTION_DECLINED,
            "Transaction Declined",
            f"Your transaction of ${amount} has been declined{suffix}",
        )
    return None


def build_message(event: DomainEvent) -> Optional[tuple[NotificationKind, str, str, dict[str, Any]]]:
    """
    The notification an event produces, as (kind, title, body, metadata).

    Returns None for events nobody is notified about.
    """
    if event.entity_type == "transaction":
        message = _transaction_message(event)
        if message:
            return (*message, {"transaction_id": str(event.entity_id)})
        return None

    if event.event_type == DomainEventType.SAVINGS_GOAL_REACHED:
        return (
            NotificationKind.SAVINGS_GOAL_REACHED,
            "Savings Goal Reached!",
            f"Congratulations! You've reached your savings goal: {event.details.get('name')}",
            {"goal_id": str(event.entity_id)},
        )

    return None


class NotificationDispatcher:
    """Event bus subscriber that delivers notifications."""

    def __init__(
        self,
        notifier: Notifier,
        identity: IdentityProvider,
        settings: Optional[NotificationSettings] = None,
    ):
        self._notifier = notifier
        self._identity = identity
        self._settings = settings or get_settings().notifications
        self._logger = structlog.get_logger(__name__)

    async def __call__(self, event: DomainEvent) -> None:
        await self.handle(event)

    async def handle(self, event: DomainEvent) -> int:
        """
        Deliver the notifications for one event.

        Returns the number of notifications delivered.
        """
        if not self._settings.enabled:
            return 0

        message = build_message(event)
        if message is None:
            return 0
        kind, title, body, metadata = message

        delivered = 0
        for child_id in event.recipients:
            user_id = await self._identity.user_id_for_child(child_id)
            if user_id is None:
                self._logger.warning(
                    "notification_recipient_unknown",
                    child_id=child_id,
                    event_id=str(event.event_id),
                )
                continue
            if await self._deliver(user_id, kind, title, body, metadata):
                delivered += 1
        return delivered

    async def _deliver(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        body: str,
        metadata: dict[str, Any],
    ) -> bool:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settings.retry_attempts),
                wait=wait_exponential(multiplier=self._settings.retry_wait_seconds, max=30),
                reraise=True,
            ):
                with attempt:
                    await self._notifier.send(user_id, kind, title, body, metadata)
        except Exception as e:
            self._logger.warning(
                "notification_delivery_failed",
                user_id=user_id,
                kind=kind.value,
                error=str(e),
            )
            return False
        return True
