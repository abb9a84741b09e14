"""
Notification backends.

Notifications are fire-and-forget from the core's point of view: the
dispatcher calls `send()` and a failure never reaches the operation that
caused it.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field

from familybank.exceptions import ForbiddenError, NotFoundError
from familybank.models.events import NotificationKind
from familybank.models.finance import utcnow


class Notification(BaseModel):
    """A message for one user."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    kind: NotificationKind
    title: str
    body: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class Notifier(ABC):
    """Delivers notifications to users."""

    @abstractmethod
    async def send(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        body: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes each notification to the structured log and nothing else."""

    def __init__(self):
        self._logger = structlog.get_logger(__name__)

    async def send(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        body: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self._logger.info(
            "notification_sent",
            user_id=user_id,
            kind=kind.value,
            title=title,
            body=body,
            metadata=metadata or {},
        )


class InMemoryNotifier(Notifier):
    """
    Keeps an inbox per user.

    Newest notifications come first. Reading is restricted to the owner.
    """

    def __init__(self):
        self._inbox: dict[str, list[Notification]] = {}

    async def send(
        self,
        user_id: str,
        kind: NotificationKind,
        title: str,
        body: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        notification = Notification(
            user_id=user_id,
            kind=kind,
            title=title,
            body=body,
            metadata=metadata or {},
        )
        self._inbox.setdefault(user_id, []).insert(0, notification)

    def list(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Notification]:
        return self._inbox.get(user_id, [])[offset:offset + limit]

    def unread_count(self, user_id: str) -> int:
        return sum(1 for n in self._inbox.get(user_id, []) if not n.is_read)

    def mark_read(self, user_id: str, notification_id: UUID) -> Notification:
        for inbox in self._inbox.values():
            for index, notification in enumerate(inbox):
                if notification.id != notification_id:
                    continue
                if notification.user_id != user_id:
                    raise ForbiddenError("Not authorized to update this notification")
                updated = notification.model_copy(update={"is_read": True, "read_at": utcnow()})
                inbox[index] = updated
                return updated
        raise NotFoundError(f"Notification not found: {notification_id}")

    def mark_all_read(self, user_id: str) -> int:
        """Returns how many notifications changed."""
        inbox = self._inbox.get(user_id, [])
        now = utcnow()
        count = 0
        for index, notification in enumerate(inbox):
            if not notification.is_read:
                inbox[index] = notification.model_copy(update={"is_read": True, "read_at": now})
                count += 1
        return count
