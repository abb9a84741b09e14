"""
In-process event bus.

Core services publish DomainEvents here; subscribers (audit log,
notification dispatcher) react to them. Handlers run one after another in
subscription order. A handler that raises is logged and skipped; the
publisher never sees the error.
"""

from typing import Awaitable, Callable, Iterable, Optional

import structlog

from familybank.models.events import DomainEvent, DomainEventType


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    def __init__(self):
        self._subscribers: list[tuple[Optional[frozenset[DomainEventType]], EventHandler]] = []
        self._logger = structlog.get_logger(__name__)

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Optional[Iterable[DomainEventType]] = None,
    ) -> None:
        """Subscribe to the given event types, or to every event when None."""
        wanted = frozenset(event_types) if event_types is not None else None
        self._subscribers.append((wanted, handler))

    def unsubscribe(self, handler: EventHandler) -> None:
        self._subscribers = [(t, h) for t, h in self._subscribers if h is not handler]

    async def publish(self, event: DomainEvent) -> None:
        for wanted, handler in list(self._subscribers):
            if wanted is not None and event.event_type not in wanted:
                continue
            try:
                await handler(event)
            except Exception as e:
                self._logger.error(
                    "event_handler_failed",
                    handler=getattr(handler, "__qualname__", type(handler).__name__),
                    event_type=event.event_type.value,
                    event_id=str(event.event_id),
                    error=str(e),
                )

    async def publish_all(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            await self.publish(event)
