"""
Audit Logger

DESIGN DECISION: Every state change in the core is recorded twice:
1. As a structured log line (for operators)
2. In the store's append-only event log (for history and disputes)

The audit logger subscribes to the event bus. A failure to persist an
event is logged and never propagates into the operation that produced it.
"""

import logging
from typing import Optional

import structlog

from familybank.models.events import DomainEvent, DomainEventType
from familybank.storage import FinanceStorageInterface


# JSON lines through stdlib logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output through stdlib logging at `level`."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper()))


WARNING_EVENTS = frozenset({DomainEventType.TRANSACTION_FAILED})


class AuditLogger:
    """
    Event bus subscriber that records every domain event.

    Each event becomes a `domain_event` log line and, when a store is
    given, an entry in the store's event log.
    """

    def __init__(self, storage: Optional[FinanceStorageInterface] = None):
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def __call__(self, event: DomainEvent) -> None:
        await self.log(event)

    async def log(self, event: DomainEvent) -> bool:
        """False when the event could not be written to the event log."""
        fields = event.to_log_dict()
        emit = self._logger.warning if event.event_type in WARNING_EVENTS else self._logger.info
        emit("domain_event", **fields)

        if self._storage is None:
            return True

        try:
            return await self._storage.append_event(event)
        except Exception as e:
            self._logger.error(
                "audit_storage_failed",
                event_id=str(event.event_id),
                event_type=event.event_type.value,
                error=str(e),
            )
            return False
