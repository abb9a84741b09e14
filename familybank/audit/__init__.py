"""Audit logging and event distribution."""

from familybank.audit.bus import EventBus, EventHandler
from familybank.audit.logger import AuditLogger, configure_logging

__all__ = ["AuditLogger", "EventBus", "EventHandler", "configure_logging"]
