"""
Audit Package.

Exports AuditLogger and EventBus.
"""

from .audit_logger import AuditLogger
from .event_bus import EventBus

__all__ = ["AuditLogger", "EventBus"]
