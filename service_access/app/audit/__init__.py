"""
Access decision auditing.

Sinks write records; the dispatcher keeps them off the decision path.
"""

from .sinks import (
    AuditContext,
    AuditSink,
    NullAuditSink,
    LoggingAuditSink,
    StoreAuditSink,
    build_audit_payload,
)
from .dispatcher import AuditDispatcher

__all__ = [
    "AuditContext",
    "AuditSink",
    "NullAuditSink",
    "LoggingAuditSink",
    "StoreAuditSink",
    "AuditDispatcher",
    "build_audit_payload",
]
