"""
Audit sinks for access decisions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from shared.logging import get_logger
from ..policy.models import AccessDecision

ACCESS_ALLOWED = "access_allowed"
ACCESS_DENIED = "access_denied"


@dataclass(frozen=True)
class AuditContext:
    """Who asked for what."""
    operation: str
    principal: Optional[str] = None
    member_id: Optional[str] = None
    resource: Optional[str] = None
    correlation_id: Optional[str] = None


def build_audit_payload(decision: AccessDecision, context: AuditContext) -> Dict[str, Any]:
    """Flatten a decision and its context into one event payload."""
    payload = decision.to_dict()
    payload.update({
        "operation": context.operation,
        "principal": context.principal,
        "resource": context.resource,
    })
    return payload


class AuditSink(ABC):
    """Destination for decision records. Implementations may raise; the
    dispatcher isolates failures from callers."""

    name = "sink"

    @abstractmethod
    async def record(self, decision: AccessDecision, context: AuditContext) -> None:
        """Record one decision."""


class NullAuditSink(AuditSink):
    """Discards records."""

    name = "none"

    async def record(self, decision: AccessDecision, context: AuditContext) -> None:
        return None


class LoggingAuditSink(AuditSink):
    """Emits each decision as a structured log event."""

    name = "log"

    def __init__(self):
        self.logger = get_logger("access.audit")

    async def record(self, decision: AccessDecision, context: AuditContext) -> None:
        self.logger.info(
            ACCESS_ALLOWED if decision.allowed else ACCESS_DENIED,
            member_id=context.member_id,
            correlation_id=context.correlation_id,
            **build_audit_payload(decision, context)
        )


class StoreAuditSink(AuditSink):
    """Mirrors decisions into the member event stream of the entitlement store."""

    name = "store"

    def __init__(self, store):
        self.store = store

    async def record(self, decision: AccessDecision, context: AuditContext) -> None:
        await self.store.log_member_event(
            member_id=context.member_id,
            event_type=ACCESS_ALLOWED if decision.allowed else ACCESS_DENIED,
            payload=build_audit_payload(decision, context),
            source="server",
            correlation_id=context.correlation_id,
        )
