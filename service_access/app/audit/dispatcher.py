"""
Fire-and-forget dispatch of audit records.
"""

import asyncio
from typing import Optional, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..policy.models import AccessDecision
from .sinks import AuditContext, AuditSink


class AuditDispatcher:
    """Schedules sink writes off the decision path.

    ``submit`` never blocks and never raises. Sink failures are logged and
    counted, nothing more.
    """

    def __init__(self, sink: AuditSink, metrics: Optional[MetricsCollector] = None):
        self.sink = sink
        self.metrics = metrics
        self.logger = get_logger("access.audit_dispatcher")
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, decision: AccessDecision, context: AuditContext) -> None:
        """Schedule a record on the running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning(
                "Audit record dropped, no running event loop",
                operation=context.operation,
                reason=decision.reason.value
            )
            return

        task = loop.create_task(self._record(decision, context))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record(self, decision: AccessDecision, context: AuditContext) -> None:
        try:
            await self.sink.record(decision, context)
        except asyncio.CancelledError:
            self.logger.warning("Audit record cancelled", operation=context.operation)
            raise
        except Exception as e:
            self.logger.warning(
                "Audit record failed",
                sink=self.sink.name,
                operation=context.operation,
                error=str(e)
            )
            if self.metrics:
                self.metrics.increment_counter("access_audit_failures_total", sink=self.sink.name)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding records, e.g. on shutdown."""
        if not self._pending:
            return
        done, not_done = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            self.logger.warning("Audit records abandoned on drain", count=len(not_done))
