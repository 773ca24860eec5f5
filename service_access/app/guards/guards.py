"""
Guard entrypoints for protected operations.
"""

import asyncio
from dataclasses import dataclass
from contextlib import nullcontext
from typing import Awaitable, Iterable, Optional, Tuple, TypeVar

from shared.errors import ForbiddenError, StoreUnavailableError, UnauthorizedError
from shared.logging import get_correlation_id, get_logger, set_principal_context
from shared.metrics import MetricsCollector
from ..audit.sinks import AuditContext
from ..persistence.base import EntitlementStore
from ..policy.evaluator import PolicyEvaluator
from ..policy.models import (
    AccessDecision, CapabilityRequirement, ReasonCode, ResourcePolicy, TierRequirement
)
from ..tiers.models import ScopedEntitlements, Tier, album_scope

T = TypeVar("T")


@dataclass
class ResourceAccess:
    """Outcome of a resource guard."""
    tier: Tier
    allowed: bool
    reason_if_denied: Optional[ReasonCode]
    decision: AccessDecision
    member_id: Optional[str] = None


class AccessGuard:
    """Single-shot guards over the entitlement store and the evaluator.

    Every call fetches the member and active grants afresh; nothing is cached
    between calls, so a revocation applies to the next request. Store
    failures and timeouts raise StoreUnavailableError, which callers handle
    as UnauthorizedError. Denials are never retried.
    """

    def __init__(
        self,
        store: EntitlementStore,
        evaluator: PolicyEvaluator,
        metrics: Optional[MetricsCollector] = None,
        store_timeout: float = 2.0,
        expose_tier_hint: bool = True,
    ):
        self.store = store
        self.evaluator = evaluator
        self.metrics = metrics
        self.store_timeout = store_timeout
        self.expose_tier_hint = expose_tier_hint
        self.logger = get_logger("access.guard")

    async def require_capability(
        self,
        principal: Optional[str],
        required: Iterable[str],
        operation: str = "admin",
        resource: Optional[str] = None,
        scope_id: Optional[str] = None,
    ) -> str:
        """Return the member id if the principal holds every required capability.

        Only grants that apply within ``scope_id`` count; without one the
        check is catalog-wide, so an album-scoped grant never passes it.
        Raises UnauthorizedError when no member resolves, ForbiddenError when
        a capability is missing.
        """
        requirement = CapabilityRequirement(required=frozenset(required))
        with self._timed("capability"):
            member_id = await self._require_member(principal, requirement, operation, resource)
            entitlements = await self._lookup(
                "list_active_entitlements",
                self.store.list_active_entitlements(member_id)
            )

            decision = self.evaluator.evaluate_capability(
                entitlements, requirement.required,
                self._context(operation, principal, member_id, resource),
                scope_id=scope_id
            )

        if not decision.allowed:
            self.logger.warning(
                "Capability denied",
                operation=operation,
                member_id=member_id,
                reason=decision.reason.value
            )
            raise ForbiddenError()

        return member_id

    async def require_tier(
        self,
        principal: Optional[str],
        min_tier,
        operation: str = "tier_gate",
        resource: Optional[str] = None,
        scope_id: Optional[str] = None,
    ) -> str:
        """Return the member id if the principal's tier within ``scope_id`` meets ``min_tier``."""
        requirement = TierRequirement(min_tier=min_tier)
        with self._timed("tier"):
            member_id = await self._require_member(principal, requirement, operation, resource)
            entitlements = await self._lookup(
                "list_active_entitlements",
                self.store.list_active_entitlements(member_id)
            )

            decision = self.evaluator.evaluate_tier(
                entitlements, min_tier,
                self._context(operation, principal, member_id, resource),
                scope_id=scope_id
            )

        if not decision.allowed:
            self.logger.warning(
                "Tier requirement not met",
                operation=operation,
                member_id=member_id,
                reason=decision.reason.value,
                tier=decision.evaluated_tier.value
            )
            raise ForbiddenError(details=self._forbidden_details(decision))

        return member_id

    async def resolve_resource_access(
        self,
        principal: Optional[str],
        policy: ResourcePolicy,
        operation: str = "resource_access",
        resource: Optional[str] = None,
    ) -> ResourceAccess:
        """Decide access to a resource for a possibly anonymous caller.

        ``resource`` is the album id; grants scoped to another album do not
        apply. Anonymous callers and principals without a member evaluate as
        tier none. For the latter a denial is reported as NO_PRINCIPAL.
        """
        scope_id = album_scope(resource) if resource else None
        with self._timed("resource"):
            member_id, entitlements = await self.load_entitlements(principal)
            decision = self.evaluator.evaluate_resource(
                entitlements, policy,
                self._context(operation, principal, member_id, resource),
                member_resolved=not principal or member_id is not None,
                scope_id=scope_id,
            )

        return ResourceAccess(
            tier=decision.evaluated_tier,
            allowed=decision.allowed,
            reason_if_denied=None if decision.allowed else decision.reason,
            decision=decision,
            member_id=member_id,
        )

    async def load_entitlements(
        self, principal: Optional[str]
    ) -> Tuple[Optional[str], ScopedEntitlements]:
        """Member id and active grants for a principal; (None, empty) when anonymous."""
        if not principal:
            return None, ScopedEntitlements()

        member_id = await self._lookup("get_member_id", self.store.get_member_id(principal))
        set_principal_context(principal, member_id)
        if member_id is None:
            return None, ScopedEntitlements()

        entitlements = await self._lookup(
            "list_active_entitlements",
            self.store.list_active_entitlements(member_id)
        )
        return member_id, ScopedEntitlements.of(entitlements)

    async def _require_member(self, principal, requirement, operation, resource) -> str:
        if not principal:
            self.evaluator.deny_no_principal(
                requirement, self._context(operation, principal, None, resource)
            )
            raise UnauthorizedError()

        member_id = await self._lookup("get_member_id", self.store.get_member_id(principal))
        set_principal_context(principal, member_id)
        if member_id is None:
            self.logger.info("No member for principal", operation=operation)
            self.evaluator.deny_no_principal(
                requirement, self._context(operation, principal, None, resource)
            )
            raise UnauthorizedError()

        return member_id

    async def _lookup(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Run one store round-trip under the timeout, failing closed."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.store_timeout)
        except StoreUnavailableError as e:
            self._store_failed(e.operation)
            raise
        except asyncio.TimeoutError:
            self._store_failed(operation, "timeout")
            raise StoreUnavailableError(operation, "Entitlement store timed out")
        except Exception as e:
            self._store_failed(operation, type(e).__name__)
            raise StoreUnavailableError(operation, details={"error": type(e).__name__}) from e

    def _store_failed(self, operation: str, cause: str = "error"):
        self.logger.error(
            "Entitlement store unavailable, failing closed",
            code=ReasonCode.STORE_UNAVAILABLE.value,
            operation=operation,
            cause=cause
        )
        if self.metrics:
            self.metrics.increment_counter("access_store_failures_total", operation=operation)
            self.metrics.record_decision("store", False, ReasonCode.STORE_UNAVAILABLE.value)

    def _forbidden_details(self, decision: AccessDecision) -> dict:
        if self.expose_tier_hint and decision.required_tier is not None:
            return {"required_tier": decision.required_tier.value}
        return {}

    def _context(self, operation, principal, member_id, resource) -> AuditContext:
        return AuditContext(
            operation=operation,
            principal=principal,
            member_id=member_id,
            resource=resource,
            correlation_id=get_correlation_id(),
        )

    def _timed(self, guard: str):
        if self.metrics:
            return self.metrics.time_operation("access_decision_duration_seconds", guard=guard)
        return nullcontext()
