"""
Access service for the Membership Access Layer.
"""

from typing import Optional

from fastapi import Header, Query

from shared.base_service import BaseService
from shared.config import AccessConfig, get_config
from shared.errors import (
    ForbiddenError, ResourceNotFoundError, UnauthorizedError
)

from .admin.audience import AudienceCounter
from .admin.entitlements import EntitlementAdmin
from .admin.models import (
    AudienceResponse, EntitlementGrantResponse, EntitlementListResponse,
    GrantRequest, GrantResponse, RevokeRequest, RevokeResponse
)
from .audit.dispatcher import AuditDispatcher
from .audit.sinks import LoggingAuditSink, StoreAuditSink
from .guards.guards import AccessGuard, ResourceAccess
from .persistence.base import EntitlementStore
from .persistence.memory import InMemoryEntitlementStore
from .policy.evaluator import PolicyEvaluator
from .policy.models import AccessCheckRequest, AccessCheckResponse, ReasonCode
from .tiers.models import Capability, ScopedEntitlements
from .tiers.resolver import KeyRegistry, TierResolver

PRINCIPAL_HEADER = "X-Principal-Id"
ADMIN = frozenset({Capability.ADMIN.value})


class AccessService(BaseService):
    """Access service implementation."""

    def __init__(self, config: Optional[AccessConfig] = None, store: Optional[EntitlementStore] = None):
        super().__init__("access", 8013, config=config or get_config("access", 8013))

        self.registry = KeyRegistry()
        self._register_extra_weights()

        self.store = store or self._create_store()
        self.audit = self._create_audit()
        self.evaluator = PolicyEvaluator(
            resolver=TierResolver(self.registry),
            audit=self.audit,
            metrics=self.metrics
        )
        self.guard = AccessGuard(
            self.store,
            self.evaluator,
            metrics=self.metrics,
            store_timeout=self.config.store_timeout_seconds,
            expose_tier_hint=self.config.expose_tier_hint
        )
        self.entitlements = EntitlementAdmin(self.store, self.registry)
        self.audience = AudienceCounter(self.store, self.evaluator)

        self._setup_access_routes()

    def _register_extra_weights(self):
        """Apply ACCESS_EXTRA_TIER_WEIGHTS.

        A bad entry is logged and skipped; the key then keeps its built-in
        weight, or carries no tier if it has none.
        """
        for key, tier in self.config.extra_tier_weights.items():
            try:
                self.registry.register(key, tier)
            except ValueError as e:
                self.logger.error(
                    "Invalid ACCESS_EXTRA_TIER_WEIGHTS entry, skipping",
                    entitlement_key=key,
                    tier=tier,
                    error=str(e)
                )
                self.metrics.record_error("CONFIG_INVALID")

    def _create_store(self) -> EntitlementStore:
        if self.config.store_backend == "memory":
            self.logger.warning("Using in-memory entitlement store")
            return InMemoryEntitlementStore()

        from .persistence.postgres import PostgreSQLEntitlementStore
        return PostgreSQLEntitlementStore(
            self.config.postgres_dsn,
            min_size=self.config.postgres_min_pool_size,
            max_size=self.config.postgres_max_pool_size,
            create_schema=self.config.env == "local"
        )

    def _create_audit(self) -> Optional[AuditDispatcher]:
        if self.config.audit_sink == "none":
            return None
        if self.config.audit_sink == "store":
            return AuditDispatcher(StoreAuditSink(self.store), metrics=self.metrics)
        return AuditDispatcher(LoggingAuditSink(), metrics=self.metrics)

    def _raise_for_denial(self, access: ResourceAccess):
        """Translate a resource denial into the HTTP error taxonomy."""
        decision = access.decision
        reason = access.reason_if_denied

        if reason in (ReasonCode.RESOURCE_HIDDEN, ReasonCode.POLICY_MISCONFIGURED):
            # Indistinguishable from a missing resource
            raise ResourceNotFoundError()

        if reason is ReasonCode.NO_PRINCIPAL:
            raise UnauthorizedError()

        details = {}
        if reason is ReasonCode.EMBARGOED and decision.release_at:
            details["release_at"] = decision.release_at.isoformat()
        if self.config.expose_tier_hint and decision.required_tier is not None:
            details["required_tier"] = decision.required_tier.value
        raise ForbiddenError(details=details)

    def _setup_access_routes(self):
        """Set up access-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "access",
                "message": "Membership Access Layer - Access Service",
                "version": "1.0.0",
                "capabilities": ["tier_resolution", "policy_evaluation", "audit"]
            }

        @self.app.get("/access/me")
        async def who_am_i(principal: Optional[str] = Header(None, alias=PRINCIPAL_HEADER)):
            """Catalog tier and active entitlements of the caller."""
            member_id, entitlements = await self.guard.load_entitlements(principal)
            keys = entitlements.for_scope(None)
            return {
                "authenticated": bool(principal),
                "member_id": member_id,
                "tier": self.evaluator.resolver.resolve(keys).value,
                "entitlements": sorted(keys),
                "scoped_entitlements": [
                    {"key": key, "scope_id": scope_id} for key, scope_id in entitlements.scoped()
                ],
            }

        @self.app.post("/access/check", response_model=AccessCheckResponse)
        async def check_access(
            request: AccessCheckRequest,
            principal: Optional[str] = Header(None, alias=PRINCIPAL_HEADER)
        ):
            """Check whether the caller may load a resource."""
            access = await self.guard.resolve_resource_access(
                principal,
                request.policy.to_policy(),
                operation="access_check",
                resource=request.resource_id
            )
            if not access.allowed:
                self._raise_for_denial(access)

            return AccessCheckResponse(
                allowed=True,
                tier=access.tier,
                resource_id=request.resource_id,
                required_tier=access.decision.required_tier,
                release_at=access.decision.release_at
            )

        @self.app.get("/admin/entitlements/{member_id}", response_model=EntitlementListResponse)
        async def list_entitlements(
            member_id: str,
            principal: Optional[str] = Header(None, alias=PRINCIPAL_HEADER)
        ):
            """List a member's active grants."""
            await self.guard.require_capability(principal, ADMIN, operation="admin_entitlements_list")
            grants = await self.entitlements.list_current(member_id)
            return EntitlementListResponse(
                member_id=member_id,
                tier=self.evaluator.resolver.resolve(
                    ScopedEntitlements.of((g.entitlement_key, g.scope_id) for g in grants).for_scope(None)
                ).value,
                entitlements=[
                    EntitlementGrantResponse(
                        entitlement_key=g.entitlement_key,
                        scope_id=g.scope_id,
                        granted_at=g.granted_at,
                        expires_at=g.expires_at,
                        granted_by=g.granted_by,
                        grant_reason=g.grant_reason
                    )
                    for g in grants
                ]
            )

        @self.app.post("/admin/entitlements/grant", response_model=GrantResponse)
        async def grant_entitlement(
            request: GrantRequest,
            principal: Optional[str] = Header(None, alias=PRINCIPAL_HEADER)
        ):
            """Grant an entitlement to a member."""
            admin_id = await self.guard.require_capability(
                principal, ADMIN, operation="admin_entitlements_grant", resource=request.member_id
            )
            inserted = await self.entitlements.grant(
                request.member_id,
                request.key,
                scope_id=request.scope_id,
                expires_at=request.expires_at,
                granted_by=f"admin:{admin_id}",
                reason=request.reason
            )
            return GrantResponse(inserted=inserted)

        @self.app.post("/admin/entitlements/revoke", response_model=RevokeResponse)
        async def revoke_entitlement(
            request: RevokeRequest,
            principal: Optional[str] = Header(None, alias=PRINCIPAL_HEADER)
        ):
            """Revoke an entitlement from a member."""
            admin_id = await self.guard.require_capability(
                principal, ADMIN, operation="admin_entitlements_revoke", resource=request.member_id
            )
            revoked = await self.entitlements.revoke(
                request.member_id,
                request.key,
                scope_id=request.scope_id,
                revoked_by=f"admin:{admin_id}",
                reason=request.reason
            )
            return RevokeResponse(revoked=revoked)

        @self.app.get("/admin/campaigns/audience", response_model=AudienceResponse)
        async def campaign_audience(
            min_tier: Optional[str] = Query(None, description="Tier floor, omit for everyone"),
            principal: Optional[str] = Header(None, alias=PRINCIPAL_HEADER)
        ):
            """Size a campaign audience by tier floor."""
            await self.guard.require_capability(principal, ADMIN, operation="admin_campaign_audience")
            count = await self.audience.count(min_tier)
            return AudienceResponse(
                min_tier=count.min_tier.value if count.min_tier else None,
                total=count.total,
                eligible=count.eligible,
                by_tier=count.by_tier
            )

        @self.app.get("/admin/tiers")
        async def tier_weights(principal: Optional[str] = Header(None, alias=PRINCIPAL_HEADER)):
            """Registered entitlement keys and their tier weights."""
            await self.guard.require_capability(principal, ADMIN, operation="admin_tiers")
            return {"weights": self.registry.as_dict()}

    async def _check_dependencies(self):
        """Check access service dependencies."""
        try:
            return {"store": "ok" if await self.store.health_check() else "error"}
        except Exception:
            return {"store": "error"}

    async def start(self):
        """Start access service components."""
        await self.store.start()
        self.logger.info("Access service started", registered_keys=len(self.registry.keys()))

    async def stop(self):
        """Stop access service components."""
        if self.audit is not None:
            await self.audit.drain(timeout=5.0)
        await self.store.stop()
        self.logger.info("Access service stopped")


def create_app(config: Optional[AccessConfig] = None, store: Optional[EntitlementStore] = None):
    """Create access service application."""
    service = AccessService(config=config, store=store)
    return service.app


if __name__ == "__main__":
    service = AccessService()
    service.run()
