"""
Policy evaluation for the Access Service.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..tiers.models import Capability, ScopedEntitlements, Tier, parse_tier, tier_rank
from ..tiers.resolver import TierResolver
from ..audit.dispatcher import AuditDispatcher
from ..audit.sinks import AuditContext
from .models import (
    AccessDecision, CapabilityRequirement, ReasonCode, Requirement,
    ResourcePolicy, TierRequirement
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # CMS timestamps without an offset are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PolicyEvaluator:
    """Decides whether a member's active entitlements satisfy a requirement.

    Capability requirements are checked by set membership. Tier floors and
    resource policies go through the TierResolver and a single floor check.
    The evaluator holds no per-decision state, so one instance serves
    concurrent requests.

    Entitlements are either bare keys, treated as unscoped grants, or a
    ScopedEntitlements. Only grants that apply within ``scope_id`` are
    considered; checks without a scope use the catalog scope.
    """

    def __init__(
        self,
        resolver: Optional[TierResolver] = None,
        audit: Optional[AuditDispatcher] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.resolver = resolver or TierResolver()
        self.audit = audit
        self.metrics = metrics
        self.clock = clock or _utcnow
        self.logger = get_logger("access.policy_evaluator")

    def evaluate(
        self,
        entitlements,
        requirement: Requirement,
        context: Optional[AuditContext] = None,
        scope_id: Optional[str] = None,
    ) -> AccessDecision:
        """Evaluate any requirement shape."""
        if isinstance(requirement, CapabilityRequirement):
            return self.evaluate_capability(entitlements, requirement.required, context, scope_id)
        if isinstance(requirement, TierRequirement):
            return self.evaluate_tier(entitlements, requirement.min_tier, context, scope_id)
        if isinstance(requirement, ResourcePolicy):
            return self.evaluate_resource(entitlements, requirement, context, scope_id=scope_id)
        raise TypeError(f"Unsupported requirement type: {type(requirement).__name__}")

    def evaluate_capability(
        self,
        entitlements,
        required: Iterable[str],
        context: Optional[AuditContext] = None,
        scope_id: Optional[str] = None,
    ) -> AccessDecision:
        """Allowed iff every required capability key is held within the scope."""
        start_time = time.time()
        keys = ScopedEntitlements.of(entitlements).for_scope(scope_id)
        requirement = CapabilityRequirement(required=frozenset(required or ()))

        missing = requirement.required - keys
        decision = AccessDecision(
            allowed=not missing,
            reason=ReasonCode.MISSING_CAPABILITY if missing else ReasonCode.OK,
            evaluated_tier=self.resolver.resolve(keys),
            requirement=requirement,
            scope_id=scope_id,
        )
        return self._finish(decision, start_time, context)

    def evaluate_tier(
        self,
        entitlements,
        min_tier,
        context: Optional[AuditContext] = None,
        scope_id: Optional[str] = None,
    ) -> AccessDecision:
        """Tier-floor evaluation without visibility or embargo gates."""
        start_time = time.time()
        requirement = TierRequirement(min_tier=min_tier)
        tier = self.resolver.resolve(ScopedEntitlements.of(entitlements).for_scope(scope_id))

        reason, floor = self.check_floor(tier, min_tier)
        decision = AccessDecision(
            allowed=reason is ReasonCode.OK,
            reason=reason,
            evaluated_tier=tier,
            requirement=requirement,
            required_tier=floor,
            scope_id=scope_id,
        )
        return self._finish(decision, start_time, context)

    def evaluate_resource(
        self,
        entitlements,
        policy: ResourcePolicy,
        context: Optional[AuditContext] = None,
        member_resolved: bool = True,
        scope_id: Optional[str] = None,
    ) -> AccessDecision:
        """Full resource evaluation.

        Order: hidden, policy validation, embargo, tier floor. When the caller
        presented a principal that maps to no member, a failed floor is
        reported as NO_PRINCIPAL instead of TIER_TOO_LOW. Grants scoped to
        another album count for neither the tier nor the embargo bypass.
        """
        start_time = time.time()
        keys = ScopedEntitlements.of(entitlements).for_scope(scope_id)
        tier = self.resolver.resolve(keys)

        def decide(reason: ReasonCode, floor: Optional[Tier] = None) -> AccessDecision:
            return self._finish(AccessDecision(
                allowed=reason is ReasonCode.OK,
                reason=reason,
                evaluated_tier=tier,
                requirement=policy,
                required_tier=floor,
                release_at=policy.release_at,
                scope_id=scope_id,
            ), start_time, context)

        # Publication state wins over any entitlement, partner included
        if not policy.public_page_visible:
            return decide(ReasonCode.RESOURCE_HIDDEN)

        try:
            floor = parse_tier(policy.min_tier_to_load)
            early_tiers = self._parse_early_access(policy.early_access_tiers)
        except ValueError:
            return decide(self._misconfigured(policy))

        if self._is_embargoed(policy) and not self._bypasses_embargo(keys, tier, policy, early_tiers):
            return decide(ReasonCode.EMBARGOED, floor)

        reason, floor = self.check_floor(tier, floor)
        if reason is ReasonCode.TIER_TOO_LOW and not member_resolved:
            reason = ReasonCode.NO_PRINCIPAL
        return decide(reason, floor)

    def deny_no_principal(
        self,
        requirement: Requirement,
        context: Optional[AuditContext] = None,
    ) -> AccessDecision:
        """Decision for a caller that resolves to no member."""
        decision = AccessDecision(
            allowed=False,
            reason=ReasonCode.NO_PRINCIPAL,
            evaluated_tier=Tier.NONE,
            requirement=requirement,
        )
        return self._finish(decision, time.time(), context)

    def check_floor(self, tier: Tier, min_tier) -> Tuple[ReasonCode, Optional[Tier]]:
        """Shared tier-floor primitive."""
        try:
            floor = parse_tier(min_tier)
        except ValueError:
            return self._misconfigured(TierRequirement(min_tier=min_tier)), None

        if floor is None:
            return ReasonCode.OK, None

        # Partner is a standing override, kept separate from the ordinal check
        if tier is Tier.PARTNER:
            return ReasonCode.OK, floor

        if tier_rank(tier) >= tier_rank(floor):
            return ReasonCode.OK, floor

        return ReasonCode.TIER_TOO_LOW, floor

    def _is_embargoed(self, policy: ResourcePolicy) -> bool:
        if policy.release_at is None:
            return False
        return _as_aware(self.clock()) < _as_aware(policy.release_at)

    def _bypasses_embargo(
        self, keys: frozenset, tier: Tier, policy: ResourcePolicy, early_tiers: List[Tier]
    ) -> bool:
        # keys are already limited to grants that apply to this resource
        if Capability.ALBUM_SHARE_GRANT.value in keys:
            return True
        return policy.early_access_enabled and tier in early_tiers

    @staticmethod
    def _parse_early_access(values: Iterable[str]) -> List[Tier]:
        tiers = []
        for value in values or ():
            tier = parse_tier(value)
            if tier is not None:
                tiers.append(tier)
        return tiers

    def _misconfigured(self, requirement: Requirement) -> ReasonCode:
        self.logger.error(
            "Resource policy declares an unknown tier, denying",
            requirement=requirement.describe()
        )
        if self.metrics:
            self.metrics.record_error("POLICY_MISCONFIGURED")
        return ReasonCode.POLICY_MISCONFIGURED

    def _finish(
        self,
        decision: AccessDecision,
        start_time: float,
        context: Optional[AuditContext],
    ) -> AccessDecision:
        decision.evaluation_time_ms = (time.time() - start_time) * 1000

        self.logger.debug(
            "Policy evaluation result",
            mode=decision.mode,
            allowed=decision.allowed,
            reason=decision.reason.value,
            tier=decision.evaluated_tier.value
        )
        if self.metrics:
            self.metrics.record_decision(decision.mode, decision.allowed, decision.reason.value)
        if self.audit is not None and context is not None:
            self.audit.submit(decision, context)

        return decision
