"""
Campaign audience sizing by membership tier.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from shared.errors import ValidationError
from shared.logging import get_logger
from ..persistence.base import EntitlementStore
from ..policy.evaluator import PolicyEvaluator
from ..policy.models import ReasonCode
from ..tiers.models import Tier, parse_tier


@dataclass
class AudienceCount:
    """How many sendable members clear a tier floor."""
    min_tier: Optional[Tier]
    total: int
    eligible: int
    by_tier: Dict[str, int] = field(default_factory=dict)


class AudienceCounter:
    """Sizes campaign audiences with the same floor rule as content access."""

    def __init__(self, store: EntitlementStore, evaluator: PolicyEvaluator):
        self.store = store
        self.evaluator = evaluator
        self.logger = get_logger("access.audience")

    async def count(self, min_tier=None) -> AudienceCount:
        try:
            floor = parse_tier(min_tier)
        except ValueError:
            raise ValidationError("Unknown tier", details={"min_tier": str(min_tier)})

        audience = await self.store.list_marketing_audience_keys()

        by_tier = {tier.value: 0 for tier in Tier}
        eligible = 0
        for keys in audience.values():
            # Sizing is not an access attempt, so no decision is recorded
            tier = self.evaluator.resolver.resolve(keys)
            reason, _ = self.evaluator.check_floor(tier, floor)
            by_tier[tier.value] += 1
            if reason is ReasonCode.OK:
                eligible += 1

        self.logger.info(
            "Audience counted",
            min_tier=floor.value if floor else None,
            total=len(audience),
            eligible=eligible
        )
        return AudienceCount(min_tier=floor, total=len(audience), eligible=eligible, by_tier=by_tier)
