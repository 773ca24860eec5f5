"""
Policy data models for the Access Service.
"""

from typing import Dict, Any, Optional, List, FrozenSet, Union
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from ..tiers.models import Tier


class ReasonCode(str, Enum):
    """Why a decision came out the way it did."""
    OK = "OK"
    NO_PRINCIPAL = "NO_PRINCIPAL"
    MISSING_CAPABILITY = "MISSING_CAPABILITY"
    TIER_TOO_LOW = "TIER_TOO_LOW"
    RESOURCE_HIDDEN = "RESOURCE_HIDDEN"
    EMBARGOED = "EMBARGOED"
    POLICY_MISCONFIGURED = "POLICY_MISCONFIGURED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


@dataclass(frozen=True)
class CapabilityRequirement:
    """Global gate: every key in ``required`` must be held."""
    required: FrozenSet[str] = frozenset()

    kind = "global"

    def describe(self) -> Dict[str, Any]:
        return {"kind": self.kind, "required": sorted(self.required)}


@dataclass(frozen=True)
class TierRequirement:
    """Tier floor. ``min_tier`` stays as authored so bad values are detectable."""
    min_tier: Optional[Union[Tier, str]] = None

    kind = "resource"

    def describe(self) -> Dict[str, Any]:
        value = self.min_tier.value if isinstance(self.min_tier, Tier) else self.min_tier
        return {"kind": self.kind, "min_tier": value}


@dataclass(frozen=True)
class ResourcePolicy:
    """Visibility and tier policy attached to a content entity.

    Authored by the CMS and read-only here.
    """
    public_page_visible: bool = True
    min_tier_to_load: Optional[Union[Tier, str]] = None
    release_at: Optional[datetime] = None
    early_access_enabled: bool = False
    early_access_tiers: List[str] = field(default_factory=list)

    kind = "resource"

    def describe(self) -> Dict[str, Any]:
        min_tier = self.min_tier_to_load
        return {
            "kind": self.kind,
            "public_page_visible": self.public_page_visible,
            "min_tier": min_tier.value if isinstance(min_tier, Tier) else min_tier,
            "release_at": self.release_at.isoformat() if self.release_at else None,
            "early_access_enabled": self.early_access_enabled,
            "early_access_tiers": list(self.early_access_tiers),
        }


Requirement = Union[CapabilityRequirement, TierRequirement, ResourcePolicy]


@dataclass
class AccessDecision:
    """Result of one evaluation. Never persisted as primary state."""
    allowed: bool
    reason: ReasonCode
    evaluated_tier: Tier
    requirement: Requirement
    required_tier: Optional[Tier] = None
    release_at: Optional[datetime] = None
    scope_id: Optional[str] = None
    evaluation_time_ms: float = 0.0

    @property
    def mode(self) -> str:
        return self.requirement.kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "evaluated_tier": self.evaluated_tier.value,
            "requirement": self.requirement.describe(),
            "required_tier": self.required_tier.value if self.required_tier else None,
            "release_at": self.release_at.isoformat() if self.release_at else None,
            "scope_id": self.scope_id,
        }


class ResourcePolicyModel(BaseModel):
    """Wire shape of a resource policy."""
    public_page_visible: bool = Field(True, description="Whether the resource is published")
    min_tier_to_load: Optional[str] = Field(None, description="Tier floor, null for public")
    release_at: Optional[datetime] = Field(None, description="Embargo end")
    early_access_enabled: bool = Field(False, description="Whether early_access_tiers apply")
    early_access_tiers: List[str] = Field(default_factory=list, description="Tiers that bypass embargo")

    def to_policy(self) -> ResourcePolicy:
        return ResourcePolicy(
            public_page_visible=self.public_page_visible,
            min_tier_to_load=self.min_tier_to_load,
            release_at=self.release_at,
            early_access_enabled=self.early_access_enabled,
            early_access_tiers=list(self.early_access_tiers),
        )


class AccessCheckRequest(BaseModel):
    """Request model for a resource access check."""
    resource_id: Optional[str] = Field(
        None, description="Album id; scoped grants apply only to their own album"
    )
    policy: ResourcePolicyModel = Field(..., description="Policy attached to the resource")


class AccessCheckResponse(BaseModel):
    """Response model for a resource access check."""
    allowed: bool
    tier: Tier
    resource_id: Optional[str] = None
    reason: Optional[str] = Field(None, description="Reason when denied")
    required_tier: Optional[Tier] = None
    release_at: Optional[datetime] = None
