"""
Request and response models for admin routes.
"""

from typing import Dict, List, Optional
from datetime import datetime

from pydantic import BaseModel, Field


class GrantRequest(BaseModel):
    """Request model for granting an entitlement."""
    member_id: str = Field(..., description="Member ID")
    key: str = Field(..., description="Entitlement key")
    scope_id: Optional[str] = Field(None, description="Scope, null for global")
    expires_at: Optional[datetime] = Field(None, description="Expiration date")
    reason: Optional[str] = Field(None, description="Why the grant was made")


class RevokeRequest(BaseModel):
    """Request model for revoking an entitlement."""
    member_id: str = Field(..., description="Member ID")
    key: str = Field(..., description="Entitlement key")
    scope_id: Optional[str] = Field(None, description="Scope, null for global")
    reason: Optional[str] = Field(None, description="Why the grant was revoked")


class EntitlementGrantResponse(BaseModel):
    """One active grant."""
    entitlement_key: str
    scope_id: Optional[str]
    granted_at: Optional[datetime]
    expires_at: Optional[datetime]
    granted_by: Optional[str]
    grant_reason: Optional[str]


class EntitlementListResponse(BaseModel):
    """Response model for a member's active grants."""
    member_id: str
    tier: str
    entitlements: List[EntitlementGrantResponse]


class GrantResponse(BaseModel):
    ok: bool = True
    inserted: bool


class RevokeResponse(BaseModel):
    ok: bool = True
    revoked: int


class AudienceResponse(BaseModel):
    """Response model for audience sizing."""
    min_tier: Optional[str]
    total: int
    eligible: int
    by_tier: Dict[str, int]
