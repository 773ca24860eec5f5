"""
Entitlement store interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from ..tiers.models import ScopedEntitlements


@dataclass
class EntitlementGrant:
    """One currently active grant."""
    member_id: str
    entitlement_key: str
    scope_id: Optional[str] = None
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    grant_reason: Optional[str] = None


class EntitlementStore(ABC):
    """Read side consumed by the guards, write side used by admin routes.

    Implementations filter grants to the active projection: not revoked and
    not expired. The engine never sees validity windows.
    """

    async def start(self):
        """Acquire resources."""

    async def stop(self):
        """Release resources."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def get_member_id(self, principal_id: str) -> Optional[str]:
        """Member linked to an authenticator principal, if any."""

    @abstractmethod
    async def list_active_entitlements(self, member_id: str) -> ScopedEntitlements:
        """(key, scope) of every currently active grant."""

    @abstractmethod
    async def list_current_entitlements(self, member_id: str) -> List[EntitlementGrant]:
        """Active grants with their metadata."""

    @abstractmethod
    async def grant_entitlement(
        self,
        member_id: str,
        entitlement_key: str,
        scope_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        granted_by: str = "system",
        grant_reason: Optional[str] = None,
    ) -> bool:
        """Insert a grant unless an identical active one exists. True if inserted.

        Raises KeyError when the member does not exist.
        """

    @abstractmethod
    async def revoke_entitlement(
        self,
        member_id: str,
        entitlement_key: str,
        scope_id: Optional[str] = None,
        revoked_by: str = "system",
        revoke_reason: Optional[str] = None,
    ) -> int:
        """Revoke matching active grants. Returns how many were revoked."""

    @abstractmethod
    async def list_marketing_audience_keys(self) -> Dict[str, FrozenSet[str]]:
        """Active catalog-wide keys per marketing-sendable member, in one round-trip.

        Grants scoped to a single album are left out.
        """

    @abstractmethod
    async def log_member_event(
        self,
        member_id: Optional[str],
        event_type: str,
        payload: Dict[str, Any],
        source: str = "server",
        correlation_id: Optional[str] = None,
    ) -> None:
        """Append to the member event stream."""
