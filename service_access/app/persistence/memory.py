"""
In-memory entitlement store for local runs and tests.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional
import uuid

from shared.logging import get_logger
from ..tiers.models import CATALOG_SCOPE, ScopedEntitlements
from .base import EntitlementGrant, EntitlementStore


@dataclass
class _GrantRow:
    member_id: str
    entitlement_key: str
    scope_id: Optional[str]
    granted_at: datetime
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    granted_by: str = "system"
    grant_reason: Optional[str] = None


@dataclass
class _MemberRow:
    member_id: str
    principal_id: Optional[str] = None
    email: Optional[str] = None
    marketing_opt_in: bool = False
    grants: List[_GrantRow] = field(default_factory=list)


class InMemoryEntitlementStore(EntitlementStore):
    """Same contract as the PostgreSQL store, backed by dicts."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.logger = get_logger("access.persistence.memory")
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._members: Dict[str, _MemberRow] = {}
        self._by_principal: Dict[str, str] = {}
        self.events: List[Dict[str, Any]] = []

    def add_member(
        self,
        principal_id: Optional[str] = None,
        member_id: Optional[str] = None,
        email: Optional[str] = None,
        marketing_opt_in: bool = False,
    ) -> str:
        """Create a member, optionally linked to a principal."""
        if principal_id and principal_id in self._by_principal:
            raise ValueError(f"Principal {principal_id!r} already linked to a member")

        member_id = member_id or str(uuid.uuid4())
        self._members[member_id] = _MemberRow(
            member_id=member_id,
            principal_id=principal_id,
            email=email,
            marketing_opt_in=marketing_opt_in,
        )
        if principal_id:
            self._by_principal[principal_id] = member_id
        self.logger.debug("Member added", member_id=member_id, principal_id=principal_id)
        return member_id

    def _is_active(self, row: _GrantRow, now: datetime) -> bool:
        if row.revoked_at is not None:
            return False
        return row.expires_at is None or row.expires_at > now

    def _active_rows(self, member_id: str) -> List[_GrantRow]:
        member = self._members.get(member_id)
        if member is None:
            return []
        now = self.clock()
        return [row for row in member.grants if self._is_active(row, now)]

    async def get_member_id(self, principal_id: str) -> Optional[str]:
        if not principal_id:
            return None
        return self._by_principal.get(principal_id)

    async def list_active_entitlements(self, member_id: str) -> ScopedEntitlements:
        return ScopedEntitlements.of(
            (row.entitlement_key, row.scope_id) for row in self._active_rows(member_id)
        )

    async def list_current_entitlements(self, member_id: str) -> List[EntitlementGrant]:
        rows = sorted(
            self._active_rows(member_id),
            key=lambda r: (r.entitlement_key, r.scope_id or "")
        )
        return [
            EntitlementGrant(
                member_id=row.member_id,
                entitlement_key=row.entitlement_key,
                scope_id=row.scope_id,
                granted_at=row.granted_at,
                expires_at=row.expires_at,
                granted_by=row.granted_by,
                grant_reason=row.grant_reason,
            )
            for row in rows
        ]

    async def grant_entitlement(
        self,
        member_id: str,
        entitlement_key: str,
        scope_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        granted_by: str = "system",
        grant_reason: Optional[str] = None,
    ) -> bool:
        member = self._members.get(member_id)
        if member is None:
            raise KeyError(member_id)
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        for row in self._active_rows(member_id):
            if row.entitlement_key == entitlement_key and (row.scope_id or "") == (scope_id or ""):
                return False

        member.grants.append(_GrantRow(
            member_id=member_id,
            entitlement_key=entitlement_key,
            scope_id=scope_id,
            granted_at=self.clock(),
            expires_at=expires_at,
            granted_by=granted_by,
            grant_reason=grant_reason,
        ))
        return True

    async def revoke_entitlement(
        self,
        member_id: str,
        entitlement_key: str,
        scope_id: Optional[str] = None,
        revoked_by: str = "system",
        revoke_reason: Optional[str] = None,
    ) -> int:
        now = self.clock()
        revoked = 0
        for row in self._active_rows(member_id):
            if row.entitlement_key == entitlement_key and (row.scope_id or "") == (scope_id or ""):
                row.revoked_at = now
                revoked += 1
        return revoked

    async def list_marketing_audience_keys(self) -> Dict[str, FrozenSet[str]]:
        return {
            member.member_id: frozenset(
                row.entitlement_key for row in self._active_rows(member.member_id)
                if row.scope_id in (None, CATALOG_SCOPE)
            )
            for member in self._members.values()
            if member.marketing_opt_in and member.email
        }

    async def log_member_event(
        self,
        member_id: Optional[str],
        event_type: str,
        payload: Dict[str, Any],
        source: str = "server",
        correlation_id: Optional[str] = None,
    ) -> None:
        self.events.append({
            "member_id": member_id,
            "event_type": event_type,
            "source": source,
            "payload": dict(payload),
            "correlation_id": correlation_id,
            "occurred_at": self.clock(),
        })
