"""
Entitlement administration: grant, revoke, list.
"""

from datetime import datetime, timezone
from typing import List, Optional

from shared.errors import ResourceNotFoundError, ValidationError
from shared.logging import get_correlation_id, get_logger
from ..persistence.base import EntitlementGrant, EntitlementStore
from ..tiers.models import normalize_scope
from ..tiers.resolver import KeyRegistry

ENTITLEMENT_GRANTED = "entitlement_granted"
ENTITLEMENT_REVOKED = "entitlement_revoked"


class EntitlementAdmin:
    """Write side of entitlement grants.

    Callers are expected to have passed the admin capability guard.
    """

    def __init__(self, store: EntitlementStore, registry: KeyRegistry):
        self.store = store
        self.registry = registry
        self.logger = get_logger("access.entitlement_admin")

    async def grant(
        self,
        member_id: str,
        entitlement_key: str,
        scope_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        granted_by: str = "admin",
        reason: Optional[str] = None,
    ) -> bool:
        """Grant a key. Idempotent for an identical active grant.

        An expiry without an offset is taken as UTC.
        """
        member_id, entitlement_key, scope_id = self._normalize(member_id, entitlement_key, scope_id)
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        if not self.registry.is_registered(entitlement_key):
            self.logger.warning(
                "Granting unregistered entitlement key, it carries no tier",
                entitlement_key=entitlement_key
            )

        try:
            inserted = await self.store.grant_entitlement(
                member_id,
                entitlement_key,
                scope_id=scope_id,
                expires_at=expires_at,
                granted_by=granted_by,
                grant_reason=reason or "admin_grant",
            )
        except KeyError:
            raise ResourceNotFoundError("Member not found", details={"member_id": member_id})

        if inserted:
            await self.store.log_member_event(
                member_id,
                ENTITLEMENT_GRANTED,
                {
                    "entitlement_key": entitlement_key,
                    "scope_id": scope_id,
                    "granted_by": granted_by,
                    "grant_reason": reason,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                },
                source="admin",
                correlation_id=get_correlation_id(),
            )
        return inserted

    async def revoke(
        self,
        member_id: str,
        entitlement_key: str,
        scope_id: Optional[str] = None,
        revoked_by: str = "admin",
        reason: Optional[str] = None,
    ) -> int:
        """Revoke active grants of a key. Takes effect on the next decision.

        Only an actual revocation is written to the member event stream.
        """
        member_id, entitlement_key, scope_id = self._normalize(member_id, entitlement_key, scope_id)

        revoked = await self.store.revoke_entitlement(
            member_id,
            entitlement_key,
            scope_id=scope_id,
            revoked_by=revoked_by,
            revoke_reason=reason,
        )
        if not revoked:
            self.logger.info(
                "No active grant to revoke",
                member_id=member_id,
                entitlement_key=entitlement_key,
                scope_id=scope_id
            )
            return 0

        await self.store.log_member_event(
            member_id,
            ENTITLEMENT_REVOKED,
            {
                "entitlement_key": entitlement_key,
                "scope_id": scope_id,
                "revoked_by": revoked_by,
                "revoke_reason": reason,
                "revoked": revoked,
            },
            source="admin",
            correlation_id=get_correlation_id(),
        )
        return revoked

    async def list_current(self, member_id: str) -> List[EntitlementGrant]:
        member_id = (member_id or "").strip()
        if not member_id:
            raise ValidationError("member_id is required")
        return await self.store.list_current_entitlements(member_id)

    @staticmethod
    def _normalize(member_id: str, entitlement_key: str, scope_id: Optional[str]):
        member_id = (member_id or "").strip()
        entitlement_key = (entitlement_key or "").strip()
        if not member_id or not entitlement_key:
            raise ValidationError("member_id and entitlement_key are required")
        scope_id = normalize_scope(scope_id)
        return member_id, entitlement_key, scope_id
