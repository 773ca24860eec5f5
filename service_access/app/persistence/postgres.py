"""
PostgreSQL entitlement store for the Access Service.
"""

import json
import uuid
from typing import Any, Dict, FrozenSet, List, Optional
from datetime import datetime

import asyncpg
from shared.logging import get_logger
from shared.errors import AccessLayerException, StoreUnavailableError
from ..tiers.models import ScopedEntitlements
from .base import EntitlementGrant, EntitlementStore

# Failures that mean "the store could not answer", as opposed to bad input
STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

ACTIVE_GRANT_FILTER = """
    revoked_at IS NULL
    AND (expires_at IS NULL OR expires_at > NOW())
"""


def _is_member_id(value: str) -> bool:
    """Member ids are UUIDs; anything else cannot match a row."""
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False


class PostgreSQLEntitlementStore(EntitlementStore):
    """Reads members and active grants; writes grants for admin operations."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10,
                 command_timeout: float = 30, create_schema: bool = False):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.create_schema = create_schema
        self.logger = get_logger("access.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )

            if self.create_schema:
                await self._create_tables()

            self.logger.info("PostgreSQL entitlement store started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL entitlement store", error=str(e))
            raise AccessLayerException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL entitlement store stopped")

    async def _create_tables(self):
        """Create tables for local development databases."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS members (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    principal_id TEXT UNIQUE,
                    email TEXT,
                    marketing_opt_in BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS entitlement_grants (
                    id BIGSERIAL PRIMARY KEY,
                    member_id UUID NOT NULL REFERENCES members(id) ON DELETE CASCADE,
                    entitlement_key TEXT NOT NULL,
                    scope_id TEXT,
                    granted_by TEXT NOT NULL DEFAULT 'system',
                    grant_reason TEXT,
                    granted_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    expires_at TIMESTAMP WITH TIME ZONE,
                    revoked_at TIMESTAMP WITH TIME ZONE,
                    revoked_by TEXT,
                    revoke_reason TEXT
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS member_events (
                    id BIGSERIAL PRIMARY KEY,
                    member_id UUID,
                    event_type TEXT NOT NULL,
                    occurred_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    source TEXT NOT NULL DEFAULT 'unknown',
                    payload JSONB NOT NULL DEFAULT '{}',
                    correlation_id TEXT
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_grants_member ON entitlement_grants(member_id);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_member ON member_events(member_id);
            """)

    async def get_member_id(self, principal_id: str) -> Optional[str]:
        """Member linked to a principal."""
        if not principal_id:
            return None
        try:
            async with self.pool.acquire() as conn:
                member_id = await conn.fetchval("""
                    SELECT id FROM members WHERE principal_id = $1 LIMIT 1
                """, principal_id)
                return str(member_id) if member_id is not None else None

        except STORE_ERRORS as e:
            self.logger.error("Error loading member", principal_id=principal_id, error=str(e))
            raise StoreUnavailableError("get_member_id", details={"error": type(e).__name__})

    async def list_active_entitlements(self, member_id: str) -> ScopedEntitlements:
        """Key and scope of active grants for a member."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(f"""
                    SELECT DISTINCT entitlement_key, scope_id FROM entitlement_grants
                    WHERE member_id = $1::uuid AND {ACTIVE_GRANT_FILTER}
                """, member_id)
                return ScopedEntitlements.of(
                    (row['entitlement_key'], row['scope_id']) for row in rows
                )

        except STORE_ERRORS as e:
            self.logger.error("Error loading entitlements", member_id=member_id, error=str(e))
            raise StoreUnavailableError(
                "list_active_entitlements", details={"error": type(e).__name__}
            )

    async def list_current_entitlements(self, member_id: str) -> List[EntitlementGrant]:
        """Active grants with metadata, ordered by key then scope."""
        if not _is_member_id(member_id):
            return []
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(f"""
                    SELECT member_id, entitlement_key, scope_id, granted_at, expires_at,
                           granted_by, grant_reason
                    FROM entitlement_grants
                    WHERE member_id = $1::uuid AND {ACTIVE_GRANT_FILTER}
                    ORDER BY entitlement_key ASC, scope_id ASC NULLS FIRST
                """, member_id)
                return [self._row_to_grant(row) for row in rows]

        except STORE_ERRORS as e:
            self.logger.error("Error listing entitlements", member_id=member_id, error=str(e))
            raise StoreUnavailableError(
                "list_current_entitlements", details={"error": type(e).__name__}
            )

    async def grant_entitlement(
        self,
        member_id: str,
        entitlement_key: str,
        scope_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        granted_by: str = "system",
        grant_reason: Optional[str] = None,
    ) -> bool:
        """Insert a grant unless an identical active grant exists."""
        if not _is_member_id(member_id):
            raise KeyError(member_id)
        try:
            async with self.pool.acquire() as conn:
                inserted = await conn.fetchval(f"""
                    WITH ins AS (
                        INSERT INTO entitlement_grants (
                            member_id, entitlement_key, scope_id, expires_at,
                            granted_by, grant_reason
                        )
                        SELECT $1::uuid, $2, $3, $4, $5, $6
                        WHERE NOT EXISTS (
                            SELECT 1 FROM entitlement_grants
                            WHERE member_id = $1::uuid
                              AND entitlement_key = $2
                              AND COALESCE(scope_id, '') = COALESCE($3, '')
                              AND {ACTIVE_GRANT_FILTER}
                        )
                        RETURNING 1
                    )
                    SELECT EXISTS (SELECT 1 FROM ins)
                """,
                    member_id, entitlement_key, scope_id, expires_at, granted_by, grant_reason
                )

                if inserted:
                    self.logger.info(
                        "Entitlement granted",
                        member_id=member_id,
                        entitlement_key=entitlement_key,
                        scope_id=scope_id
                    )
                return bool(inserted)

        except asyncpg.ForeignKeyViolationError:
            raise KeyError(member_id)
        except STORE_ERRORS as e:
            self.logger.error(
                "Error granting entitlement",
                member_id=member_id,
                entitlement_key=entitlement_key,
                error=str(e)
            )
            raise StoreUnavailableError("grant_entitlement", details={"error": type(e).__name__})

    async def revoke_entitlement(
        self,
        member_id: str,
        entitlement_key: str,
        scope_id: Optional[str] = None,
        revoked_by: str = "system",
        revoke_reason: Optional[str] = None,
    ) -> int:
        """Mark matching active grants revoked."""
        if not _is_member_id(member_id):
            return 0
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(f"""
                    UPDATE entitlement_grants
                    SET revoked_at = NOW(), revoked_by = $4, revoke_reason = $5
                    WHERE member_id = $1::uuid
                      AND entitlement_key = $2
                      AND COALESCE(scope_id, '') = COALESCE($3, '')
                      AND {ACTIVE_GRANT_FILTER}
                """, member_id, entitlement_key, scope_id, revoked_by, revoke_reason)

                # asyncpg returns the command tag, e.g. "UPDATE 2"
                revoked = int(result.split()[-1]) if result else 0
                self.logger.info(
                    "Entitlement revoked",
                    member_id=member_id,
                    entitlement_key=entitlement_key,
                    scope_id=scope_id,
                    revoked=revoked
                )
                return revoked

        except STORE_ERRORS as e:
            self.logger.error(
                "Error revoking entitlement",
                member_id=member_id,
                entitlement_key=entitlement_key,
                error=str(e)
            )
            raise StoreUnavailableError("revoke_entitlement", details={"error": type(e).__name__})

    async def list_marketing_audience_keys(self) -> Dict[str, FrozenSet[str]]:
        """Active catalog-wide keys for every member who can receive campaigns."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT m.id AS member_id,
                           COALESCE(
                               ARRAY_AGG(DISTINCT g.entitlement_key)
                                   FILTER (WHERE g.entitlement_key IS NOT NULL),
                               '{}'
                           ) AS keys
                    FROM members m
                    LEFT JOIN entitlement_grants g
                      ON g.member_id = m.id
                     AND g.revoked_at IS NULL
                     AND (g.expires_at IS NULL OR g.expires_at > NOW())
                     AND (g.scope_id IS NULL OR g.scope_id = 'catalog')
                    WHERE m.marketing_opt_in IS TRUE
                      AND m.email IS NOT NULL
                      AND m.email <> ''
                    GROUP BY m.id
                """)
                return {str(row['member_id']): frozenset(row['keys']) for row in rows}

        except STORE_ERRORS as e:
            self.logger.error("Error loading campaign audience", error=str(e))
            raise StoreUnavailableError(
                "list_marketing_audience_keys", details={"error": type(e).__name__}
            )

    async def log_member_event(
        self,
        member_id: Optional[str],
        event_type: str,
        payload: Dict[str, Any],
        source: str = "server",
        correlation_id: Optional[str] = None,
    ) -> None:
        """Append a row to member_events.

        A member id that is not a UUID cannot reference a member; the column
        is left null and the raw id is kept in the payload.
        """
        if member_id is not None and not _is_member_id(member_id):
            payload = dict(payload, member_ref=member_id)
            member_id = None
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO member_events (member_id, event_type, source, payload, correlation_id)
                    VALUES ($1::uuid, $2, $3, $4::jsonb, $5)
                """, member_id, event_type, source, json.dumps(payload, default=str), correlation_id)

        except STORE_ERRORS as e:
            self.logger.error("Error writing member event", event_type=event_type, error=str(e))
            raise StoreUnavailableError("log_member_event", details={"error": type(e).__name__})

    def _row_to_grant(self, row) -> EntitlementGrant:
        """Convert database row to EntitlementGrant."""
        return EntitlementGrant(
            member_id=str(row['member_id']),
            entitlement_key=row['entitlement_key'],
            scope_id=row['scope_id'],
            granted_at=row['granted_at'],
            expires_at=row['expires_at'],
            granted_by=row['granted_by'],
            grant_reason=row['grant_reason'],
        )

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
