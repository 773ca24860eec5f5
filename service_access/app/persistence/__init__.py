"""
Entitlement store implementations.

- base: EntitlementStore contract and EntitlementGrant.
- postgres: asyncpg-backed store over members / entitlement_grants.
- memory: dict-backed store for local runs and tests.
"""

from .base import EntitlementGrant, EntitlementStore
from .memory import InMemoryEntitlementStore

__all__ = ["EntitlementGrant", "EntitlementStore", "InMemoryEntitlementStore"]
