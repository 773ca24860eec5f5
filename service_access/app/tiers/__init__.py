"""
Tier vocabulary and resolution.

- models: Tier enum, ordering, capability and tier-bearing keys, grant scopes.
- resolver: KeyRegistry (explicit key weights) and TierResolver.
"""

from .models import (
    Tier, Capability, TierKey, ScopedEntitlements, tier_rank, parse_tier,
    album_scope, normalize_scope
)
from .resolver import KeyRegistry, TierResolver, resolve_tier

__all__ = [
    "Tier",
    "Capability",
    "TierKey",
    "tier_rank",
    "parse_tier",
    "ScopedEntitlements",
    "album_scope",
    "normalize_scope",
    "KeyRegistry",
    "TierResolver",
    "resolve_tier",
]
