"""
Tier and entitlement key vocabulary for the Access Service.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple


class Tier(str, Enum):
    """Membership tiers, lowest first."""
    NONE = "none"
    FRIEND = "friend"
    PATRON = "patron"
    PARTNER = "partner"


# Ordinal position of each tier. Comparisons go through tier_rank() so the
# ordering has exactly one source.
TIER_ORDER: Dict[Tier, int] = {
    Tier.NONE: 0,
    Tier.FRIEND: 1,
    Tier.PATRON: 2,
    Tier.PARTNER: 3,
}


def tier_rank(tier: Tier) -> int:
    """Ordinal rank of a tier."""
    return TIER_ORDER[tier]


def parse_tier(value: Optional[str]) -> Optional[Tier]:
    """Parse a serialized tier name.

    Returns None for None/blank input and raises ValueError for anything
    outside the enumeration.
    """
    if value is None:
        return None
    if isinstance(value, Tier):
        return value
    name = str(value).strip().lower()
    if not name:
        return None
    return Tier(name)


class Capability(str, Enum):
    """Capability keys. Binary grants, independent of tier ordering."""
    ADMIN = "admin"
    PLAY_ALBUM = "play_album"
    TRACK_SHARE_GRANT = "track_share_grant"
    ALBUM_SHARE_GRANT = "album_share_grant"


class TierKey(str, Enum):
    """Entitlement keys that carry tier weight."""
    TIER_FRIEND = "tier_friend"
    TIER_PATRON = "tier_patron"
    TIER_PARTNER = "tier_partner"
    SUB_FRIEND = "sub_friend"
    SUB_PATRON = "sub_patron"
    SUB_PARTNER = "sub_partner"


# Every known key with its explicit weight. Capabilities weigh NONE so a new
# capability can never inflate a tier.
DEFAULT_KEY_WEIGHTS: Dict[str, Tier] = {
    TierKey.TIER_FRIEND.value: Tier.FRIEND,
    TierKey.TIER_PATRON.value: Tier.PATRON,
    TierKey.TIER_PARTNER.value: Tier.PARTNER,
    TierKey.SUB_FRIEND.value: Tier.FRIEND,
    TierKey.SUB_PATRON.value: Tier.PATRON,
    TierKey.SUB_PARTNER.value: Tier.PARTNER,
    Capability.ADMIN.value: Tier.NONE,
    Capability.PLAY_ALBUM.value: Tier.NONE,
    Capability.TRACK_SHARE_GRANT.value: Tier.NONE,
    Capability.ALBUM_SHARE_GRANT.value: Tier.NONE,
}


# Grants scoped to the catalog, or not scoped at all, apply to every resource.
CATALOG_SCOPE = "catalog"
ALBUM_SCOPE_PREFIX = "alb:"


def normalize_scope(scope_id: Optional[str]) -> Optional[str]:
    """Canonical form of a grant scope. None means unscoped."""
    value = (scope_id or "").strip()
    if not value:
        return None
    if value.startswith(ALBUM_SCOPE_PREFIX):
        return album_scope(value)
    return value


def album_scope(album_id: Optional[str]) -> str:
    """Scope id for one album; repeated ``alb:`` prefixes collapse."""
    value = (album_id or "").strip()
    while value.startswith(ALBUM_SCOPE_PREFIX):
        value = value[len(ALBUM_SCOPE_PREFIX):].strip()
    if not value:
        return CATALOG_SCOPE
    return ALBUM_SCOPE_PREFIX + value


@dataclass(frozen=True)
class ScopedEntitlements:
    """Active grants as (key, scope) pairs.

    A grant applies to a scope S when it is scoped to S, to the catalog, or
    not scoped at all. Checks without a resource use the catalog scope, so a
    grant scoped to one album never counts outside that album.
    """
    grants: FrozenSet[Tuple[str, Optional[str]]] = frozenset()

    @classmethod
    def of(cls, entitlements) -> "ScopedEntitlements":
        """Accept pairs, or bare keys which are treated as unscoped."""
        if isinstance(entitlements, cls):
            return entitlements
        grants = set()
        for item in entitlements or ():
            if isinstance(item, str):
                grants.add((item, None))
            else:
                key, scope_id = item
                grants.add((key, normalize_scope(scope_id)))
        return cls(frozenset(grants))

    def for_scope(self, scope_id: Optional[str] = None) -> FrozenSet[str]:
        """Keys whose grants apply within ``scope_id`` (catalog when None)."""
        scope_id = normalize_scope(scope_id) or CATALOG_SCOPE
        return frozenset(
            key for key, grant_scope in self.grants
            if grant_scope in (None, CATALOG_SCOPE, scope_id)
        )

    def keys(self) -> FrozenSet[str]:
        return frozenset(key for key, _ in self.grants)

    def scoped(self) -> List[Tuple[str, str]]:
        """Grants limited to a scope narrower than the catalog."""
        return sorted(
            (key, scope_id) for key, scope_id in self.grants
            if scope_id not in (None, CATALOG_SCOPE)
        )
