"""
Tier resolution for the Access Service.
"""

from typing import Dict, Iterable, Mapping, Optional

from shared.logging import get_logger
from .models import Tier, DEFAULT_KEY_WEIGHTS, parse_tier, tier_rank


class KeyRegistry:
    """Registered entitlement keys and their tier weights.

    A key that is not registered contributes no tier. Registration is the only
    way a new key can raise a member's tier.
    """

    def __init__(self, weights: Optional[Mapping[str, Tier]] = None):
        self.logger = get_logger("access.key_registry")
        self._weights: Dict[str, Tier] = {}
        for key, tier in (weights if weights is not None else DEFAULT_KEY_WEIGHTS).items():
            self.register(key, tier)

    def register(self, key: str, tier) -> None:
        """Register a key with an explicit weight (possibly Tier.NONE)."""
        key = (key or "").strip()
        if not key:
            raise ValueError("Entitlement key must be a non-empty string")

        try:
            weight = parse_tier(tier)
        except ValueError:
            raise ValueError(f"Unknown tier {tier!r} for entitlement key {key!r}")
        if weight is None:
            raise ValueError(f"Entitlement key {key!r} needs an explicit tier weight")

        existing = self._weights.get(key)
        if existing is not None and existing != weight:
            raise ValueError(
                f"Entitlement key {key!r} already registered with weight {existing.value}"
            )

        self._weights[key] = weight

    def weight(self, key: str) -> Optional[Tier]:
        """Weight of a key, None when unregistered."""
        return self._weights.get(key)

    def is_registered(self, key: str) -> bool:
        return key in self._weights

    def keys(self):
        return sorted(self._weights)

    def as_dict(self) -> Dict[str, str]:
        return {key: tier.value for key, tier in sorted(self._weights.items())}


class TierResolver:
    """Maps a set of active entitlement keys to exactly one tier."""

    def __init__(self, registry: Optional[KeyRegistry] = None):
        self.registry = registry or KeyRegistry()
        self.logger = get_logger("access.tier_resolver")

    def resolve(self, entitlement_keys: Iterable[str]) -> Tier:
        """Resolve the highest registered tier among the keys.

        Total: the empty set and sets of unknown keys resolve to Tier.NONE.
        """
        resolved = Tier.NONE
        for key in set(entitlement_keys or ()):
            weight = self.registry.weight(key)
            if weight is None:
                self.logger.debug("Ignoring unregistered entitlement key", entitlement_key=key)
                continue
            if tier_rank(weight) > tier_rank(resolved):
                resolved = weight
        return resolved


_default_resolver: Optional[TierResolver] = None


def resolve_tier(entitlement_keys: Iterable[str]) -> Tier:
    """Resolve a tier against the default key registry."""
    global _default_resolver
    if _default_resolver is None:
        _default_resolver = TierResolver()
    return _default_resolver.resolve(entitlement_keys)
