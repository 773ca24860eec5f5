"""
Unit tests for entitlement administration and audience sizing.
"""

import pytest
from datetime import datetime, timedelta, timezone

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_access.app.admin.audience import AudienceCounter
from service_access.app.admin.entitlements import (
    ENTITLEMENT_GRANTED, ENTITLEMENT_REVOKED, EntitlementAdmin
)
from service_access.app.persistence.memory import InMemoryEntitlementStore
from service_access.app.policy.evaluator import PolicyEvaluator
from service_access.app.tiers.models import Tier
from service_access.app.tiers.resolver import KeyRegistry
from shared.errors import ResourceNotFoundError, ValidationError
from shared.metrics import MetricsCollector


class Clock:
    """Adjustable clock for expiry tests."""

    def __init__(self):
        self.now = datetime(2026, 3, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    """Create an in-memory store with one member."""
    store = InMemoryEntitlementStore(clock=clock)
    store.add_member(principal_id="principal-1", member_id="member-1", email="a@example.com")
    return store


@pytest.fixture
def admin(store):
    """Create EntitlementAdmin instance."""
    return EntitlementAdmin(store, KeyRegistry())


class TestInMemoryEntitlementStore:
    """Test cases for the in-memory store."""

    @pytest.mark.asyncio
    async def test_member_lookup(self, store):
        """Test resolving principals."""
        assert await store.get_member_id("principal-1") == "member-1"
        assert await store.get_member_id("unknown") is None
        assert await store.get_member_id("") is None

    def test_duplicate_principal_rejected(self, store):
        """A principal links to at most one member."""
        with pytest.raises(ValueError):
            store.add_member(principal_id="principal-1")

    @pytest.mark.asyncio
    async def test_expired_grants_are_inactive(self, store, clock):
        """Test expiry filtering."""
        await store.grant_entitlement(
            "member-1", "tier_patron", expires_at=clock.now + timedelta(days=1)
        )
        assert (await store.list_active_entitlements("member-1")).keys() == frozenset({"tier_patron"})

        clock.now += timedelta(days=2)
        assert (await store.list_active_entitlements("member-1")).keys() == frozenset()

    @pytest.mark.asyncio
    async def test_naive_expiry_is_utc(self, store, clock):
        """A grant expiry without an offset compares as UTC."""
        naive = (clock.now + timedelta(hours=1)).replace(tzinfo=None)
        await store.grant_entitlement("member-1", "tier_patron", expires_at=naive)

        assert (await store.list_active_entitlements("member-1")).keys() == frozenset({"tier_patron"})
        grants = await store.list_current_entitlements("member-1")
        assert grants[0].expires_at == clock.now + timedelta(hours=1)

        clock.now += timedelta(hours=2)
        assert (await store.list_active_entitlements("member-1")).keys() == frozenset()

    @pytest.mark.asyncio
    async def test_grant_unknown_member(self, store):
        """Test granting to a missing member."""
        with pytest.raises(KeyError):
            await store.grant_entitlement("nobody", "tier_friend")


class TestEntitlementAdmin:
    """Test cases for EntitlementAdmin."""

    @pytest.mark.asyncio
    async def test_grant_and_list(self, admin, store):
        """Test granting an entitlement."""
        inserted = await admin.grant("member-1", "tier_patron", granted_by="admin:root", reason="comp")

        assert inserted is True
        grants = await admin.list_current("member-1")
        assert [g.entitlement_key for g in grants] == ["tier_patron"]
        assert grants[0].granted_by == "admin:root"

        event = store.events[-1]
        assert event["event_type"] == ENTITLEMENT_GRANTED
        assert event["source"] == "admin"
        assert event["payload"]["entitlement_key"] == "tier_patron"

    @pytest.mark.asyncio
    async def test_grant_is_idempotent(self, admin, store):
        """An identical active grant is not duplicated."""
        assert await admin.grant("member-1", "tier_friend") is True
        assert await admin.grant("member-1", "tier_friend") is False

        assert len(await admin.list_current("member-1")) == 1
        assert len(store.events) == 1

    @pytest.mark.asyncio
    async def test_scoped_grants_are_distinct(self, admin):
        """Grants differ by scope."""
        assert await admin.grant("member-1", "play_album", scope_id="album-1") is True
        assert await admin.grant("member-1", "play_album", scope_id="album-2") is True
        assert await admin.grant("member-1", "play_album", scope_id=" album-1 ") is False

    @pytest.mark.asyncio
    async def test_grant_unregistered_key(self, admin, store):
        """Unregistered keys can be granted but carry no tier."""
        assert await admin.grant("member-1", "vip_lifetime") is True

        entitlements = await store.list_active_entitlements("member-1")
        assert PolicyEvaluator().resolver.resolve(entitlements.keys()) is Tier.NONE

    @pytest.mark.asyncio
    async def test_grant_naive_expiry(self, admin, store, clock):
        """An admin grant with a naive expiry is stored as UTC."""
        naive = datetime(2026, 3, 2, 9, 30)
        await admin.grant("member-1", "tier_friend", expires_at=naive)

        grants = await admin.list_current("member-1")
        assert grants[0].expires_at == datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
        assert store.events[-1]["payload"]["expires_at"] == "2026-03-02T09:30:00+00:00"

    @pytest.mark.asyncio
    async def test_album_scope_normalized(self, admin, store):
        """Repeated album prefixes collapse to one scope."""
        assert await admin.grant("member-1", "album_share_grant", scope_id="alb:alb:album-1") is True
        assert await admin.grant("member-1", "album_share_grant", scope_id="alb:album-1") is False

        entitlements = await store.list_active_entitlements("member-1")
        assert entitlements.scoped() == [("album_share_grant", "alb:album-1")]

    @pytest.mark.asyncio
    async def test_grant_unknown_member(self, admin):
        """Test granting to a missing member."""
        with pytest.raises(ResourceNotFoundError):
            await admin.grant("nobody", "tier_friend")

    @pytest.mark.asyncio
    async def test_grant_requires_ids(self, admin):
        """Test input validation."""
        with pytest.raises(ValidationError):
            await admin.grant("member-1", "  ")
        with pytest.raises(ValidationError):
            await admin.revoke("", "tier_friend")
        with pytest.raises(ValidationError):
            await admin.list_current(" ")

    @pytest.mark.asyncio
    async def test_revoke(self, admin, store):
        """Revocation removes the key from the next read."""
        await admin.grant("member-1", "tier_partner")

        revoked = await admin.revoke("member-1", "tier_partner", revoked_by="admin:root")

        assert revoked == 1
        assert (await store.list_active_entitlements("member-1")).keys() == frozenset()
        assert store.events[-1]["event_type"] == ENTITLEMENT_REVOKED
        assert store.events[-1]["payload"]["revoked"] == 1

    @pytest.mark.asyncio
    async def test_revoke_nothing(self, admin, store):
        """Revoking an absent grant reports zero and logs nothing."""
        assert await admin.revoke("member-1", "tier_partner") == 0
        assert await admin.revoke("nobody", "tier_partner") == 0
        assert store.events == []

    @pytest.mark.asyncio
    async def test_regrant_after_revoke(self, admin):
        """A revoked grant can be granted again."""
        await admin.grant("member-1", "tier_friend")
        await admin.revoke("member-1", "tier_friend")
        assert await admin.grant("member-1", "tier_friend") is True


class TestAudienceCounter:
    """Test cases for AudienceCounter."""

    @pytest.fixture
    async def audience_store(self):
        """Create a store with a mixed audience."""
        store = InMemoryEntitlementStore()
        members = [
            ("m-none", set(), True),
            ("m-friend", {"tier_friend"}, True),
            ("m-patron", {"sub_patron"}, True),
            ("m-partner", {"tier_partner"}, True),
            ("m-opted-out", {"tier_partner"}, False),
        ]
        for member_id, keys, opt_in in members:
            store.add_member(member_id=member_id, email=f"{member_id}@example.com", marketing_opt_in=opt_in)
            for key in keys:
                await store.grant_entitlement(member_id, key)
        return store

    @pytest.mark.asyncio
    async def test_count_by_floor(self, audience_store):
        """The same floor rule as content access applies."""
        metrics = MetricsCollector("access")
        counter = AudienceCounter(audience_store, PolicyEvaluator(metrics=metrics))

        count = await counter.count("patron")

        assert count.total == 4
        assert count.eligible == 2
        assert count.min_tier is Tier.PATRON
        assert count.by_tier == {"none": 1, "friend": 1, "patron": 1, "partner": 1}
        # Sizing records no access decisions
        assert metrics.sample_value(
            "access_decisions_total", mode="resource", allowed="true", reason="OK"
        ) is None

    @pytest.mark.asyncio
    async def test_count_without_floor(self, audience_store):
        """No floor counts everyone."""
        count = await AudienceCounter(audience_store, PolicyEvaluator()).count()
        assert count.eligible == count.total == 4

    @pytest.mark.asyncio
    async def test_album_scoped_grants_do_not_count(self, audience_store):
        """Only catalog-wide grants decide a campaign tier."""
        await audience_store.grant_entitlement("m-none", "tier_partner", "alb:album-1")
        await audience_store.grant_entitlement("m-friend", "tier_patron", "catalog")

        count = await AudienceCounter(audience_store, PolicyEvaluator()).count("patron")

        assert count.by_tier == {"none": 1, "friend": 0, "patron": 2, "partner": 1}
        assert count.eligible == 3

    @pytest.mark.asyncio
    async def test_count_unknown_tier(self, audience_store):
        """Test rejecting an unknown tier."""
        with pytest.raises(ValidationError):
            await AudienceCounter(audience_store, PolicyEvaluator()).count("gold")
