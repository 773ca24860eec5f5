"""
Unit tests for the PolicyEvaluator.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_access.app.tiers.models import ScopedEntitlements, Tier, TIER_ORDER
from service_access.app.tiers.resolver import KeyRegistry, TierResolver
from service_access.app.policy.evaluator import PolicyEvaluator
from service_access.app.policy.models import (
    CapabilityRequirement, ReasonCode, ResourcePolicy, TierRequirement
)
from service_access.app.audit.sinks import AuditContext
from shared.metrics import MetricsCollector

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestPolicyEvaluator:
    """Test cases for PolicyEvaluator."""

    @pytest.fixture
    def metrics(self):
        """Create an isolated metrics collector."""
        return MetricsCollector("access")

    @pytest.fixture
    def evaluator(self, metrics):
        """Create PolicyEvaluator instance with a fixed clock."""
        return PolicyEvaluator(metrics=metrics, clock=lambda: NOW)

    # Capability mode

    def test_capability_held(self, evaluator):
        """Test allowing a held capability."""
        decision = evaluator.evaluate_capability({"admin"}, {"admin"})
        assert decision.allowed is True
        assert decision.reason is ReasonCode.OK
        assert decision.mode == "global"

    def test_admin_alone_does_not_pass_a_partner_floor(self, evaluator):
        """Admin weighs tier none, so it grants no content tier."""
        policy = ResourcePolicy(min_tier_to_load="partner")
        decision = evaluator.evaluate_resource({"admin"}, policy)
        assert decision.allowed is False
        assert decision.reason is ReasonCode.TIER_TOO_LOW
        assert decision.evaluated_tier is Tier.NONE

        assert evaluator.evaluate_tier({"admin"}, "friend").reason is ReasonCode.TIER_TOO_LOW

    def test_admin_weighted_as_partner_passes_floor(self, metrics):
        """A registry that weights admin as partner lets admins load gated content."""
        weights = dict(KeyRegistry().as_dict(), admin="partner")
        evaluator = PolicyEvaluator(
            resolver=TierResolver(KeyRegistry(weights=weights)), metrics=metrics, clock=lambda: NOW
        )

        decision = evaluator.evaluate_resource({"admin"}, ResourcePolicy(min_tier_to_load="partner"))
        assert decision.allowed is True
        assert decision.evaluated_tier is Tier.PARTNER

    def test_album_scoped_capability_is_not_global(self, evaluator):
        """A capability scoped to one album fails a catalog-wide check."""
        entitlements = ScopedEntitlements.of({("admin", "alb:album-a")})

        assert evaluator.evaluate_capability(entitlements, {"admin"}).allowed is False
        assert evaluator.evaluate_capability(entitlements, {"admin"}, scope_id="alb:album-a").allowed is True
        assert evaluator.evaluate_capability(
            ScopedEntitlements.of({("admin", "catalog")}), {"admin"}
        ).allowed is True

    def test_capability_missing(self, evaluator):
        """Test denying a missing capability."""
        decision = evaluator.evaluate_capability({"tier_patron"}, {"admin"})
        assert decision.allowed is False
        assert decision.reason is ReasonCode.MISSING_CAPABILITY

    def test_capability_independent_of_tier(self, evaluator):
        """Partner does not imply any capability."""
        decision = evaluator.evaluate_capability({"tier_partner"}, {"album_share_grant"})
        assert decision.allowed is False
        assert decision.evaluated_tier is Tier.PARTNER

    def test_capability_requires_all(self, evaluator):
        """Every required capability must be held."""
        decision = evaluator.evaluate_capability({"admin"}, {"admin", "play_album"})
        assert decision.allowed is False

    def test_empty_capability_requirement(self, evaluator):
        """Nothing required means allowed."""
        assert evaluator.evaluate_capability(set(), set()).allowed is True

    # Tier floor

    def test_floor_met(self, evaluator):
        """Test a tier at or above the floor."""
        decision = evaluator.evaluate_tier({"tier_patron"}, Tier.PATRON)
        assert decision.allowed is True
        assert decision.required_tier is Tier.PATRON

        assert evaluator.evaluate_tier({"tier_patron"}, "friend").allowed is True

    def test_floor_not_met(self, evaluator):
        """Test a tier below the floor."""
        decision = evaluator.evaluate_tier({"tier_friend"}, "patron")
        assert decision.allowed is False
        assert decision.reason is ReasonCode.TIER_TOO_LOW
        assert decision.evaluated_tier is Tier.FRIEND
        assert decision.required_tier is Tier.PATRON

    def test_null_floor_allows_everyone(self, evaluator):
        """No floor admits tier none."""
        assert evaluator.evaluate_tier(set(), None).allowed is True

    def test_none_floor_allows_everyone(self, evaluator):
        """A floor of none admits tier none."""
        assert evaluator.evaluate_tier(set(), Tier.NONE).allowed is True

    def test_partner_override_is_independent_of_ordering(self, evaluator, monkeypatch):
        """Partner passes a floor even if the ordinal table says otherwise."""
        monkeypatch.setitem(TIER_ORDER, Tier.PATRON, 10)

        decision = evaluator.evaluate_tier({"tier_partner"}, Tier.PATRON)
        assert decision.allowed is True

    def test_unknown_floor_is_misconfigured(self, evaluator, metrics):
        """An unparseable floor denies everyone, partner included."""
        decision = evaluator.evaluate_tier({"tier_partner"}, "gold")
        assert decision.allowed is False
        assert decision.reason is ReasonCode.POLICY_MISCONFIGURED
        assert metrics.sample_value(
            "errors_total", error_type="POLICY_MISCONFIGURED", service="access"
        ) == 1.0

    # Resource policies

    def test_patron_allowed_on_patron_resource(self, evaluator):
        """Test an exact floor match."""
        policy = ResourcePolicy(min_tier_to_load="patron")
        decision = evaluator.evaluate_resource({"tier_patron"}, policy)
        assert decision.allowed is True
        assert decision.evaluated_tier is Tier.PATRON

    def test_friend_denied_on_patron_resource(self, evaluator):
        """Test a floor miss."""
        policy = ResourcePolicy(min_tier_to_load="patron")
        decision = evaluator.evaluate_resource({"tier_friend"}, policy)
        assert decision.allowed is False
        assert decision.reason is ReasonCode.TIER_TOO_LOW
        assert decision.required_tier is Tier.PATRON

    def test_partner_allowed_on_any_floor(self, evaluator):
        """Test the partner override for resources."""
        for floor in ("friend", "patron", "partner"):
            policy = ResourcePolicy(min_tier_to_load=floor)
            assert evaluator.evaluate_resource({"sub_partner"}, policy).allowed is True

    def test_public_resource(self, evaluator):
        """Anonymous callers can load resources without a floor."""
        decision = evaluator.evaluate_resource(set(), ResourcePolicy())
        assert decision.allowed is True
        assert decision.evaluated_tier is Tier.NONE

    def test_hidden_resource_beats_partner(self, evaluator):
        """Hidden short-circuits before any tier check."""
        policy = ResourcePolicy(public_page_visible=False)
        decision = evaluator.evaluate_resource({"tier_partner", "admin"}, policy)
        assert decision.allowed is False
        assert decision.reason is ReasonCode.RESOURCE_HIDDEN

    def test_hidden_checked_before_misconfiguration(self, evaluator):
        """Test hidden wins over a bad floor."""
        policy = ResourcePolicy(public_page_visible=False, min_tier_to_load="gold")
        assert evaluator.evaluate_resource(set(), policy).reason is ReasonCode.RESOURCE_HIDDEN

    def test_misconfigured_resource(self, evaluator):
        """An unknown floor on a visible resource is misconfigured."""
        policy = ResourcePolicy(min_tier_to_load="platinum")
        decision = evaluator.evaluate_resource({"tier_partner"}, policy)
        assert decision.reason is ReasonCode.POLICY_MISCONFIGURED
        assert decision.allowed is False

    def test_misconfigured_early_access(self, evaluator):
        """An unknown early-access tier is misconfigured too."""
        policy = ResourcePolicy(early_access_tiers=["vip"])
        assert evaluator.evaluate_resource(set(), policy).reason is ReasonCode.POLICY_MISCONFIGURED

    def test_unprovisioned_member_reported_as_no_principal(self, evaluator):
        """Test the floor miss for a principal without a member."""
        policy = ResourcePolicy(min_tier_to_load="friend")
        decision = evaluator.evaluate_resource(set(), policy, member_resolved=False)
        assert decision.reason is ReasonCode.NO_PRINCIPAL

    # Embargo

    def test_embargo_denies_before_release(self, evaluator):
        """Test an embargoed resource."""
        release = NOW + timedelta(days=1)
        policy = ResourcePolicy(release_at=release)
        decision = evaluator.evaluate_resource({"tier_partner"}, policy)
        assert decision.allowed is False
        assert decision.reason is ReasonCode.EMBARGOED
        assert decision.release_at == release

    def test_embargo_lifts_at_release(self, evaluator):
        """Test a released resource."""
        policy = ResourcePolicy(release_at=NOW)
        assert evaluator.evaluate_resource(set(), policy).allowed is True

    def test_naive_release_treated_as_utc(self, evaluator):
        """Test naive release timestamps."""
        policy = ResourcePolicy(release_at=datetime(2026, 3, 2))
        assert evaluator.evaluate_resource(set(), policy).reason is ReasonCode.EMBARGOED

    def test_early_access_tier_bypasses_embargo(self, evaluator):
        """Listed tiers see embargoed resources."""
        policy = ResourcePolicy(
            release_at=NOW + timedelta(days=1),
            min_tier_to_load="friend",
            early_access_enabled=True,
            early_access_tiers=["patron"],
        )
        assert evaluator.evaluate_resource({"tier_patron"}, policy).allowed is True
        assert evaluator.evaluate_resource({"tier_friend"}, policy).reason is ReasonCode.EMBARGOED

    def test_early_access_tiers_ignored_when_disabled(self, evaluator):
        """Listed tiers wait for release unless early access is switched on."""
        policy = ResourcePolicy(
            release_at=NOW + timedelta(days=1),
            early_access_tiers=["patron"],
        )
        decision = evaluator.evaluate_resource({"tier_patron"}, policy)
        assert decision.allowed is False
        assert decision.reason is ReasonCode.EMBARGOED

    def test_album_share_grant_bypasses_embargo_not_floor(self, evaluator):
        """The share capability lifts the embargo, the floor still applies."""
        policy = ResourcePolicy(release_at=NOW + timedelta(days=1), min_tier_to_load="patron")

        decision = evaluator.evaluate_resource({"album_share_grant"}, policy)
        assert decision.reason is ReasonCode.TIER_TOO_LOW

        decision = evaluator.evaluate_resource({"album_share_grant", "tier_patron"}, policy)
        assert decision.allowed is True

    def test_album_share_grant_scoped_to_another_album(self, evaluator):
        """A share grant for album A does not lift the embargo on album B."""
        policy = ResourcePolicy(release_at=NOW + timedelta(days=7))
        entitlements = ScopedEntitlements.of({("album_share_grant", "alb:album-a")})

        decision = evaluator.evaluate_resource(entitlements, policy, scope_id="alb:album-b")
        assert decision.allowed is False
        assert decision.reason is ReasonCode.EMBARGOED
        assert decision.scope_id == "alb:album-b"

        assert evaluator.evaluate_resource(entitlements, policy, scope_id="alb:album-a").allowed is True
        # Without a resource scope only catalog-wide grants count
        assert evaluator.evaluate_resource(entitlements, policy).reason is ReasonCode.EMBARGOED

    # Dispatch, metrics and audit

    def test_evaluate_dispatches_by_requirement(self, evaluator):
        """Test the generic evaluate entrypoint."""
        assert evaluator.evaluate({"admin"}, CapabilityRequirement(frozenset({"admin"}))).allowed
        assert evaluator.evaluate({"tier_friend"}, TierRequirement("friend")).allowed
        assert not evaluator.evaluate(set(), ResourcePolicy(public_page_visible=False)).allowed

        with pytest.raises(TypeError):
            evaluator.evaluate(set(), "friend")

    def test_decisions_are_counted(self, evaluator, metrics):
        """Test decision metrics."""
        evaluator.evaluate_tier({"tier_friend"}, "patron")
        evaluator.evaluate_tier({"tier_friend"}, "patron")

        assert metrics.sample_value(
            "access_decisions_total", mode="resource", allowed="false", reason="TIER_TOO_LOW"
        ) == 2.0

    def test_audit_submitted_only_with_context(self, metrics):
        """Test audit submission."""
        audit = MagicMock()
        evaluator = PolicyEvaluator(audit=audit, metrics=metrics)

        evaluator.evaluate_tier({"tier_friend"}, "friend")
        audit.submit.assert_not_called()

        context = AuditContext(operation="play", member_id="m-1")
        decision = evaluator.evaluate_tier({"tier_friend"}, "friend", context)
        audit.submit.assert_called_once_with(decision, context)

    def test_deny_no_principal(self, evaluator):
        """Test the decision for callers without a member."""
        decision = evaluator.deny_no_principal(TierRequirement("friend"))
        assert decision.allowed is False
        assert decision.reason is ReasonCode.NO_PRINCIPAL
        assert decision.evaluated_tier is Tier.NONE

    def test_decision_to_dict(self, evaluator):
        """Test decision serialization."""
        policy = ResourcePolicy(min_tier_to_load="patron")
        data = evaluator.evaluate_resource({"tier_friend"}, policy).to_dict()
        assert data["allowed"] is False
        assert data["reason"] == "TIER_TOO_LOW"
        assert data["evaluated_tier"] == "friend"
        assert data["requirement"]["min_tier"] == "patron"
