"""
Access Service package for the Membership Access Layer.

This package answers "may this principal do this thing". It provides:

- app.main: API surface for access checks, admin entitlement operations
  and campaign audience sizing.
- app.tiers: Tier enum, key registry and TierResolver.
- app.policy: PolicyEvaluator and the decision/requirement models.
- app.guards: capability, tier and resource guard entrypoints.
- app.audit: fire-and-forget decision auditing.
- app.persistence: PostgreSQL and in-memory entitlement stores.
- app.admin: grant/revoke/list and audience sizing.

Guidelines:
- The service is stateless; every decision re-reads active entitlements.
- Never cache a tier or a decision across requests.
- Fail closed on any store error or timeout.
"""
