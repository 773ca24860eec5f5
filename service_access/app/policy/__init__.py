"""
Policy evaluation package.

- models: requirement shapes, ResourcePolicy, AccessDecision, reason codes.
- evaluator: PolicyEvaluator, the one place allow/deny is computed.
"""
