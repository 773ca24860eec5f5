"""
Shared utilities for the Membership Access Layer.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI service skeleton (health, metrics, error handlers)

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
