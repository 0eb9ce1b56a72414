"""
Shared utilities for the Access Layer permissions engine.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request/account correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- test_helpers: Factories used by unit and integration tests

Any cross-service logic should live here to avoid import cycles across
service packages. Only test_helpers imports from service_permissions;
nothing else in shared/ may.
"""
