"""
Shared utilities for the ClawCloud services.

This package aggregates common building blocks consumed by the ledger node
and the provisioner:

- config: Service configuration via pydantic-settings
- logging: Structured logging with entitlement correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator with backoff
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service skeleton (health, metrics, error handlers)

Do not import from service_* packages into shared/.
"""
