"""
Shared utilities for the Curve Data API.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators and management
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service base class

Do not import from service packages into shared/.
"""
