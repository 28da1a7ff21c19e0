"""
Shared utilities for the URL Redirector service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request and refresh correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators for outbound calls
- base_service: FastAPI service skeleton with health and metrics routes

Do not import from service_* packages into shared/.
"""
