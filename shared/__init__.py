"""
Shared utilities for the Credential Broker.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry helpers with pluggable backoff
- base_service: FastAPI service scaffolding

Do not import from service_* packages into shared/.
"""
