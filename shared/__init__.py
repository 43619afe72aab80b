"""
Shared utilities for the LLM protocol gateway.

This package aggregates common building blocks consumed by the gateway service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers and dispatch hooks
- errors: Canonical error types and responses
- retry: Retry decorators for collaborator calls
- base_service: FastAPI application scaffolding

Any cross-cutting logic should live here to avoid import cycles. Do not
import from service_gateway into shared/.
"""
