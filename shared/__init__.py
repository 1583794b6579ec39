"""
Shared utilities for the tiered credential broker.

This package aggregates common building blocks consumed by services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request/client correlation
- metrics: Prometheus metrics helpers
- errors: Broker error taxonomy and error responses
- retry: Refresh-and-retry-once combinator
- circuit_breaker: Protection for the credential renewal endpoints

Do not import from service packages into shared/.
"""
