"""
Shared utilities for the Spark Cloud SDK.

This package aggregates common building blocks consumed by all areas:

- config: Client configuration via pydantic-settings
- logging: Structured logging with session correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Backoff calculation and retry decorator

Any cross-area logic should live here to avoid import cycles. Do not import
from auth/devices/events/subscriptions into shared/.
"""
