"""Middleware package exports."""

from gateway.middleware.correlation_id import CorrelationIdMiddleware
from gateway.middleware.logging import LoggingMiddleware
from gateway.middleware.rate_limit import RateLimitMiddleware

__all__ = [
    "CorrelationIdMiddleware",
    "LoggingMiddleware",
    "RateLimitMiddleware",
]
