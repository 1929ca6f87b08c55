"""Middleware package for the gatekeeper."""

from gatekeeper.app.middleware.rate_limit import RateLimitMiddleware

__all__ = [
    "RateLimitMiddleware",
]
