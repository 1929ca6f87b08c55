"""Admission control middleware for the gatekeeper.

Every inbound request is resolved to a client identifier and checked against
a fixed window rate limiter before any route handler runs.
"""

from typing import Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from gatekeeper.app.core.logging import get_log_context, get_logger
from gatekeeper.app.middleware.rate_limit.identifier import (
    UNKNOWN_IDENTIFIER,
    resolve_client_identifier,
)
from gatekeeper.app.middleware.rate_limit.models import AdmissionDecision, WindowEntry
from gatekeeper.app.middleware.rate_limit.store import FixedWindowRateLimiter

logger = get_logger(__name__)

__all__ = [
    # Models
    "AdmissionDecision",
    "WindowEntry",
    # Identifier resolution
    "UNKNOWN_IDENTIFIER",
    "resolve_client_identifier",
    # Store
    "FixedWindowRateLimiter",
    # Middleware
    "RateLimitMiddleware",
    "rate_limit_headers",
]

RATE_LIMITED_MESSAGE = "Too many requests. Please try again later."


def rate_limit_headers(decision: AdmissionDecision) -> dict[str, str]:
    """Build the X-RateLimit-* headers describing a decision."""
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_epoch),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce per-client admission control.

    The limiter is either passed in directly or looked up on
    ``app.state.rate_limiter``, where the application lifespan stores it.
    Denied requests get a 429 response and never reach the route.
    """

    def __init__(
        self,
        app,
        limiter: Optional[FixedWindowRateLimiter] = None,
        exempt_paths: Iterable[str] = (),
    ):
        super().__init__(app)
        self._limiter = limiter
        self.exempt_paths = frozenset(exempt_paths)

    def _get_limiter(self, request: Request) -> FixedWindowRateLimiter:
        if self._limiter is not None:
            return self._limiter
        limiter = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            raise RuntimeError(
                "Rate limiter not initialized. Ensure lifespan context is active."
            )
        return limiter

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with admission control."""
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        limiter = self._get_limiter(request)
        identifier = resolve_client_identifier(request.headers)
        decision = limiter.check(identifier)
        headers = rate_limit_headers(decision)

        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    identifier=identifier,
                    path=request.url.path,
                    method=request.method,
                    status_code=429,
                ),
            )
            headers["Retry-After"] = str(int(limiter.window_seconds))
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limit_exceeded",
                    "message": RATE_LIMITED_MESSAGE,
                },
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
