"""FastAPI dependencies for the boundary resilience primitives.

Both primitives are created by the application lifespan and stored on
``app.state``; route handlers receive them through these dependencies
instead of importing module-level singletons.

Usage:
    from gatekeeper.app.dependencies import RetryingExecutorDep

    @app.post("/chat")
    async def chat(payload: dict, executor: RetryingExecutorDep):
        response = await executor.execute("POST", UPSTREAM_URL, json=payload)
        return response.json()
"""

from typing import Annotated

from fastapi import Depends, Request

from gatekeeper.app.middleware.rate_limit import FixedWindowRateLimiter
from gatekeeper.app.providers.retry import ResilientCallExecutor


def _from_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise RuntimeError(f"{name} not initialized. Ensure lifespan context is active.")
    return value


def get_rate_limiter(request: Request) -> FixedWindowRateLimiter:
    return _from_state(request, "rate_limiter")


def get_retrying_executor(request: Request) -> ResilientCallExecutor:
    return _from_state(request, "retrying_executor")


RateLimiterDep = Annotated[FixedWindowRateLimiter, Depends(get_rate_limiter)]
RetryingExecutorDep = Annotated[ResilientCallExecutor, Depends(get_retrying_executor)]

__all__ = [
    "get_rate_limiter",
    "get_retrying_executor",
    "RateLimiterDep",
    "RetryingExecutorDep",
]
