from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gatekeeper.app.core.config import Settings, settings as default_settings
from gatekeeper.app.core.http_client import init_http_client
from gatekeeper.app.core.logging import get_logger, setup_logging
from gatekeeper.app.exceptions import GatekeeperError
from gatekeeper.app.middleware.rate_limit import FixedWindowRateLimiter, RateLimitMiddleware
from gatekeeper.app.providers.retry import ResilientCallExecutor, RetryPolicy


def create_app(
    config: Optional[Settings] = None,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
    **http_client_kwargs: Any,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Settings to build the app from (defaults to global settings)
        rate_limiter: Pre-built limiter; a fresh one is created from
            settings on each startup otherwise
        **http_client_kwargs: Extra arguments for the shared httpx client
            (e.g. ``transport`` in tests)

    Returns:
        Configured FastAPI application instance
    """
    config = config or default_settings
    setup_logging(config)
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Own the rate limit store and the shared HTTP client.

        The store starts empty on every startup and is simply dropped on
        shutdown; counters never outlive the process.
        """
        app.state.rate_limiter = (
            rate_limiter if rate_limiter is not None else FixedWindowRateLimiter.from_settings(config)
        )

        async with init_http_client(config, **http_client_kwargs) as http_client:
            app.state.http_client = http_client
            app.state.retrying_executor = ResilientCallExecutor(
                http_client, policy=RetryPolicy.from_settings(config)
            )
            logger.info(
                "Application startup complete",
                extra={
                    "requests_per_window": config.rate_limit_requests_per_window,
                    "window_seconds": config.rate_limit_window_seconds,
                    "retry_max_retries": config.retry_max_retries,
                },
            )
            yield

        app.state.retrying_executor = None
        app.state.http_client = None
        app.state.rate_limiter = None
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Gatekeeper",
        description="Per-client admission control and retrying outbound calls",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        RateLimitMiddleware,
        exempt_paths=config.rate_limit_exempt_paths,
    )

    @app.exception_handler(GatekeeperError)
    async def gatekeeper_error_handler(request: Request, exc: GatekeeperError) -> JSONResponse:
        """Map gatekeeper exceptions to JSON responses with their status code."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error_code, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled exceptions server-side; never send tracebacks to clients."""
        logger.exception(
            "Unhandled exception",
            extra={"path": request.url.path, "method": request.method},
        )
        message = str(exc) if config.debug else "Internal server error"
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": message},
        )

    return app


app = create_app()
