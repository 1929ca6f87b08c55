"""HTTP client construction for outbound calls.

The application lifespan builds one pooled client and keeps it on
``app.state``; every outbound call made through the retrying executor
reuses that client for connection reuse.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx

from gatekeeper.app.core.config import Settings, settings as default_settings


def create_http_client(config: Optional[Settings] = None, **kwargs) -> httpx.AsyncClient:
    """Create a new HTTP client with granular timeouts and pool limits.

    The returned client should be closed when done:
        async with create_http_client() as client:
            ...

    Args:
        config: Settings providing the httpx_* defaults
        **kwargs: Extra keyword arguments passed to httpx.AsyncClient
            (e.g. transport, base_url, headers). A ``timeout`` given here
            overrides the granular timeouts.

    Returns:
        A new httpx.AsyncClient instance.
    """
    config = config or default_settings

    timeout = kwargs.pop("timeout", None)
    if timeout is None:
        timeout = httpx.Timeout(
            connect=config.httpx_connect_timeout,
            read=config.httpx_read_timeout,
            write=config.httpx_write_timeout,
            pool=config.httpx_pool_timeout,
        )
    elif not isinstance(timeout, httpx.Timeout):
        timeout = httpx.Timeout(timeout)

    limits = kwargs.pop("limits", None) or httpx.Limits(
        max_connections=config.httpx_max_connections,
        max_keepalive_connections=config.httpx_max_keepalive_connections,
        keepalive_expiry=config.httpx_keepalive_expiry,
    )
    return httpx.AsyncClient(timeout=timeout, limits=limits, **kwargs)


@asynccontextmanager
async def init_http_client(
    config: Optional[Settings] = None, **kwargs
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Create the shared HTTP client and close it on exit.

    Intended for the FastAPI lifespan:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with init_http_client(settings) as client:
                app.state.http_client = client
                yield
    """
    client = create_http_client(config, **kwargs)
    try:
        yield client
    finally:
        await client.aclose()
