"""Core utilities for the gatekeeper application."""

from gatekeeper.app.core.config import Settings, settings
from gatekeeper.app.core.http_client import create_http_client, init_http_client
from gatekeeper.app.core.logging import get_logger, setup_logging

__all__ = [
    "Settings",
    "settings",
    "create_http_client",
    "init_http_client",
    "get_logger",
    "setup_logging",
]
