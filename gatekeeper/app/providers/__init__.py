"""Outbound call helpers for third-party providers."""

from gatekeeper.app.providers.retry import (
    CallbackRetryObserver,
    LoggingRetryObserver,
    ResilientCallExecutor,
    RetryAttempt,
    RetryObserver,
    RetryPolicy,
    execute_with_retry,
)

__all__ = [
    "CallbackRetryObserver",
    "LoggingRetryObserver",
    "ResilientCallExecutor",
    "RetryAttempt",
    "RetryObserver",
    "RetryPolicy",
    "execute_with_retry",
]
