"""Retrying HTTP call executor with exponential backoff.

Outbound calls to third-party providers go through ResilientCallExecutor,
which retries server errors (5xx) and network failures with a doubling
delay. Client errors (4xx) are definitive and returned as-is; cancellation
is terminal and always propagated.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Tuple, Type, TypeVar

import httpx

from gatekeeper.app.core.config import Settings
from gatekeeper.app.core.logging import get_log_context, get_logger
from gatekeeper.app.exceptions import RequestAborted

logger = get_logger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, Exception], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Retries after the first attempt (default: 2, so up to
            3 attempts in total)
        base_delay: Delay before the first retry in seconds (default: 1.0)
        exponential_base: Growth factor per retry (default: 2.0)
        retryable_exceptions: Exception types treated as transient failures
            (default: any httpx.RequestError raised while sending the request)

    The delay has no cap and no jitter.

    Example:
        >>> policy = RetryPolicy(max_retries=5, base_delay=1.0)
        >>> delay = policy.calculate_delay(attempt=2)  # Returns 4.0
    """

    max_retries: int = 2
    base_delay: float = 1.0
    exponential_base: float = 2.0
    retryable_exceptions: Tuple[Type[Exception], ...] = (httpx.RequestError,)

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryPolicy":
        return cls(max_retries=config.retry_max_retries, base_delay=config.retry_base_delay)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay after a failed attempt.

        Args:
            attempt: The failed attempt's index (0-indexed)

        Returns:
            Delay in seconds: base_delay * exponential_base ** attempt
        """
        return self.base_delay * (self.exponential_base ** attempt)

    def is_retryable(self, exception: BaseException) -> bool:
        """Check if a raised exception should trigger a retry.

        Cancellation is never retryable, whatever retryable_exceptions holds.
        """
        if isinstance(exception, (RequestAborted, asyncio.CancelledError)):
            return False
        return isinstance(exception, self.retryable_exceptions)

    @staticmethod
    def is_retryable_status(status_code: int) -> bool:
        """Only server errors are transient; everything below 500 is final."""
        return status_code >= 500


@dataclass(frozen=True)
class RetryAttempt:
    """One retry decision within a single execution.

    Attributes:
        attempt: 1-based number of the retry about to happen
        error: Exception that triggered it (an httpx.HTTPStatusError is
            synthesized for 5xx responses)
        delay: Backoff in seconds before the retry is issued
        max_retries: Retry budget of this execution
        method: HTTP method of the call
        url: Target URL of the call
        response: The 5xx response, or None when the call raised
    """

    attempt: int
    error: Exception
    delay: float
    max_retries: int
    method: str
    url: str
    response: Optional[httpx.Response] = field(default=None, repr=False)


class RetryObserver(ABC):
    """Receives an event each time the executor decides to retry."""

    @abstractmethod
    def on_retry(self, attempt: RetryAttempt) -> None:
        """Called before the backoff wait of each retry."""


class CallbackRetryObserver(RetryObserver):
    """Adapts a plain ``callback(attempt_number, error)`` to the observer interface."""

    def __init__(self, callback: RetryCallback):
        self.callback = callback

    def on_retry(self, attempt: RetryAttempt) -> None:
        self.callback(attempt.attempt, attempt.error)


class LoggingRetryObserver(RetryObserver):
    """Logs every retry at WARNING level."""

    def __init__(self, log=None):
        self.log = log or logger

    def on_retry(self, attempt: RetryAttempt) -> None:
        self.log.warning(
            f"Retry {attempt.attempt}/{attempt.max_retries} for {attempt.method} {attempt.url} "
            f"after {type(attempt.error).__name__}: {attempt.error}. Waiting {attempt.delay:.2f}s...",
            extra=get_log_context(
                url=attempt.url,
                attempt=attempt.attempt,
                method=attempt.method,
                delay_seconds=attempt.delay,
                status_code=attempt.response.status_code if attempt.response is not None else None,
            ),
        )


def _server_error(response: httpx.Response) -> httpx.HTTPStatusError:
    message = response.reason_phrase or f"Server error {response.status_code}"
    return httpx.HTTPStatusError(message, request=response.request, response=response)


class ResilientCallExecutor:
    """Issues HTTP requests through a shared client, retrying transient failures.

    Attempts within one execution are strictly sequential and no state is
    kept between executions, so one executor can serve concurrent callers.

    Outcomes:
    - status < 500: returned immediately, never retried
    - status >= 500: retried while budget remains, then the last response
      is returned unmodified
    - retryable exception: retried while budget remains, then re-raised
    - other exception: re-raised immediately
    - cancellation (``signal`` set, or the task cancelled): propagated
      immediately, also when it happens mid-request or mid-backoff
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: Optional[RetryPolicy] = None,
        observers: Optional[Iterable[RetryObserver]] = None,
        sleep: Optional[Sleep] = None,
    ):
        """Initialize the executor.

        Args:
            client: HTTP client used for every attempt
            policy: Retry policy (defaults to RetryPolicy())
            observers: Retry observers (defaults to a LoggingRetryObserver)
            sleep: Awaitable sleep used for backoff (defaults to asyncio.sleep)
        """
        self.client = client
        self.policy = policy or RetryPolicy()
        self.observers: Tuple[RetryObserver, ...] = (
            tuple(observers) if observers is not None else (LoggingRetryObserver(),)
        )
        self._sleep: Sleep = sleep or asyncio.sleep

    async def execute(
        self,
        method: str,
        url: str,
        *,
        signal: Optional[asyncio.Event] = None,
        max_retries: Optional[int] = None,
        observers: Sequence[RetryObserver] = (),
        **request_kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying server errors and network failures.

        Args:
            method: HTTP method
            url: Target URL
            signal: Cancellation event; once set, the execution stops with
                RequestAborted
            max_retries: Override of the policy's retry budget
            observers: Extra observers for this execution only
            **request_kwargs: Passed to httpx.AsyncClient.request
                (headers, json, content, params, timeout, ...)

        Returns:
            The first response below 500, or the last 5xx response once the
            budget is exhausted

        Raises:
            RequestAborted: If ``signal`` is set
            Exception: The last network failure once the budget is exhausted,
                or any non-retryable exception
        """
        retries = self.policy.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValueError("max_retries must not be negative")
        all_observers = (*self.observers, *observers)

        for attempt in range(retries + 1):
            try:
                response = await self._until_aborted(
                    lambda: self.client.request(method, url, **request_kwargs),
                    signal,
                    url,
                )
            except RequestAborted:
                logger.debug(f"{method} {url} aborted by caller", extra=get_log_context(url=url))
                raise
            except Exception as e:
                if not self.policy.is_retryable(e):
                    logger.debug(
                        f"Non-retryable exception for {method} {url}: {type(e).__name__}: {e}",
                        extra=get_log_context(url=url),
                    )
                    raise
                if attempt >= retries:
                    logger.warning(
                        f"Max retries ({retries}) exceeded for {method} {url}: {type(e).__name__}: {e}",
                        extra=get_log_context(url=url, attempts_made=attempt + 1),
                    )
                    raise
                await self._back_off(attempt, retries, e, None, method, url, signal, all_observers)
                continue

            if not self.policy.is_retryable_status(response.status_code):
                return response

            if attempt >= retries:
                logger.warning(
                    f"Max retries ({retries}) exceeded for {method} {url}: "
                    f"returning status {response.status_code}",
                    extra=get_log_context(
                        url=url, attempts_made=attempt + 1, status_code=response.status_code
                    ),
                )
                return response

            await self._back_off(
                attempt, retries, _server_error(response), response, method, url, signal, all_observers
            )

        # range(retries + 1) always returns or raises inside the loop
        raise AssertionError("unreachable")

    async def _back_off(
        self,
        attempt: int,
        retries: int,
        error: Exception,
        response: Optional[httpx.Response],
        method: str,
        url: str,
        signal: Optional[asyncio.Event],
        observers: Sequence[RetryObserver],
    ) -> None:
        event = RetryAttempt(
            attempt=attempt + 1,
            error=error,
            delay=self.policy.calculate_delay(attempt),
            max_retries=retries,
            method=method,
            url=url,
            response=response,
        )
        for observer in observers:
            observer.on_retry(event)
        await self._until_aborted(lambda: self._sleep(event.delay), signal, url)

    async def _until_aborted(
        self,
        make_awaitable: Callable[[], Awaitable[T]],
        signal: Optional[asyncio.Event],
        url: str,
    ) -> T:
        """Await ``make_awaitable()``, raising RequestAborted as soon as ``signal`` is set."""
        if signal is None:
            return await make_awaitable()
        if signal.is_set():
            raise RequestAborted(url)

        work = asyncio.ensure_future(make_awaitable())
        waiter = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [task for task in (work, waiter) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)

        if signal.is_set():
            if not work.cancelled():
                # Retrieve the outcome so a failed attempt is not reported as unhandled
                work.exception()
            raise RequestAborted(url)
        return work.result()


async def execute_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    retry_budget: Optional[int] = None,
    signal: Optional[asyncio.Event] = None,
    on_retry: Optional[RetryCallback] = None,
    policy: Optional[RetryPolicy] = None,
    sleep: Optional[Sleep] = None,
    **request_kwargs: Any,
) -> httpx.Response:
    """Send one request with retry and exponential backoff.

    Convenience wrapper around ResilientCallExecutor for one-off calls.

    Args:
        client: HTTP client to send the request with
        method: HTTP method
        url: Target URL
        retry_budget: Retries after the first attempt (default: policy's, 2)
        signal: Cancellation event
        on_retry: Called as ``on_retry(attempt_number, error)`` before each
            backoff wait; attempt numbers start at 1
        policy: Retry policy (defaults to RetryPolicy())
        sleep: Awaitable sleep used for backoff (defaults to asyncio.sleep)
        **request_kwargs: Passed to httpx.AsyncClient.request

    Example:
        >>> response = await execute_with_retry(
        ...     client, "POST", "https://api.openai.com/v1/chat/completions",
        ...     json=payload, on_retry=lambda n, err: print(n, err),
        ... )
    """
    policy = policy or RetryPolicy()
    if retry_budget is not None:
        policy = replace(policy, max_retries=retry_budget)

    observers: list[RetryObserver] = [LoggingRetryObserver()]
    if on_retry is not None:
        observers.append(CallbackRetryObserver(on_retry))

    executor = ResilientCallExecutor(client, policy=policy, observers=observers, sleep=sleep)
    return await executor.execute(method, url, signal=signal, **request_kwargs)
