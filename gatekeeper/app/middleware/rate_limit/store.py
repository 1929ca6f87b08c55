"""In-memory fixed window rate limiter.

Counts requests per identifier in fixed windows that reset sharply when they
expire. A client can therefore pass up to twice the quota in a short span
straddling two windows.

State lives in process memory only: counters are lost on restart and are not
shared between instances. Entries are never evicted, so the store grows by one
entry per distinct identifier seen. Multi-instance deployments need an
external shared counter instead.
"""

import threading
import time
from typing import Callable, Dict, List, Optional

from gatekeeper.app.core.config import Settings
from gatekeeper.app.middleware.rate_limit.models import AdmissionDecision, WindowEntry

Clock = Callable[[], float]


class FixedWindowRateLimiter:
    """Per-identifier fixed window counter with striped locking.

    The lookup / reset-or-increment sequence for an identifier runs under one
    of ``lock_stripes`` locks chosen by the identifier's hash, so concurrent
    checks on the same identifier never lose an update while identifiers on
    other stripes proceed independently. The critical section never awaits,
    so the same lock works for event loop callers and threadpool handlers.
    """

    DEFAULT_REQUESTS_PER_WINDOW = 60
    DEFAULT_WINDOW_SECONDS = 60
    DEFAULT_LOCK_STRIPES = 64

    def __init__(
        self,
        requests_per_window: int = DEFAULT_REQUESTS_PER_WINDOW,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        lock_stripes: int = DEFAULT_LOCK_STRIPES,
        clock: Optional[Clock] = None,
    ):
        """Initialize rate limiter.

        Args:
            requests_per_window: Quota per identifier per window
            window_seconds: Window length in seconds
            lock_stripes: Number of locks identifiers are spread across
            clock: Returns the current epoch time in seconds (time.time)
        """
        if requests_per_window < 1:
            raise ValueError("requests_per_window must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if lock_stripes < 1:
            raise ValueError("lock_stripes must be at least 1")

        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self._clock = clock or time.time
        self._entries: Dict[str, WindowEntry] = {}
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(lock_stripes)]

    @classmethod
    def from_settings(cls, config: Settings, clock: Optional[Clock] = None) -> "FixedWindowRateLimiter":
        return cls(
            requests_per_window=config.rate_limit_requests_per_window,
            window_seconds=config.rate_limit_window_seconds,
            lock_stripes=config.rate_limit_lock_stripes,
            clock=clock,
        )

    def _lock_for(self, identifier: str) -> threading.Lock:
        return self._locks[hash(identifier) % len(self._locks)]

    def check(self, identifier: str) -> AdmissionDecision:
        """Count a request for ``identifier`` and decide whether to admit it.

        Denied requests are counted too, so a client hammering past its quota
        keeps its counter growing until the window rolls over. Never raises.
        """
        with self._lock_for(identifier):
            now = self._clock()
            entry = self._entries.get(identifier)

            if entry is None or now > entry.reset_at:
                entry = WindowEntry(count=1, reset_at=now + self.window_seconds)
                self._entries[identifier] = entry
            else:
                entry.count += 1

            count = entry.count
            reset_at = entry.reset_at

        return AdmissionDecision(
            allowed=count <= self.requests_per_window,
            limit=self.requests_per_window,
            remaining=max(0, self.requests_per_window - count),
            reset_at=reset_at,
        )

    # Alias matching the request-handler interface name
    check_admission = check

    def get_entry(self, identifier: str) -> Optional[WindowEntry]:
        """Return a copy of the stored entry for ``identifier``, if any."""
        with self._lock_for(identifier):
            entry = self._entries.get(identifier)
            if entry is None:
                return None
            return WindowEntry(count=entry.count, reset_at=entry.reset_at)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries
