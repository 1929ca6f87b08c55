"""Rate limiting data models.

This module contains dataclasses for fixed window state and admission results.
"""

from dataclasses import dataclass


@dataclass
class WindowEntry:
    """Counter state for one identifier within its current fixed window."""
    count: int
    reset_at: float


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of an admission check.

    A denied decision is data, not an error: callers translate
    ``allowed=False`` into a 429 response themselves.
    """
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    @property
    def reset_epoch(self) -> int:
        """Window expiry as whole epoch seconds, for response headers."""
        return int(self.reset_at)
