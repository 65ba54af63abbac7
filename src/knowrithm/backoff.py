"""
Retry Backoff - decides whether a failed attempt is retried and how long to wait.

Attempt indices are 0-based: attempt ``k`` waits
``round(base_delay_ms * multiplier ** k)`` milliseconds before attempt ``k + 1``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from knowrithm.config import DEFAULT_RETRYABLE_STATUS_CODES

if TYPE_CHECKING:
    from knowrithm.config import RetryConfig

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Categories of transport failures for retry decisions."""

    TIMEOUT = "timeout"  # Connect/read/write/pool timeouts
    CONNECTION = "connection"  # Refused, reset, DNS, protocol errors
    HTTP_STATUS = "http_status"  # A response arrived with an error status
    UNKNOWN = "unknown"  # Unclassified errors


def categorize_error(error: BaseException) -> ErrorCategory:
    """Categorize an exception raised by the transport."""
    if isinstance(error, httpx.TimeoutException):
        return ErrorCategory.TIMEOUT
    if isinstance(error, httpx.HTTPStatusError):
        return ErrorCategory.HTTP_STATUS
    if isinstance(error, httpx.TransportError):
        return ErrorCategory.CONNECTION
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.CONNECTION
    return ErrorCategory.UNKNOWN


def is_transient_transport_error(error: BaseException) -> bool:
    """Default predicate: timeouts and connection failures are retryable."""
    return categorize_error(error) in (ErrorCategory.TIMEOUT, ErrorCategory.CONNECTION)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one logical call."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    multiplier: float = 1.5
    retryable_statuses: frozenset[int] = frozenset(DEFAULT_RETRYABLE_STATUS_CODES)
    is_transport_error_retryable: Callable[[BaseException], bool] = is_transient_transport_error

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not isinstance(self.retryable_statuses, frozenset):
            object.__setattr__(self, "retryable_statuses", frozenset(self.retryable_statuses))

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_retries,
            base_delay_ms=config.retry_delay_ms,
            multiplier=config.backoff_multiplier,
            retryable_statuses=frozenset(config.retryable_status_codes),
        )

    def with_overrides(
        self,
        *,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        multiplier: float | None = None,
        retryable_statuses: Iterable[int] | None = None,
    ) -> RetryPolicy:
        """Return a copy with every non-None override applied."""
        changes: dict[str, Any] = {}
        if max_attempts is not None:
            changes["max_attempts"] = max(1, max_attempts)
        if base_delay_ms is not None:
            changes["base_delay_ms"] = base_delay_ms
        if multiplier is not None:
            changes["multiplier"] = multiplier
        if retryable_statuses is not None:
            changes["retryable_statuses"] = frozenset(retryable_statuses)
        if not changes:
            return self
        return replace(self, **changes)

    def compute_delay(self, attempt: int) -> int:
        """Compute the delay in milliseconds after a failed attempt (0-indexed)."""
        if self.base_delay_ms <= 0:
            return 0
        return max(0, round(self.base_delay_ms * (self.multiplier**attempt)))

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_attempts - 1

    def should_retry_status(self, status: int, attempt: int) -> bool:
        """Retry an error response only if its status is retryable and budget remains."""
        return status in self.retryable_statuses and self.has_attempts_left(attempt)

    def should_retry_error(
        self,
        error: BaseException,
        attempt: int,
        status: int | None = None,
    ) -> bool:
        """Retry a transport failure.

        Timeouts and connection failures follow the transport predicate; any
        other failure is retried only when it carries a retryable status.
        """
        if not self.has_attempts_left(attempt):
            return False
        if self.is_transport_error_retryable(error):
            return True
        return status is not None and status in self.retryable_statuses


@dataclass
class RetryState:
    """State tracking for retry attempts of one call."""

    attempt: int = 0
    total_delay_ms: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    def record_retry(self, reason: str, delay_ms: int) -> None:
        """Record a retried failure and the delay applied before the next attempt."""
        self.errors.append(reason)
        self.total_delay_ms += delay_ms

    @property
    def elapsed(self) -> float:
        """Total elapsed time including delays."""
        return time.monotonic() - self.started_at
