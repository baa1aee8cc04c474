"""
Retry Policy for Pickrr
Exponential backoff and retryable-error classification for queued webhook jobs.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List

from .exceptions import ExternalServiceError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    initial_delay: float = 5.0
    max_delay: float = 300.0
    exponential_base: float = 2.0
    jitter: bool = False
    jitter_factor: float = 0.5  # Random factor 0.5-1.5x

    # Retryable error patterns (substrings in error messages)
    retryable_errors: List[str] = field(default_factory=lambda: [
        "timeout",
        "connection",
        "temporary",
        "rate limit",
        "locked",
        "503",
        "502",
        "504",
        "network",
        "reset",
        "refused",
    ])

    # Non-retryable error patterns
    non_retryable_errors: List[str] = field(default_factory=lambda: [
        "invalid",
        "unauthorized",
        "forbidden",
        "bad request",
        "400",
        "401",
        "403",
    ])


@dataclass
class RetryStats:
    """Statistics for retry decisions."""
    total_failures: int = 0
    scheduled_retries: int = 0
    dropped: int = 0
    last_error: Optional[str] = None
    last_error_time: Optional[float] = None


class RetryHandler:
    """
    Decide whether and when a failed unit of work runs again.

    Queued jobs are retried out-of-process by the worker, so this
    handler never sleeps itself; it hands back the next delay.
    """

    def __init__(self, config: RetryConfig = None):
        self.config = config or RetryConfig()
        self._stats = RetryStats()

    def is_retryable(self, error: Exception) -> bool:
        """Determine if an error is retryable."""
        if isinstance(error, ValidationError):
            return False
        if isinstance(error, PersistenceError):
            return True
        if isinstance(error, ExternalServiceError) and error.status:
            # 4xx other than 429 is permanent
            return error.status >= 500 or error.status == 429

        error_str = str(error).lower()

        for pattern in self.config.non_retryable_errors:
            if pattern.lower() in error_str:
                return False

        for pattern in self.config.retryable_errors:
            if pattern.lower() in error_str:
                return True

        # Anything else is treated as transient: the job is idempotent
        return not isinstance(error, (TypeError, ValueError, KeyError))

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay with exponential backoff and optional jitter."""
        delay = self.config.initial_delay * (
            self.config.exponential_base ** (attempt - 1)
        )
        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            jitter_range = self.config.jitter_factor
            jitter = 1.0 + (random.random() * 2 - 1) * jitter_range
            delay = delay * jitter

        return max(0.1, delay)

    def next_delay(
        self,
        error: Exception,
        attempt: int,
        max_attempts: int = None,
    ) -> Optional[float]:
        """
        Record a failure and return the delay before the next attempt.

        Args:
            error: Exception raised by the attempt
            attempt: Number of the attempt that just failed (1-based)
            max_attempts: Override max attempts (optional)

        Returns:
            Seconds to wait, or None when the work should be dropped
        """
        max_attempts = max_attempts or self.config.max_attempts
        self._stats.total_failures += 1
        self._stats.last_error = str(error)
        self._stats.last_error_time = datetime.now().timestamp()

        if not self.is_retryable(error):
            logger.warning(f"Non-retryable error after attempt {attempt}: {error}")
            self._stats.dropped += 1
            return None

        if attempt >= max_attempts:
            logger.error(f"Giving up after {attempt} attempts: {error}")
            self._stats.dropped += 1
            return None

        self._stats.scheduled_retries += 1
        return self.calculate_delay(attempt)

    def get_stats(self) -> dict:
        """Get retry statistics."""
        return {
            "total_failures": self._stats.total_failures,
            "scheduled_retries": self._stats.scheduled_retries,
            "dropped": self._stats.dropped,
            "last_error": self._stats.last_error,
            "last_error_time": self._stats.last_error_time,
        }
