"""RetryPolicy — error classification and exponential backoff."""

from __future__ import annotations

from datetime import timedelta

from expensebot.core.config.schema import RetryConfig
from expensebot.core.scheduling.errors import SchedulingError
from expensebot.core.scheduling.types import CategorizedError, ErrorCategory

# Checked in order; the first category whose keyword appears in the message wins
_PATTERNS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.NETWORK, ("network", "fetch")),
    (ErrorCategory.AUTHENTICATION, ("auth", "token", "unauthorized")),
    (ErrorCategory.VALIDATION, ("validation", "invalid")),
    (ErrorCategory.RATE_LIMIT, ("rate limit", "too many")),
]


class RetryPolicy:
    """Maps failures to a :class:`CategorizedError` and computes retry delays."""

    def __init__(self, config: RetryConfig | None = None, max_retries: int = 3):
        self.config = config or RetryConfig()
        self.max_retries = max_retries
        self._fixed_delays: dict[ErrorCategory, timedelta] = {
            ErrorCategory.NETWORK: timedelta(milliseconds=self.config.network_delay_ms),
            ErrorCategory.AUTHENTICATION: timedelta(
                milliseconds=self.config.authentication_delay_ms
            ),
            ErrorCategory.RATE_LIMIT: timedelta(milliseconds=self.config.rate_limit_delay_ms),
        }

    def classify(self, error: BaseException) -> CategorizedError:
        message = str(error) or type(error).__name__

        # Engine-raised errors declare their own category
        if isinstance(error, SchedulingError):
            return self._categorized(error.category, message, error.retryable)

        lowered = message.lower()
        for category, keywords in _PATTERNS:
            if any(k in lowered for k in keywords):
                return self._categorized(
                    category, message, category is not ErrorCategory.VALIDATION
                )
        return self._categorized(ErrorCategory.SYSTEM, message, True)

    def backoff_delay(self, retry_count: int, error: CategorizedError) -> timedelta:
        """Explicit category delay if any, else ``min(base * multiplier**n, max)``."""
        if error.retry_delay is not None:
            return error.retry_delay
        cfg = self.config
        delay_ms = min(
            cfg.base_delay_ms * cfg.backoff_multiplier ** min(retry_count, 64),
            cfg.max_delay_ms,
        )
        return timedelta(milliseconds=delay_ms)

    def should_retry(self, retry_count: int, error: CategorizedError) -> bool:
        return error.retryable and retry_count < self.max_retries

    def _categorized(
        self, category: ErrorCategory, message: str, retryable: bool
    ) -> CategorizedError:
        return CategorizedError(
            category=category,
            message=message,
            retryable=retryable,
            retry_delay=self._fixed_delays.get(category) if retryable else None,
        )
