"""Backoff utilities for reconnecting to transiently failing resources.

Features:
- Configurable exponential backoff with jitter
- Metrics integration for monitoring retry behavior

Usage:
    from damp.core.retry import RetryConfig, calculate_delay

    config = RetryConfig(base_delay=1.0, max_delay=30.0)
    await asyncio.sleep(calculate_delay(attempt, config))
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from prometheus_client import Counter

from damp.core.logging import get_logger

logger = get_logger(__name__)

# =============================================================================
# Prometheus Metrics
# =============================================================================

RETRY_ATTEMPTS_TOTAL = Counter(
    "damp_retry_attempts_total",
    "Total number of retry attempts",
    labelnames=["operation"],
)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (None means unbounded)
        base_delay: Base delay in seconds before first retry
        max_delay: Maximum delay cap in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Jitter factor (0.0-1.0) for randomizing delays
    """

    max_retries: int | None = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def should_retry(self, attempt: int) -> bool:
        return self.max_retries is None or attempt <= self.max_retries


DEFAULT_CONFIG = RetryConfig()

RECONNECT_CONFIG = RetryConfig(
    max_retries=None,
    base_delay=1.0,
    max_delay=30.0,
    jitter=0.1,
)


# =============================================================================
# Backoff Calculation
# =============================================================================


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for a retry attempt using exponential backoff with jitter.

    The delay is calculated as:
        delay = base_delay * (exponential_base ^ (attempt - 1))
        delay = min(delay, max_delay)
        delay = delay * (1 - jitter + random(0, 2*jitter))

    Args:
        attempt: The retry attempt number (1-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before the next retry
    """
    exponent = max(attempt - 1, 0)
    # Cap the exponent so huge attempt counts cannot overflow the float
    delay = config.base_delay * (config.exponential_base ** min(exponent, 64))

    delay = min(delay, config.max_delay)

    # random.random() is fine here; this only spreads out reconnect timing.
    if config.jitter > 0:
        jitter_range = delay * config.jitter
        delay = delay - jitter_range + (random.random() * 2 * jitter_range)  # noqa: S311

    return max(0.0, delay)


def record_retry(operation: str, attempt: int, delay: float, error: str | None = None) -> None:
    """Count a retry attempt and log the scheduled delay."""
    RETRY_ATTEMPTS_TOTAL.labels(operation=operation).inc()
    logger.info(
        f"Retrying {operation} (attempt {attempt}) in {delay:.2f}s",
        extra={"operation": operation, "attempt": attempt, "delay": delay, "error": error},
    )
