"""Async retry with bounded exponential backoff.

Used for every single-record call against the embedding and index backends.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from shared.exceptions import TransientClientError
from shared.helper.HelperConfig import HelperConfig


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including the first try)
        initial_delay_ms: Delay before the second attempt
        max_delay_ms: Upper bound for a single delay
        backoff_multiplier: Multiplier applied per attempt
        jitter: Whether to vary each delay by +/-25%
    """
    max_attempts: int = 3
    initial_delay_ms: float = 500.0
    max_delay_ms: float = 8000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_config(cls, helper_config: HelperConfig) -> "RetryConfig":
        """Build a RetryConfig from the SYNC_RETRY_* environment variables."""
        return cls(
            max_attempts=int(helper_config.get_number_val("SYNC_RETRY_ATTEMPTS", default=3)),
            initial_delay_ms=float(helper_config.get_number_val("SYNC_RETRY_INITIAL_DELAY_MS", default=500)),
            max_delay_ms=float(helper_config.get_number_val("SYNC_RETRY_MAX_DELAY_MS", default=8000)),
        )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate the delay in seconds after a failed attempt.

    Args:
        attempt: Attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay_ms = min(
        config.initial_delay_ms * (config.backoff_multiplier ** attempt),
        config.max_delay_ms,
    )
    if config.jitter:
        delay_ms *= 0.75 + (random.random() * 0.5)
    return delay_ms / 1000.0


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    config: RetryConfig,
    logger,
    retry_on: tuple = (TransientClientError,),
    operation_name: str = "operation",
) -> Any:
    """
    Await an operation, retrying on the given exception types with backoff.

    Errors outside ``retry_on`` propagate immediately. When all attempts
    fail, the last error is re-raised.

    Args:
        operation: Zero-argument coroutine factory
        config: Retry configuration
        logger: Logger used for attempt reporting
        retry_on: Exception types that trigger another attempt
        operation_name: Name for logging

    Returns:
        Whatever the operation returns.
    """
    for attempt in range(config.max_attempts):
        try:
            result = await operation()
            if attempt > 0:
                logger.info("%s succeeded after %d attempts.", operation_name, attempt + 1)
            return result
        except retry_on as e:
            logger.warning(
                "%s failed on attempt %d/%d: %s",
                operation_name, attempt + 1, config.max_attempts, e,
            )
            if attempt >= config.max_attempts - 1:
                logger.error("%s exhausted all %d attempts.", operation_name, config.max_attempts)
                raise
            await asyncio.sleep(calculate_delay(attempt, config))
