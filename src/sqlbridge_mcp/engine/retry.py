"""Retry policy with capped exponential backoff.

The delay before retry ``n`` (0-based) is ``min(base * 2**n, cap)``. With the
defaults (500 ms base, 5000 ms cap) that is 500, 1000, 2000, 4000, 5000,
5000, ... Optional jitter is added only to the live sleep, never to the
computed delay.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

from .exceptions import DeadlineExceededError, SqlBridgeError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times and how long to wait between attempts.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retrying)
        base_delay_ms: Delay before the first retry
        max_delay_ms: Upper bound for any delay
        jitter_ms: Random extra delay (0..jitter_ms) added to each live sleep
    """

    max_retries: int = 2
    base_delay_ms: int = 500
    max_delay_ms: int = 5000
    jitter_ms: int = 0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0 or self.jitter_ms < 0:
            raise ValueError("retry delays must not be negative")

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        attempt = max(attempt, 0)
        return min(self.base_delay_ms * 2**attempt, self.max_delay_ms) / 1000

    def delays(self) -> Iterator[float]:
        """Every delay this policy would sleep, in order."""
        for attempt in range(self.max_retries):
            yield self.backoff_delay(attempt)

    def should_retry(self, error: SqlBridgeError, attempt: int) -> bool:
        return error.retryable and attempt < self.max_retries

    async def sleep(self, attempt: int) -> None:
        """Suspend the calling task only; jitter applies here."""
        delay = self.backoff_delay(attempt)
        if self.jitter_ms:
            delay += random.uniform(0, self.jitter_ms) / 1000
        await asyncio.sleep(delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    timeout: float,
    classify: Callable[[Exception], SqlBridgeError],
    description: str = "operation",
) -> T:
    """Run ``operation`` with a per-attempt timeout, retrying retryable failures.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Retry policy
        timeout: Seconds allowed for each attempt
        classify: Maps unexpected exceptions onto the error taxonomy
        description: Label used in log and timeout messages

    Returns:
        The operation's result

    Raises:
        SqlBridgeError: The last failure, once it is not retryable or retries
            are exhausted
    """
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(operation(), timeout)
        except TimeoutError as e:
            error: SqlBridgeError = DeadlineExceededError(
                f"{description} exceeded {timeout:g}s timeout"
            )
            cause: Exception = e
        except SqlBridgeError as e:
            error, cause = e, e
        except Exception as e:
            error, cause = classify(e), e

        if not policy.should_retry(error, attempt):
            if error is cause:
                raise error
            raise error from cause

        logger.debug(
            f"Retrying {description} after {error.kind.value} "
            f"(attempt {attempt + 1}/{policy.max_retries}, "
            f"delay {policy.backoff_delay(attempt):g}s)"
        )
        await policy.sleep(attempt)
        attempt += 1
