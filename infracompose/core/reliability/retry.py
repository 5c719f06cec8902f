"""
Retry policy — bounded retries with exponential backoff and jitter.

Applied at the provisioning call site: only failures flagged
``retryable`` are retried, everything else surfaces immediately.
Each call can also be bounded by a timeout; a call that exceeds it is
treated as a retryable ProvisioningError.
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from infracompose.core.errors import ProvisioningError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """How often and how patiently a provisioning call is retried.

    Args:
        max_attempts: Total attempts, including the first one.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for a single backoff delay.
        timeout: Seconds allowed per attempt (None = unbounded).
        jitter: Fraction of the delay added as random jitter.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    timeout: float | None = 900.0
    jitter: float = 0.3

    @classmethod
    def from_env(cls) -> RetryPolicy:
        """Build a policy from IC_MAX_ATTEMPTS / IC_BASE_DELAY / IC_CALL_TIMEOUT."""
        policy = cls()
        if os.environ.get("IC_MAX_ATTEMPTS"):
            policy.max_attempts = max(1, int(os.environ["IC_MAX_ATTEMPTS"]))
        if os.environ.get("IC_BASE_DELAY"):
            policy.base_delay = float(os.environ["IC_BASE_DELAY"])
        if os.environ.get("IC_CALL_TIMEOUT"):
            timeout = float(os.environ["IC_CALL_TIMEOUT"])
            policy.timeout = timeout if timeout > 0 else None
        return policy

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1, base_delay=0.0, timeout=None)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)


def call_with_timeout(fn: Callable[[], T], timeout: float | None) -> T:
    """Run fn, giving up after ``timeout`` seconds.

    The worker thread cannot be killed; a timed-out call keeps running
    in the background while the caller moves on.
    """
    if not timeout:
        return fn()

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            raise ProvisioningError(
                f"call timed out after {timeout:g}s", retryable=True
            ) from None
    finally:
        executor.shutdown(wait=False)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    label: str = "",
    sleep: Callable[[float], Any] = time.sleep,
) -> tuple[T, int]:
    """Call fn under the policy.

    Returns:
        (result, attempts used).

    Raises:
        ProvisioningError: The last error, when it is not retryable or
            the attempts are exhausted. ``attempts`` is set on it.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return call_with_timeout(fn, policy.timeout), attempt
        except ProvisioningError as e:
            e.attempts = attempt
            if not e.retryable or attempt >= policy.max_attempts:
                if e.retryable:
                    logger.warning("%s failed after %d attempts: %s", label, attempt, e)
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "%s failed (attempt %d/%d, retryable): %s — retrying in %.1fs",
                label,
                attempt,
                policy.max_attempts,
                e,
                delay,
            )
            sleep(delay)
