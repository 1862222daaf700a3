"""Explicit retry policy with exponential backoff, driven by tenacity."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import FatalError, OracleUnavailable, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings of transport errors that are worth another attempt.
_RETRYABLE_PATTERNS = (
    "network",
    "timeout",
    "timed out",
    "connection",
    "econnrefused",
    "etimedout",
    "rate limit",
    "too many requests",
    "service unavailable",
    "gateway timeout",
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            multiplier=config.multiplier,
            max_delay=config.max_delay_seconds,
        )

    def wait(self) -> wait_exponential:
        return wait_exponential(
            multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay
        )

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, (ValidationError, FatalError)):
            return False
        if isinstance(error, (asyncio.TimeoutError, ConnectionError, OracleUnavailable)):
            return True
        message = str(error).lower()
        return any(pattern in message for pattern in _RETRYABLE_PATTERNS)


def _log_retry(description: str, policy: RetryPolicy) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s failed (attempt %d/%d): %s; retrying in %.1fs",
            description, retry_state.attempt_number, policy.max_attempts, error, delay,
        )

    return log


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds, a non-retryable error occurs,
    or ``policy.max_attempts`` is exhausted (the last error is re-raised)."""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait(),
        retry=retry_if_exception(policy.is_retryable),
        before_sleep=_log_retry(description, policy),
        sleep=sleep,
        reraise=True,
    )
    return await retrying(operation)
