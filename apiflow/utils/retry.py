from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

from ..config import RetryConfig
from ..constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_MS,
)
from ..errors import ApiflowError


def compute_backoff(
    attempt: int,
    base_ms: float = DEFAULT_BASE_DELAY_MS,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    max_ms: float = DEFAULT_MAX_DELAY_MS,
    jitter_ms: float = 0,
) -> float:
    """Compute capped exponential backoff in milliseconds for ``attempt`` (1-based)."""
    delay = min(base_ms * multiplier ** (attempt - 1), max_ms)
    if jitter_ms:
        delay += random.uniform(0, jitter_ms)
    return delay


def is_retryable(error: BaseException) -> bool:
    """Network errors, 5xx responses and call timeouts are retryable."""
    return isinstance(error, ApiflowError) and error.retryable


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    backoff_ms: float = 0.0


class RetryPolicy:
    """Decide whether a failed step attempt is tried again and after how long.

    ``execution_budget`` optionally caps the number of retries across all
    steps of one execution; callers pass the retries already spent as
    ``retries_used``.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
        multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
        jitter_ms: float = 0,
        execution_budget: Optional[int] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.multiplier = multiplier
        self.max_delay_ms = max_delay_ms
        self.jitter_ms = jitter_ms
        self.execution_budget = execution_budget

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            multiplier=config.multiplier,
            max_delay_ms=config.max_delay_ms,
            jitter_ms=config.jitter_ms,
            execution_budget=config.execution_budget,
        )

    def should_retry(
        self,
        error: BaseException,
        attempt: int,
        max_attempts: Optional[int] = None,
        retries_used: int = 0,
    ) -> RetryDecision:
        """Return the decision after ``attempt`` (1-based) failed with ``error``."""
        limit = max_attempts if max_attempts is not None else self.max_attempts
        if not is_retryable(error) or attempt >= limit:
            return RetryDecision(retry=False)
        if self.execution_budget is not None and retries_used >= self.execution_budget:
            return RetryDecision(retry=False)
        return RetryDecision(
            retry=True,
            backoff_ms=compute_backoff(
                attempt,
                self.base_delay_ms,
                self.multiplier,
                self.max_delay_ms,
                self.jitter_ms,
            ),
        )
