"""Retry/backoff policy.

The policy is a pure function of (attempt_count, max_attempts, base_delay_ms,
growth_factor): the worker pool asks it what to do after every failed attempt
and then applies the answer to the queue.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..models import RetryConfig


class RetryAction(str, Enum):
    REQUEUE = "requeue"
    FINALIZE_FAILED = "finalize_failed"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay_ms: Optional[int] = None

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.REQUEUE


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base_delay_ms * growth_factor ** (attempt - 1).

    With the defaults (3 attempts, 1000ms, x2) a job that always fails is
    retried after 1000ms and then 2000ms, and fails on its third attempt.
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    growth_factor: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms <= 0:
            raise ValueError(f"base_delay_ms must be > 0, got {self.base_delay_ms}")
        # growth_factor <= 1 would allow equal or shrinking delays
        if self.growth_factor <= 1.0:
            raise ValueError(f"growth_factor must be > 1, got {self.growth_factor}")

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            growth_factor=config.growth_factor,
        )

    def compute_delay(self, attempt_count: int) -> int:
        """Delay (ms) before the attempt following attempt number attempt_count."""
        if attempt_count < 1:
            raise ValueError(f"attempt_count must be >= 1, got {attempt_count}")
        delay = 0
        for n in range(1, attempt_count + 1):
            # rounding to whole ms must not flatten a small growth factor
            delay = max(math.ceil(self.base_delay_ms * self.growth_factor ** (n - 1)), delay + 1)
        return delay

    def decide(self, attempt_count: int, max_attempts: Optional[int] = None) -> RetryDecision:
        """Requeue with backoff while attempts remain, else fail terminally.

        max_attempts overrides the policy default; jobs carry their own limit
        from submission.
        """
        limit = max_attempts if max_attempts is not None else self.max_attempts
        if attempt_count < limit:
            return RetryDecision(RetryAction.REQUEUE, self.compute_delay(attempt_count))
        return RetryDecision(RetryAction.FINALIZE_FAILED)
