"""Retry budget and backoff computation for failed nodes."""

import random
from typing import Optional

from ..models.core import BackoffStrategy, Failure, NodeKind, RetryPolicy, RunOptions
from .logging import get_logger


logger = get_logger(__name__)


class RetryHandler:
    """Applies a :class:`RetryPolicy` to node failures.

    Attempts are counted the way the node state machine counts them: the
    first execution is attempt 1, so a policy with ``max_retries=2`` allows
    attempts 1, 2 and 3.
    """

    def __init__(self, policy: RetryPolicy, rng: Optional[random.Random] = None):
        self.policy = policy
        self._rng = rng or random.Random()

    @classmethod
    def for_kind(cls, options: RunOptions, kind: NodeKind, rng: Optional[random.Random] = None) -> "RetryHandler":
        return cls(options.policy_for(kind), rng=rng)

    @property
    def max_retries(self) -> int:
        return self.policy.max_retries

    def should_retry(self, failure: Failure, attempt: int) -> bool:
        """Determine if a failure on the given attempt should be retried.

        Args:
            failure: Outcome of the failed attempt
            attempt: Attempt number that failed, starting at 1

        Returns:
            True when the failure is retryable and the budget is not exhausted
        """
        if not failure.retryable:
            return False
        return attempt <= self.policy.max_retries

    def get_delay(self, attempt: int) -> float:
        """Calculate the backoff delay before retrying after ``attempt``."""
        policy = self.policy
        if policy.backoff == BackoffStrategy.EXPONENTIAL:
            delay = policy.base_delay * (2 ** (max(attempt, 1) - 1))
        else:
            delay = policy.base_delay
        delay = min(delay, policy.max_delay)

        if policy.jitter:
            delay *= 1 + self._rng.uniform(-policy.jitter, policy.jitter)
            delay = min(max(delay, 0.0), policy.max_delay)

        return delay
