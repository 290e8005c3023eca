"""
Bounded exponential backoff used by the job runner.
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration for stage execution.

    Attributes
    ----------
    max_attempts:
        Total attempts per stage, including the first one.
    base_delay:
        Delay in seconds before the first retry.
    max_delay:
        Upper bound for a single delay.
    exponential_base:
        Multiplier applied per attempt.
    jitter:
        Multiply each delay by a random factor in ``jitter_range``.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_range: tuple[float, float] = (0.5, 1.5)


def calculate_delay(attempt: int, policy: RetryPolicy) -> float:
    """
    Delay before retry number ``attempt`` (0-indexed), capped at ``max_delay``.
    """
    delay = policy.base_delay * (policy.exponential_base ** attempt)
    delay = min(delay, policy.max_delay)
    if policy.jitter:
        delay *= random.uniform(*policy.jitter_range)
    return delay
