"""
Pipeline-wide settings resolved from keyword arguments, environment and defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Mapping, TypeVar

from picturebook.common import RetryPolicy, ValidationError

T = TypeVar("T")

# Headroom a lease keeps over the stage budget for store writes after the last call.
LEASE_MARGIN = 15.0


def _env_value(
    environ: Mapping[str, str],
    name: str,
    default: T,
    convert: Callable[[str], T],
) -> T:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return convert(raw.strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid value for {name}: {raw!r}") from exc


@dataclass(frozen=True)
class PipelineSettings:
    """
    Knobs shared by the controller, runner and regeneration service.

    Attributes
    ----------
    scene_count:
        Target scenes per book when the job does not set one.
    regeneration_credits:
        Credits granted when a book completes.
    stage_time_budget:
        Seconds one stage invocation may take before it must fail without writing.
    lease_ttl:
        Seconds a single-flight lease stays valid if its holder dies. Must exceed
        ``stage_time_budget`` by at least ``LEASE_MARGIN``.
    max_stage_attempts:
        Attempts per stage made by the job runner.
    retry_base_delay, retry_max_delay:
        Backoff bounds in seconds.
    stale_job_after:
        Seconds without activity after which a ``generating`` job is treated as
        abandoned and may be claimed again by a worker.
    illustration_aspect_ratio, cover_aspect_ratio:
        Aspect ratios passed to the image service.
    """

    scene_count: int = 12
    regeneration_credits: int = 10
    stage_time_budget: float = 280.0
    lease_ttl: float = 300.0
    max_stage_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 30.0
    stale_job_after: float = 1200.0
    illustration_aspect_ratio: str = "3:4"
    cover_aspect_ratio: str = "3:4"

    def __post_init__(self) -> None:
        if self.scene_count < 1:
            raise ValidationError("scene_count must be at least 1.")
        if self.regeneration_credits < 0:
            raise ValidationError("regeneration_credits must not be negative.")
        if self.max_stage_attempts < 1:
            raise ValidationError("max_stage_attempts must be at least 1.")
        if self.stage_time_budget <= 0 or self.lease_ttl <= 0:
            raise ValidationError("Time budgets must be positive.")
        if self.lease_ttl < self.stage_time_budget + LEASE_MARGIN:
            raise ValidationError(
                f"lease_ttl ({self.lease_ttl}s) must exceed stage_time_budget "
                f"({self.stage_time_budget}s) by at least {LEASE_MARGIN:.0f}s."
            )
        if self.stale_job_after <= self.lease_ttl:
            raise ValidationError("stale_job_after must be longer than lease_ttl.")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            scene_count=_env_value(env, "PICTUREBOOK_SCENE_COUNT", defaults.scene_count, int),
            regeneration_credits=_env_value(
                env, "PICTUREBOOK_REGENERATION_CREDITS", defaults.regeneration_credits, int
            ),
            stage_time_budget=_env_value(
                env, "PICTUREBOOK_STAGE_TIME_BUDGET", defaults.stage_time_budget, float
            ),
            lease_ttl=_env_value(env, "PICTUREBOOK_LEASE_TTL", defaults.lease_ttl, float),
            max_stage_attempts=_env_value(
                env, "PICTUREBOOK_MAX_STAGE_ATTEMPTS", defaults.max_stage_attempts, int
            ),
            retry_base_delay=_env_value(
                env, "PICTUREBOOK_RETRY_BASE_DELAY", defaults.retry_base_delay, float
            ),
            retry_max_delay=_env_value(
                env, "PICTUREBOOK_RETRY_MAX_DELAY", defaults.retry_max_delay, float
            ),
            stale_job_after=_env_value(
                env, "PICTUREBOOK_STALE_JOB_AFTER", defaults.stale_job_after, float
            ),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_stage_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )
