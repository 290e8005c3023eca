"""
Job status, progress stages and the keys of the progress accumulator.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping

from picturebook.common import StageTimeoutError


class StageName(str, Enum):
    """Invocable pipeline stages, in their required order."""

    OUTLINE = "outline"
    CHARACTER_CONSISTENCY = "character_consistency"
    COVER = "cover"
    SCENE_TEXT = "scene_text"
    SCENE_IMAGE = "scene_image"
    FINALIZE = "finalize"


class JobStatus(str, Enum):
    DRAFT = "draft"
    PAID = "paid"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


# Progress.stage values; scene stages report as narrative / illustrations.
PROGRESS_STAGE_FOR: dict[StageName, str] = {
    StageName.OUTLINE: "outline",
    StageName.CHARACTER_CONSISTENCY: "character_consistency",
    StageName.COVER: "cover",
    StageName.SCENE_TEXT: "narrative",
    StageName.SCENE_IMAGE: "illustrations",
    StageName.FINALIZE: "layout",
}

_OVERALL_WEIGHTS: dict[str, tuple[float, float]] = {
    "outline": (10.0, 0.05),
    "character_consistency": (12.0, 0.03),
    "narrative": (15.0, 0.15),
    "cover": (30.0, 0.05),
    "illustrations": (35.0, 0.55),
    "layout": (90.0, 0.08),
}

OUTLINE_KEY = "outline"
CHARACTER_DESCRIPTIONS_KEY = "characterDescriptions"
COVER_URL_KEY = "coverUrl"
COVER_PROMPT_KEY = "coverPrompt"
COVER_SEED_KEY = "coverSeed"
SCENE_IMAGES_KEY = "sceneImages"
LAST_ERROR_KEY = "lastError"


def scene_text_key(scene_index: int) -> str:
    return f"sceneText_{scene_index}"


def utc_now(offset_seconds: float = 0.0) -> str:
    moment = datetime.now(timezone.utc) + timedelta(seconds=offset_seconds)
    return moment.isoformat(timespec="microseconds")


@dataclass
class Progress:
    """Persisted progress document; ``data`` only ever grows by shallow union."""

    stage: str = "outline"
    stage_progress: int = 0
    message: str = ""
    started_at: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "Progress":
        payload = payload or {}
        return cls(
            stage=str(payload.get("stage") or "outline"),
            stage_progress=int(payload.get("stageProgress") or 0),
            message=str(payload.get("message") or ""),
            started_at=payload.get("startedAt"),
            data=dict(payload.get("data") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "stageProgress": self.stage_progress,
            "message": self.message,
            "startedAt": self.started_at,
            "data": self.data,
        }


def overall_progress(progress: Progress) -> int:
    """Map stage plus stage progress to a 0-100 overall percentage."""
    if progress.stage == "complete":
        return 100
    base, factor = _OVERALL_WEIGHTS.get(progress.stage, (0.0, 0.0))
    stage_progress = max(0, min(100, progress.stage_progress))
    return int(round(base + factor * stage_progress))


def scene_progress_percent(completed: int, total: int) -> int:
    if total <= 0:
        return 100
    return int(round(100 * min(completed, total) / total))


class Deadline:
    """
    Time budget for one stage invocation, checked before anything is persisted.
    """

    def __init__(self, seconds: float, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds
        self.seconds = seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, *, stage: str, entity: str | None = None) -> None:
        if self.expired():
            raise StageTimeoutError(
                f"Stage exceeded its {self.seconds:.0f}s time budget; nothing was saved.",
                stage=stage,
                entity=entity,
            )

    def timeout_for(self, *, stage: str, entity: str | None = None) -> float:
        """Seconds left for the next collaborator call; raises if none are left."""
        self.check(stage=stage, entity=entity)
        return self.remaining()
