"""
Error taxonomy for the picture-book pipeline.

Every error carries the stage and entity (scene number or character name)
it concerns so callers can retry exactly that unit of work.
"""

from __future__ import annotations

from typing import Any, Sequence


class PictureBookError(Exception):
    """Base exception for all pipeline errors."""

    code = "PipelineError"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        entity: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.entity = entity
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    @property
    def user_message(self) -> str:
        prefix = ""
        if self.stage:
            prefix = f"[{self.stage}"
            if self.entity:
                prefix += f" / {self.entity}"
            prefix += "] "
        return prefix + self.message

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.details)
        payload.update(
            {
                "success": False,
                "error": self.user_message,
                "errorType": self.code,
                "stage": self.stage,
                "entity": self.entity,
                "retryable": self.retryable,
            }
        )
        return payload


class NotFoundError(PictureBookError):
    """Raised when a job, character or scene metadata record does not exist."""

    code = "NotFound"


class ValidationError(PictureBookError, ValueError):
    """Raised for missing or out-of-range stage input and illegal transitions."""

    code = "ValidationError"


class UpstreamGenerationError(PictureBookError):
    """Raised when the text or image service fails or returns unusable output."""

    code = "UpstreamGenerationError"
    retryable = True


class StageTimeoutError(UpstreamGenerationError):
    """Raised when a stage overruns its time budget before persisting anything."""

    code = "StageTimeout"


class PersistenceInconsistencyError(PictureBookError):
    """Raised when a written value is still unreadable after the direct fallback read."""

    code = "PersistenceInconsistencyError"
    retryable = True


class CreditExhaustedError(PictureBookError):
    """Raised when a regeneration is requested with no credits left."""

    code = "CreditExhausted"


class StageOrderViolationError(PictureBookError):
    """Raised when a stage runs before the artifacts it depends on exist."""

    code = "StageOrderViolation"

    def __init__(
        self,
        message: str,
        *,
        missing_scenes: Sequence[int] = (),
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.missing_scenes = list(missing_scenes)
        if self.missing_scenes:
            self.details.setdefault("missingScenes", self.missing_scenes)


class StageBusyError(PictureBookError):
    """Raised when another invocation currently holds the lease for the same stage instance."""

    code = "StageBusy"
    retryable = True
