"""
Stage-invocation controller: the request/response surface over the stage executors.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

import yaml

from picturebook.ai_generation import LocalObjectStore, ReplicateImageGenerator
from picturebook.common import (
    CompletionCallable,
    PictureBookError,
    ValidationError,
)
from picturebook.story_generation import (
    BackCoverWriter,
    BookIntake,
    PageTextGenerator,
    StoryOutlineGenerator,
)

from .identity import CharacterDescriptionGenerator
from .progress import JobStatus, StageName, Deadline, overall_progress
from .settings import PipelineSettings
from .stages import STAGE_EXECUTORS, ImageGenerator, StageContext, StageServices
from .store import BookJob, SQLiteJobStore

logger = logging.getLogger(__name__)


def build_default_services(
    *,
    completion_fn: CompletionCallable | None = None,
    image_generator: ImageGenerator | None = None,
    object_store: LocalObjectStore | None = None,
    story_model: str | None = None,
    page_model: str | None = None,
    identity_model: str | None = None,
    api_key: str | None = None,
) -> StageServices:
    """Wire the LiteLLM and Replicate backed collaborators from arguments and environment."""
    return StageServices(
        outline_generator=StoryOutlineGenerator(
            api_key=api_key, model=story_model, completion_fn=completion_fn
        ),
        page_writer=PageTextGenerator(api_key=api_key, model=page_model, completion_fn=completion_fn),
        back_cover_writer=BackCoverWriter(
            api_key=api_key, model=page_model, completion_fn=completion_fn
        ),
        description_generator=CharacterDescriptionGenerator(
            api_key=api_key, model=identity_model, completion_fn=completion_fn
        ),
        image_generator=image_generator or ReplicateImageGenerator(),
        object_store=object_store,
    )


class PipelineController:
    """
    Executes one named stage for one job per call.

    ``execute_stage`` raises ``PictureBookError`` subclasses; ``run_stage`` is the
    RPC-style wrapper that always returns a ``{"success": ...}`` payload.
    """

    def __init__(
        self,
        store: SQLiteJobStore,
        *,
        services: StageServices | None = None,
        settings: PipelineSettings | None = None,
    ) -> None:
        self.store = store
        self.services = services or build_default_services()
        self.settings = settings or PipelineSettings.from_env()

    def execute_stage(
        self,
        job_id: str,
        stage: StageName | str,
        stage_input: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        stage_name = _parse_stage(stage)
        stage_input = dict(stage_input or {})
        job = self._prepare_job(job_id, stage_name)

        ctx = StageContext(
            job=job,
            store=self.store,
            services=self.services,
            settings=self.settings,
            deadline=Deadline(self.settings.stage_time_budget),
            read_only=job.status == JobStatus.COMPLETE,
        )
        logger.info("Job %s: running stage %s %s", job_id, stage_name.value, _describe_input(stage_input))
        output = STAGE_EXECUTORS[stage_name](ctx, stage_input)
        return {"success": True, **output}

    def run_stage(
        self,
        job_id: str,
        stage: StageName | str,
        stage_input: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Like ``execute_stage`` but converts every failure into an error payload."""
        try:
            return self.execute_stage(job_id, stage, stage_input)
        except PictureBookError as exc:
            logger.warning("Job %s: stage %s failed: %s", job_id, stage, exc)
            return exc.to_payload()
        except Exception as exc:
            logger.exception("Job %s: unexpected error in stage %s", job_id, stage)
            return PictureBookError(f"Unexpected error: {exc}", stage=str(stage)).to_payload()

    def get_generation_state(self, job_id: str) -> dict[str, Any]:
        """Status and progress snapshot for polling clients."""
        job = self.store.load_job(job_id)
        return {
            "jobId": job.id,
            "status": job.status.value,
            "progress": job.progress.to_dict(),
            "overallProgress": overall_progress(job.progress),
            "coverUrl": job.cover_url,
            "regenerationCredits": job.regeneration_credits,
            "hasBook": job.book is not None,
        }

    def _prepare_job(self, job_id: str, stage: StageName) -> BookJob:
        job = self.store.load_job(job_id)
        if job.status == JobStatus.DRAFT:
            raise ValidationError(
                "The book has not been paid for yet.", stage=stage.value, entity=job_id
            )
        if job.status == JobStatus.FAILED:
            raise ValidationError(
                "The job failed; resume it before running more stages.",
                stage=stage.value,
                entity=job_id,
            )
        if job.status == JobStatus.PAID:
            job = self.store.advance_status(job_id, JobStatus.GENERATING)
        if job.intake.settings.scene_count is None:
            job = self.store.pin_scene_count(job_id, self.settings.scene_count)
        return job


def _parse_stage(stage: StageName | str) -> StageName:
    try:
        return StageName(stage)
    except ValueError as exc:
        known = ", ".join(item.value for item in StageName)
        raise ValidationError(f"Unknown stage {stage!r}; expected one of: {known}.") from exc


def _describe_input(stage_input: Mapping[str, Any]) -> str:
    if "sceneIndex" in stage_input:
        return f"(scene index {stage_input['sceneIndex']})"
    return ""


def load_intake_file(path: Path | str) -> BookIntake:
    """Load a job intake (settings plus characters) from a YAML or JSON file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    elif path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        raise ValueError("Unsupported intake file format. Use YAML or JSON.")
    if not isinstance(data, Mapping):
        raise ValueError("Intake file must contain a mapping.")
    return BookIntake.from_mapping(data)
