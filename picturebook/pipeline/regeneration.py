"""
Post-completion edits: paid illustration regeneration and free page-text updates.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from picturebook.ai_generation import LocalObjectStore
from picturebook.common import NotFoundError, PictureBookError, UpstreamGenerationError, ValidationError

from .progress import JobStatus
from .settings import PipelineSettings
from .stages import ImageGenerator, random_seed
from .store import SQLiteJobStore

logger = logging.getLogger(__name__)

STAGE = "regenerate"


class RegenerationService:
    """
    Regenerates one scene illustration of a complete book for one credit.

    The credit is taken atomically before the image service is called and is
    refunded if generation or the book update fails, so the balance never goes
    negative and a failed attempt costs nothing.
    """

    def __init__(
        self,
        store: SQLiteJobStore,
        image_generator: ImageGenerator,
        *,
        object_store: LocalObjectStore | None = None,
        settings: PipelineSettings | None = None,
        seed_fn: Callable[[], int] = random_seed,
    ) -> None:
        self.store = store
        self.image_generator = image_generator
        self.object_store = object_store
        self.settings = settings or PipelineSettings.from_env()
        self._seed_fn = seed_fn

    def regeneration_credits(self, job_id: str) -> int:
        return self.store.regeneration_credits(job_id)

    def regenerate_scene(self, job_id: str, scene_number: int) -> dict[str, Any]:
        job = self.store.load_job(job_id)
        entity = f"scene {scene_number}"
        if job.status != JobStatus.COMPLETE:
            raise ValidationError(
                "Illustrations can only be regenerated on a complete book.", stage=STAGE, entity=entity
            )
        metadata = next(
            (item for item in job.illustration_metadata if item.get("sceneNumber") == scene_number),
            None,
        )
        if metadata is None or not metadata.get("illustrationPrompt"):
            raise NotFoundError(
                f"No stored illustration prompt for scene {scene_number}.", stage=STAGE, entity=entity
            )

        remaining = self.store.consume_regeneration_credit(job_id)
        seed = self._seed_fn()
        try:
            url = self.image_generator.generate_image(
                prompt=metadata["illustrationPrompt"],
                negative_prompt=metadata.get("negativePrompt") or "",
                seed=seed,
                aspect_ratio=self.settings.illustration_aspect_ratio,
                reference_images=list(metadata.get("referenceImages") or []),
                timeout=self.settings.stage_time_budget,
            )
            if self.object_store is not None:
                url = self.object_store.persist_remote_image(
                    url, key_stem=f"{job_id}/scene-{scene_number}-{seed}"
                )
            self.store.replace_scene_illustration(
                job_id, scene_number, illustration_url=url, seed=seed
            )
        except PictureBookError:
            self.store.refund_regeneration_credit(job_id)
            raise
        except Exception as exc:
            refunded = self.store.refund_regeneration_credit(job_id)
            logger.warning(
                "Job %s: regeneration of scene %d failed, credit refunded (%d left): %s",
                job_id,
                scene_number,
                refunded,
                exc,
            )
            raise UpstreamGenerationError(
                f"Illustration regeneration failed: {exc}", stage=STAGE, entity=entity
            ) from exc

        logger.info("Job %s: regenerated scene %d, %d credits left.", job_id, scene_number, remaining)
        return {
            "sceneNumber": scene_number,
            "illustrationUrl": url,
            "seed": seed,
            "remainingCredits": remaining,
        }

    def update_page_text(self, job_id: str, page_number: int, text: str) -> dict[str, Any]:
        """Replace one page's text; free of charge."""
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValidationError("Page text must not be empty.", stage="update_text", entity=f"page {page_number}")
        return self.store.update_page_text(job_id, page_number, cleaned)
