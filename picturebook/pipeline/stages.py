"""
One executor per pipeline stage.

Each executor returns the stored result when its completion marker already
exists, holds a single-flight lease while it works, calls exactly one
generative service, and writes nothing unless that call succeeded within the
stage's time budget.
"""

from __future__ import annotations

import logging
import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence, TypeVar

from picturebook.ai_generation import (
    LocalObjectStore,
    SceneContext,
    StyleContext,
    build_cover_prompt,
    build_scene_prompt,
)
from picturebook.common import (
    PictureBookError,
    StageOrderViolationError,
    UpstreamGenerationError,
    ValidationError,
)
from picturebook.story_generation import (
    BackCoverWriter,
    Outline,
    PageTextGenerator,
    StoryOutlineGenerator,
)

from .book import Book, BookPage
from .continuity import CharacterConsistencyCache
from .identity import CharacterDescriptionGenerator
from .progress import (
    CHARACTER_DESCRIPTIONS_KEY,
    COVER_PROMPT_KEY,
    COVER_SEED_KEY,
    COVER_URL_KEY,
    OUTLINE_KEY,
    PROGRESS_STAGE_FOR,
    SCENE_IMAGES_KEY,
    Deadline,
    Progress,
    StageName,
    scene_progress_percent,
    scene_text_key,
)
from .settings import PipelineSettings
from .store import BookJob, SQLiteJobStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEED_RANGE = (1, 999_999)


class ImageGenerator(Protocol):
    def generate_image(
        self,
        *,
        prompt: str,
        negative_prompt: str,
        seed: int,
        aspect_ratio: str = ...,
        reference_images: Sequence[str] = ...,
        timeout: float | None = ...,
    ) -> str: ...


def random_seed() -> int:
    return random.SystemRandom().randint(*SEED_RANGE)


@dataclass
class StageServices:
    """External collaborators used by the stage executors."""

    outline_generator: StoryOutlineGenerator
    page_writer: PageTextGenerator
    back_cover_writer: BackCoverWriter
    description_generator: CharacterDescriptionGenerator
    image_generator: ImageGenerator
    object_store: LocalObjectStore | None = None
    seed_fn: Callable[[], int] = field(default=random_seed)


@dataclass
class StageContext:
    """Everything one stage invocation needs; rebuilt for every call."""

    job: BookJob
    store: SQLiteJobStore
    services: StageServices
    settings: PipelineSettings
    deadline: Deadline
    read_only: bool = False

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def scene_count(self) -> int:
        count = self.job.intake.settings.scene_count
        if count is None:
            raise ValidationError("The job has no scene count recorded.", entity=self.job.id)
        return count

    @property
    def style(self) -> StyleContext:
        return StyleContext(art_style=self.job.intake.art_style)


def call_upstream(fn: Callable[..., T], *args: Any, stage: str, entity: str | None = None, **kwargs: Any) -> T:
    """Run one collaborator call, converting any failure into ``UpstreamGenerationError``."""
    try:
        return fn(*args, **kwargs)
    except PictureBookError:
        raise
    except Exception as exc:
        raise UpstreamGenerationError(
            f"Generation failed: {exc}",
            stage=stage,
            entity=entity,
            details={"cause": type(exc).__name__},
        ) from exc


def _require_writable(ctx: StageContext, stage: str, entity: str | None = None) -> None:
    if ctx.read_only:
        raise ValidationError(
            "This book is already complete; only stored results can be returned.",
            stage=stage,
            entity=entity,
        )


def _load_prerequisites(
    ctx: StageContext,
    stage_input: Mapping[str, Any],
    keys: Sequence[str],
    *,
    stage: str,
    entity: str | None = None,
) -> Progress:
    """
    Read progress, requiring ``keys``.

    Keys the caller claims to already have (present in ``stage_input``) must be
    readable, so a miss there goes through the direct-read fallback. Keys
    nobody has produced yet are a stage ordering problem.
    """
    hinted = [key for key in keys if stage_input.get(key) is not None]
    progress = ctx.store.read_progress(ctx.job_id, require_keys=hinted)
    missing = [key for key in keys if key not in progress.data]
    if missing:
        raise StageOrderViolationError(
            f"Required results {missing} are not available yet.",
            stage=stage,
            entity=entity,
            details={"missingKeys": missing},
        )
    return progress


def _scene_index(ctx: StageContext, stage_input: Mapping[str, Any], stage: str) -> int:
    raw = stage_input.get("sceneIndex")
    if raw is None or isinstance(raw, bool):
        raise ValidationError("'sceneIndex' is required.", stage=stage)
    try:
        index = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"'sceneIndex' must be an integer, got {raw!r}.", stage=stage) from exc
    if not 0 <= index < ctx.scene_count:
        raise ValidationError(
            f"'sceneIndex' {index} is outside 0..{ctx.scene_count - 1}.",
            stage=stage,
            entity=f"scene {index + 1}",
        )
    return index


def _outline(progress: Progress, ctx: StageContext, stage: str) -> Outline:
    """Read the stored outline back; its scene count must match the job's."""
    try:
        outline = Outline.from_dict(progress.data[OUTLINE_KEY])
    except ValueError as exc:
        raise ValidationError(f"Stored outline is unreadable: {exc}", stage=stage) from exc
    if len(outline.scenes) != ctx.scene_count:
        raise ValidationError(
            f"Stored outline has {len(outline.scenes)} scenes but the job expects {ctx.scene_count}.",
            stage=stage,
            details={"outlineScenes": len(outline.scenes), "sceneCount": ctx.scene_count},
        )
    return outline


def _stored_image(progress: Progress, index: int) -> dict[str, Any] | None:
    images = progress.data.get(SCENE_IMAGES_KEY) or []
    if index < len(images) and images[index]:
        return images[index]
    return None


def _persist_image(
    ctx: StageContext, url: str, key_stem: str, *, stage: str, entity: str | None = None
) -> str:
    if ctx.services.object_store is None:
        return url
    return ctx.services.object_store.persist_remote_image(
        url,
        key_stem=f"{ctx.job_id}/{key_stem}",
        timeout=ctx.deadline.timeout_for(stage=stage, entity=entity),
    )


# ---------------------------------------------------------------- outline


def _outline_output(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "title": payload.get("title"),
        "dedication": payload.get("dedication"),
        "scenes": payload.get("scenes", []),
    }


def run_outline(ctx: StageContext, stage_input: Mapping[str, Any]) -> dict[str, Any]:
    stage = StageName.OUTLINE.value
    progress = ctx.store.read_progress(ctx.job_id)
    if OUTLINE_KEY in progress.data:
        logger.info("Job %s: outline already stored.", ctx.job_id)
        return _outline_output(progress.data[OUTLINE_KEY])
    _require_writable(ctx, stage)

    with ctx.store.stage_lease(ctx.job_id, stage, ttl=ctx.settings.lease_ttl, stage=stage):
        progress = ctx.store.read_progress(ctx.job_id)
        if OUTLINE_KEY in progress.data:
            return _outline_output(progress.data[OUTLINE_KEY])

        outline = call_upstream(
            ctx.services.outline_generator.generate_outline,
            ctx.job.intake,
            scene_count=ctx.scene_count,
            timeout=ctx.deadline.timeout_for(stage=stage),
            stage=stage,
        )
        ctx.deadline.check(stage=stage)
        ctx.store.merge_progress_data(
            ctx.job_id,
            {OUTLINE_KEY: outline.to_dict()},
            stage=PROGRESS_STAGE_FOR[StageName.OUTLINE],
            stage_progress=100,
            message=f"Outline ready: {outline.title}",
        )
    return _outline_output(outline.to_dict())


# ---------------------------------------------------- character consistency


def run_character_consistency(ctx: StageContext, stage_input: Mapping[str, Any]) -> dict[str, Any]:
    stage = StageName.CHARACTER_CONSISTENCY.value
    characters = ctx.job.intake.characters
    progress = _load_prerequisites(ctx, stage_input, [OUTLINE_KEY], stage=stage)
    stored = progress.data.get(CHARACTER_DESCRIPTIONS_KEY)
    if isinstance(stored, list) and CharacterConsistencyCache.from_data(stored).covers(characters):
        logger.info("Job %s: character descriptions already cached.", ctx.job_id)
        return {"characterDescriptions": stored}
    _require_writable(ctx, stage)

    with ctx.store.stage_lease(ctx.job_id, stage, ttl=ctx.settings.lease_ttl, stage=stage):
        generator = ctx.services.description_generator

        timeout = ctx.deadline.timeout_for(stage=stage)

        def describe(character):
            return call_upstream(
                generator.describe, character, timeout=timeout, stage=stage, entity=character.name
            )

        # Characters are independent, so they are described concurrently.
        with ThreadPoolExecutor(max_workers=min(4, len(characters))) as pool:
            descriptions = list(pool.map(describe, characters))

        cache = CharacterConsistencyCache(descriptions)
        ctx.deadline.check(stage=stage)
        ctx.store.merge_progress_data(
            ctx.job_id,
            {CHARACTER_DESCRIPTIONS_KEY: cache.to_data()},
            stage=PROGRESS_STAGE_FOR[StageName.CHARACTER_CONSISTENCY],
            stage_progress=100,
            message=f"Described {len(cache)} characters",
        )
    return {"characterDescriptions": cache.to_data()}


# ------------------------------------------------------------------ cover


def _cover_output(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "coverUrl": data.get(COVER_URL_KEY),
        "coverPrompt": data.get(COVER_PROMPT_KEY),
        "coverSeed": data.get(COVER_SEED_KEY),
    }


def run_cover(ctx: StageContext, stage_input: Mapping[str, Any]) -> dict[str, Any]:
    stage = StageName.COVER.value
    progress = ctx.store.read_progress(ctx.job_id)
    if progress.data.get(COVER_URL_KEY):
        logger.info("Job %s: cover already generated, returning stored URL.", ctx.job_id)
        return _cover_output(progress.data)
    _require_writable(ctx, stage)

    with ctx.store.stage_lease(ctx.job_id, stage, ttl=ctx.settings.lease_ttl, stage=stage):
        progress = _load_prerequisites(
            ctx, stage_input, [OUTLINE_KEY, CHARACTER_DESCRIPTIONS_KEY], stage=stage
        )
        if progress.data.get(COVER_URL_KEY):
            return _cover_output(progress.data)

        outline = _outline(progress, ctx, stage)
        cache = CharacterConsistencyCache.from_progress(progress)
        prompt = build_cover_prompt(
            cache.cast(ctx.job.intake.characters),
            title=outline.title,
            theme=ctx.job.intake.settings.theme,
            style=ctx.style,
        )
        seed = ctx.services.seed_fn()
        url = call_upstream(
            ctx.services.image_generator.generate_image,
            prompt=prompt.positive,
            negative_prompt=prompt.negative,
            seed=seed,
            aspect_ratio=ctx.settings.cover_aspect_ratio,
            reference_images=list(prompt.reference_images),
            timeout=ctx.deadline.timeout_for(stage=stage),
            stage=stage,
        )
        url = _persist_image(ctx, url, f"cover-{seed}", stage=stage)
        ctx.deadline.check(stage=stage)
        progress = ctx.store.merge_progress_data(
            ctx.job_id,
            {
                COVER_URL_KEY: url,
                COVER_PROMPT_KEY: prompt.positive,
                COVER_SEED_KEY: seed,
                "coverNegativePrompt": prompt.negative,
            },
            stage=PROGRESS_STAGE_FOR[StageName.COVER],
            stage_progress=100,
            message="Cover illustration ready",
            cover_url=url,
        )
    return _cover_output(progress.data)


# ------------------------------------------------------------- scene text


def _scene_text_output(stored: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "pageText": stored.get("text"),
        "visualPrompt": stored.get("visualPrompt"),
        "sceneNumber": stored.get("sceneNumber"),
        "sceneTitle": stored.get("sceneTitle"),
    }


def _previous_texts(progress: Progress, index: int, stage_input: Mapping[str, Any]) -> list[str]:
    supplied = stage_input.get("allPreviousScenes") or []
    texts: list[str] = []
    for previous in range(index):
        stored = progress.data.get(scene_text_key(previous))
        if isinstance(stored, Mapping) and stored.get("text"):
            texts.append(str(stored["text"]))
        elif previous < len(supplied) and supplied[previous]:
            item = supplied[previous]
            texts.append(str(item.get("pageText") if isinstance(item, Mapping) else item))
    return texts


def _count_scene_texts(progress: Progress, total: int) -> int:
    return sum(1 for index in range(total) if scene_text_key(index) in progress.data)


def run_scene_text(ctx: StageContext, stage_input: Mapping[str, Any]) -> dict[str, Any]:
    stage = StageName.SCENE_TEXT.value
    index = _scene_index(ctx, stage_input, stage)
    entity = f"scene {index + 1}"
    key = scene_text_key(index)

    progress = ctx.store.read_progress(ctx.job_id)
    if key in progress.data:
        return _scene_text_output(progress.data[key])
    _require_writable(ctx, stage, entity)

    with ctx.store.stage_lease(
        ctx.job_id, f"{stage}:{index}", ttl=ctx.settings.lease_ttl, stage=stage, entity=entity
    ):
        progress = _load_prerequisites(ctx, stage_input, [OUTLINE_KEY], stage=stage, entity=entity)
        if key in progress.data:
            return _scene_text_output(progress.data[key])

        scene = _outline(progress, ctx, stage).scene(index + 1)
        page = call_upstream(
            ctx.services.page_writer.write_page,
            ctx.job.intake,
            scene,
            previous_texts=_previous_texts(progress, index, stage_input),
            timeout=ctx.deadline.timeout_for(stage=stage, entity=entity),
            stage=stage,
            entity=entity,
        )
        stored = {
            **page.to_dict(),
            "sceneNumber": scene.number,
            "sceneTitle": scene.title,
        }
        ctx.deadline.check(stage=stage, entity=entity)
        done = _count_scene_texts(progress, ctx.scene_count) + 1
        ctx.store.merge_progress_data(
            ctx.job_id,
            {key: stored},
            stage=PROGRESS_STAGE_FOR[StageName.SCENE_TEXT],
            stage_progress=scene_progress_percent(done, ctx.scene_count),
            message=f"Wrote page {scene.number} of {ctx.scene_count}",
        )
    return _scene_text_output(stored)


# ------------------------------------------------------------ scene image


def _scene_image_output(stored: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "sceneNumber": stored.get("sceneNumber"),
        "url": stored.get("url"),
        "prompt": stored.get("prompt"),
        "seed": stored.get("seed"),
        "negativePrompt": stored.get("negativePrompt"),
    }


def run_scene_image(ctx: StageContext, stage_input: Mapping[str, Any]) -> dict[str, Any]:
    stage = StageName.SCENE_IMAGE.value
    index = _scene_index(ctx, stage_input, stage)
    entity = f"scene {index + 1}"

    progress = ctx.store.read_progress(ctx.job_id)
    stored = _stored_image(progress, index)
    if stored is not None:
        logger.info("Job %s: %s illustration already stored.", ctx.job_id, entity)
        return _scene_image_output(stored)
    _require_writable(ctx, stage, entity)

    with ctx.store.stage_lease(
        ctx.job_id, f"{stage}:{index}", ttl=ctx.settings.lease_ttl, stage=stage, entity=entity
    ):
        progress = _load_prerequisites(
            ctx, stage_input, [OUTLINE_KEY, CHARACTER_DESCRIPTIONS_KEY], stage=stage, entity=entity
        )
        stored = _stored_image(progress, index)
        if stored is not None:
            return _scene_image_output(stored)

        scene = _outline(progress, ctx, stage).scene(index + 1)
        page_text = progress.data.get(scene_text_key(index))
        description = scene.scene_description
        if isinstance(page_text, Mapping) and page_text.get("visualPrompt"):
            description = str(page_text["visualPrompt"])
        elif stage_input.get("pageText"):
            description = f"{description.rstrip('.')}. {str(stage_input['pageText']).strip()}"

        cache = CharacterConsistencyCache.from_progress(progress)
        prompt = build_scene_prompt(
            cache.cast(ctx.job.intake.characters),
            SceneContext(description=description, expression=scene.emotional_tone),
            ctx.style,
        )
        seed = ctx.services.seed_fn()
        url = call_upstream(
            ctx.services.image_generator.generate_image,
            prompt=prompt.positive,
            negative_prompt=prompt.negative,
            seed=seed,
            aspect_ratio=ctx.settings.illustration_aspect_ratio,
            reference_images=list(prompt.reference_images),
            timeout=ctx.deadline.timeout_for(stage=stage, entity=entity),
            stage=stage,
            entity=entity,
        )
        url = _persist_image(ctx, url, f"scene-{scene.number}-{seed}", stage=stage, entity=entity)
        entry = {
            "sceneNumber": scene.number,
            "url": url,
            "prompt": prompt.positive,
            "seed": seed,
            "negativePrompt": prompt.negative,
            "referenceImages": list(prompt.reference_images),
        }
        ctx.deadline.check(stage=stage, entity=entity)
        done = sum(1 for i in range(ctx.scene_count) if _stored_image(progress, i)) + 1
        ctx.store.set_data_list_item(
            ctx.job_id,
            SCENE_IMAGES_KEY,
            index,
            entry,
            size=ctx.scene_count,
            stage=PROGRESS_STAGE_FOR[StageName.SCENE_IMAGE],
            stage_progress=scene_progress_percent(done, ctx.scene_count),
            message=f"Illustrated scene {scene.number} of {ctx.scene_count}",
        )
    return _scene_image_output(entry)


# --------------------------------------------------------------- finalize


def _check_book_pages(ctx: StageContext, book_pages: Any) -> None:
    if book_pages is None:
        return
    if not isinstance(book_pages, list):
        raise ValidationError("'bookPages' must be a list.", stage=StageName.FINALIZE.value)
    for page in book_pages:
        number = page.get("sceneNumber") if isinstance(page, Mapping) else None
        if number is None:
            continue
        try:
            scene_number = int(number)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                f"'bookPages' has a non-numeric sceneNumber {number!r}.",
                stage=StageName.FINALIZE.value,
            ) from exc
        if isinstance(number, bool) or not 1 <= scene_number <= ctx.scene_count:
            raise ValidationError(
                f"'bookPages' references scene {number}, outside 1..{ctx.scene_count}.",
                stage=StageName.FINALIZE.value,
            )


def assemble_book(
    ctx: StageContext,
    progress: Progress,
    outline: Outline,
    back_cover_text: str,
) -> Book:
    """Cover, title, then illustration and text for each scene, then back: 2N+3 pages."""
    main = ctx.job.intake.main_character
    dedication = outline.dedication or f"To {main.name if main else 'you'}, a brave adventurer."

    pages: list[BookPage] = [
        BookPage(page_number=1, type="cover", text=outline.title, illustration_url=progress.data[COVER_URL_KEY]),
        BookPage(page_number=2, type="title", text=dedication),
    ]
    metadata: list[dict[str, Any]] = []
    for index, scene in enumerate(outline.scenes):
        image = _stored_image(progress, index) or {}
        text = progress.data.get(scene_text_key(index)) or {}
        pages.append(
            BookPage(
                page_number=len(pages) + 1,
                type="story-illustration",
                scene_number=scene.number,
                illustration_url=image.get("url"),
            )
        )
        pages.append(
            BookPage(
                page_number=len(pages) + 1,
                type="story-text",
                scene_number=scene.number,
                text=text.get("text"),
            )
        )
        metadata.append(
            {
                "sceneNumber": scene.number,
                "illustrationPrompt": image.get("prompt"),
                "seed": image.get("seed"),
                "negativePrompt": image.get("negativePrompt"),
                "referenceImages": list(image.get("referenceImages") or []),
            }
        )
    pages.append(BookPage(page_number=len(pages) + 1, type="back", text=back_cover_text))
    return Book(title=outline.title, dedication=dedication, pages=pages, illustration_metadata=metadata)


def run_finalize(ctx: StageContext, stage_input: Mapping[str, Any]) -> dict[str, Any]:
    stage = StageName.FINALIZE.value
    _check_book_pages(ctx, stage_input.get("bookPages"))
    if ctx.read_only:
        if ctx.job.book is None:
            raise StageOrderViolationError("Complete job has no stored book.", stage=stage)
        return {"bookContent": ctx.job.book}

    with ctx.store.stage_lease(ctx.job_id, stage, ttl=ctx.settings.lease_ttl, stage=stage):
        progress = _load_prerequisites(ctx, stage_input, [OUTLINE_KEY], stage=stage)
        if not progress.data.get(COVER_URL_KEY):
            raise StageOrderViolationError("The cover has not been generated.", stage=stage, entity="cover")

        missing = [
            index + 1
            for index in range(ctx.scene_count)
            if _stored_image(progress, index) is None or scene_text_key(index) not in progress.data
        ]
        if missing:
            raise StageOrderViolationError(
                f"Cannot finalize: scenes {missing} are incomplete.",
                stage=stage,
                missing_scenes=missing,
            )

        outline = _outline(progress, ctx, stage)
        back_cover_text = call_upstream(
            ctx.services.back_cover_writer.write_summary,
            ctx.job.intake,
            outline,
            timeout=ctx.deadline.timeout_for(stage=stage, entity="back cover"),
            stage=stage,
            entity="back cover",
        )
        book = assemble_book(ctx, progress, outline, back_cover_text)
        ctx.deadline.check(stage=stage)
        ctx.store.complete_job(
            ctx.job_id,
            book=book.to_dict(),
            illustration_metadata=book.illustration_metadata,
            regeneration_credits=ctx.settings.regeneration_credits,
        )
    logger.info("Job %s finalized with %d pages.", ctx.job_id, len(book.pages))
    return {"bookContent": book.to_dict()}


STAGE_EXECUTORS: dict[StageName, Callable[[StageContext, Mapping[str, Any]], dict[str, Any]]] = {
    StageName.OUTLINE: run_outline,
    StageName.CHARACTER_CONSISTENCY: run_character_consistency,
    StageName.COVER: run_cover,
    StageName.SCENE_TEXT: run_scene_text,
    StageName.SCENE_IMAGE: run_scene_image,
    StageName.FINALIZE: run_finalize,
}
