"""
Server-side durable runner: drives every stage of a job to completion.

Each stage is retried with bounded exponential backoff. When a stage cannot
succeed the job is marked failed with the stage and entity recorded, and it
can later be resumed; stages that already succeeded return their stored
results without calling any service again.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterator

from picturebook.common import PictureBookError, ValidationError, calculate_delay

from .pipeline import PipelineController
from .progress import JobStatus, StageName
from .store import SQLiteJobStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, dict[str, Any]], None]


class BookJobRunner:
    """
    Runs all stages of one job in order, one stage invocation at a time.
    """

    def __init__(
        self,
        controller: PipelineController,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.controller = controller
        self.store: SQLiteJobStore = controller.store
        self._policy = controller.settings.retry_policy()
        self._sleep = sleep

    def plan(self, job_id: str) -> Iterator[tuple[StageName, dict[str, Any]]]:
        job = self.store.pin_scene_count(job_id, self.controller.settings.scene_count)
        scene_count = job.intake.settings.scene_count
        yield StageName.OUTLINE, {}
        yield StageName.CHARACTER_CONSISTENCY, {}
        yield StageName.COVER, {}
        for index in range(scene_count):
            yield StageName.SCENE_TEXT, {"sceneIndex": index}
            yield StageName.SCENE_IMAGE, {"sceneIndex": index}
        yield StageName.FINALIZE, {}

    def run(self, job_id: str, *, progress_callback: ProgressCallback | None = None) -> dict[str, Any]:
        """
        Drive ``job_id`` to completion and return the finished book.

        A failed job is resumed; a complete job returns its stored book.
        """
        job = self.store.load_job(job_id)
        if job.status == JobStatus.COMPLETE:
            return dict(job.book or {})
        if job.status == JobStatus.DRAFT:
            raise ValidationError("The book has not been paid for yet.", entity=job_id)
        if job.status == JobStatus.FAILED:
            logger.info("Resuming failed job %s.", job_id)
            self._notify(progress_callback, "job:resume", job_id=job_id)
        if job.status != JobStatus.GENERATING:
            self.store.advance_status(job_id, JobStatus.GENERATING)

        stages = list(self.plan(job_id))
        self._notify(progress_callback, "job:start", job_id=job_id, total_stages=len(stages))
        result: dict[str, Any] = {}
        for position, (stage, stage_input) in enumerate(stages, start=1):
            self._notify(
                progress_callback,
                "stage:start",
                stage=stage.value,
                position=position,
                total_stages=len(stages),
                **stage_input,
            )
            try:
                self.store.touch_job(job_id)
                result = self._run_with_retry(job_id, stage, stage_input, progress_callback)
            except PictureBookError as exc:
                self.store.mark_failed(
                    job_id,
                    stage=exc.stage or stage.value,
                    entity=exc.entity,
                    message=exc.user_message,
                )
                raise
            except Exception as exc:
                self.store.mark_failed(job_id, stage=stage.value, message=f"Unexpected error: {exc}")
                raise
            self._notify(
                progress_callback,
                "stage:done",
                stage=stage.value,
                position=position,
                total_stages=len(stages),
                **stage_input,
            )

        self._notify(progress_callback, "job:complete", job_id=job_id)
        return dict(result.get("bookContent") or {})

    def _run_with_retry(
        self,
        job_id: str,
        stage: StageName,
        stage_input: dict[str, Any],
        progress_callback: ProgressCallback | None,
    ) -> dict[str, Any]:
        attempts = self._policy.max_attempts
        attempt = 0
        while True:
            try:
                return self.controller.execute_stage(job_id, stage, stage_input)
            except PictureBookError as exc:
                attempt += 1
                if not exc.retryable or attempt >= attempts:
                    raise
                delay = calculate_delay(attempt - 1, self._policy)
                logger.warning(
                    "Job %s: %s attempt %d/%d failed (%s); retrying in %.1fs",
                    job_id,
                    stage.value,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                self._notify(
                    progress_callback,
                    "stage:retry",
                    stage=stage.value,
                    attempt=attempt,
                    delay=delay,
                    error=exc.code,
                )
                self._sleep(delay)
                self.store.touch_job(job_id)

    @staticmethod
    def _notify(callback: ProgressCallback | None, event: str, **payload: Any) -> None:
        if callback is not None:
            callback(event, payload)


class BookGenerationWorker:
    """
    Claims paid jobs from the store and runs them, up to ``max_parallel_jobs`` at once.

    Job failures are recorded on the job row by the runner; the worker logs them
    and moves on to the next job. Jobs left in ``generating`` for longer than
    ``stale_after`` seconds are claimed again.
    """

    def __init__(
        self,
        runner: BookJobRunner,
        *,
        max_parallel_jobs: int = 1,
        poll_interval: float = 5.0,
        stale_after: float | None = None,
    ) -> None:
        if max_parallel_jobs < 1:
            raise ValidationError("max_parallel_jobs must be at least 1.")
        self.runner = runner
        self.store = runner.store
        self.max_parallel_jobs = max_parallel_jobs
        self.poll_interval = poll_interval
        if stale_after is None:
            stale_after = runner.controller.settings.stale_job_after
        self.stale_after = stale_after

    def _run_job(self, job_id: str) -> bool:
        try:
            self.runner.run(job_id)
        except PictureBookError as exc:
            logger.error("Job %s failed: %s", job_id, exc.user_message)
            return False
        except Exception:
            logger.exception("Job %s failed with an unexpected error.", job_id)
            return False
        return True

    def _claim(self) -> str | None:
        return self.store.claim_next_paid_job(stale_after=self.stale_after)

    def run_once(self) -> str | None:
        """Claim and run a single paid job; return its id, or ``None`` if none was waiting."""
        job_id = self._claim()
        if job_id is None:
            return None
        self._run_job(job_id)
        return job_id

    def run_until_idle(self) -> list[str]:
        """Run paid jobs until none remain and return the ids processed."""
        processed: list[str] = []
        with ThreadPoolExecutor(max_workers=self.max_parallel_jobs) as pool:
            while True:
                claimed = []
                for _ in range(self.max_parallel_jobs):
                    job_id = self._claim()
                    if job_id is None:
                        break
                    claimed.append(job_id)
                if not claimed:
                    break
                list(pool.map(self._run_job, claimed))
                processed.extend(claimed)
        return processed

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("Worker started with %d parallel slots.", self.max_parallel_jobs)
        while not stop_event.is_set():
            if not self.run_until_idle():
                stop_event.wait(self.poll_interval)
        logger.info("Worker stopped.")
