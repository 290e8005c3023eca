from __future__ import annotations

import threading

import pytest

from picturebook.common import UpstreamGenerationError, ValidationError
from picturebook.pipeline import BookGenerationWorker, BookJobRunner, JobStatus

SCENE_COUNT = 3


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def runner(controller, sleeps):
    return BookJobRunner(controller, sleep=sleeps.append)


def test_runner_completes_paid_job_in_stage_order(runner, store, paid_job):
    events = []
    book = runner.run(paid_job.id, progress_callback=lambda event, payload: events.append((event, payload)))

    assert store.load_job(paid_job.id).status == JobStatus.COMPLETE
    assert len(book["pages"]) == 2 * SCENE_COUNT + 3

    started = [payload["stage"] for event, payload in events if event == "stage:start"]
    assert started == (
        ["outline", "character_consistency", "cover"]
        + ["scene_text", "scene_image"] * SCENE_COUNT
        + ["finalize"]
    )
    assert events[0][0] == "job:start"
    assert events[-1][0] == "job:complete"


def test_runner_retries_transient_failures_with_backoff(runner, store, paid_job, images, sleeps):
    images.fail_times = 2
    events = []
    runner.run(paid_job.id, progress_callback=lambda event, payload: events.append((event, payload)))

    assert store.load_job(paid_job.id).status == JobStatus.COMPLETE
    assert len(sleeps) == 2
    assert all(0 < delay <= 0.015 for delay in sleeps)
    retries = [payload for event, payload in events if event == "stage:retry"]
    assert [payload["attempt"] for payload in retries] == [1, 2]
    assert {payload["stage"] for payload in retries} == {"cover"}


def test_runner_marks_job_failed_after_bounded_attempts(runner, store, paid_job, images, sleeps):
    images.fail_times = 100
    with pytest.raises(UpstreamGenerationError):
        runner.run(paid_job.id)

    job = store.load_job(paid_job.id)
    assert job.status == JobStatus.FAILED
    assert job.progress.data["lastError"]["stage"] == "cover"
    assert len(images.calls) == 3
    assert len(sleeps) == 2


def test_failed_job_resumes_without_repeating_finished_stages(runner, store, paid_job, images, completion):
    images.fail_times = 100
    with pytest.raises(UpstreamGenerationError):
        runner.run(paid_job.id)

    images.fail_times = 0
    book = runner.run(paid_job.id)
    assert store.load_job(paid_job.id).status == JobStatus.COMPLETE
    assert book["title"] == "Mia and the Moon Garden"
    assert completion.count("outline") == 1
    assert completion.count("identity") == 2


def test_non_retryable_errors_fail_immediately(runner, store, paid_job, sleeps, monkeypatch):
    def reject(job_id, stage, stage_input=None):
        raise ValidationError("bad input", stage=str(stage))

    monkeypatch.setattr(runner.controller, "execute_stage", reject)
    with pytest.raises(ValidationError):
        runner.run(paid_job.id)
    assert sleeps == []
    assert store.load_job(paid_job.id).status == JobStatus.FAILED


def test_complete_job_returns_stored_book(runner, paid_job, images):
    first = runner.run(paid_job.id)
    calls = len(images.calls)
    assert runner.run(paid_job.id) == first
    assert len(images.calls) == calls


def test_draft_job_cannot_run(runner, store, intake):
    store.create_job(intake, job_id="draft")
    with pytest.raises(ValidationError):
        runner.run("draft")


def test_worker_processes_every_paid_job(runner, store, intake):
    store.create_job(intake, job_id="a", status=JobStatus.PAID)
    store.create_job(intake, job_id="b", status=JobStatus.PAID)
    store.create_job(intake, job_id="draft")

    worker = BookGenerationWorker(runner, max_parallel_jobs=2)
    processed = worker.run_until_idle()

    assert sorted(processed) == ["a", "b"]
    assert store.load_job("a").status == JobStatus.COMPLETE
    assert store.load_job("b").status == JobStatus.COMPLETE
    assert store.load_job("draft").status == JobStatus.DRAFT
    assert worker.run_once() is None


def test_worker_records_failures_and_moves_on(runner, store, intake, images):
    store.create_job(intake, job_id="a", status=JobStatus.PAID)
    images.fail_times = 100

    worker = BookGenerationWorker(runner)
    assert worker.run_once() == "a"
    assert store.load_job("a").status == JobStatus.FAILED
    assert worker.run_once() is None


def test_worker_polls_until_stopped(runner, store, intake):
    store.create_job(intake, job_id="a", status=JobStatus.PAID)

    class StopWhenIdle(threading.Event):
        def wait(self, timeout=None):
            self.set()
            return True

    worker = BookGenerationWorker(runner, poll_interval=0.01)
    worker.run_forever(StopWhenIdle())
    assert store.load_job("a").status == JobStatus.COMPLETE


def test_worker_survives_unexpected_errors(runner, store, intake, monkeypatch):
    store.create_job(intake, job_id="a", status=JobStatus.PAID)

    def locked(job_id, stage, stage_input=None):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(runner.controller, "execute_stage", locked)
    worker = BookGenerationWorker(runner)
    assert worker.run_once() == "a"

    job = store.load_job("a")
    assert job.status == JobStatus.FAILED
    assert job.progress.data["lastError"]["stage"] == "outline"
    assert worker.run_once() is None


def test_worker_reclaims_jobs_abandoned_in_generating(runner, store, intake, make_stale):
    store.create_job(intake, job_id="orphan", status=JobStatus.PAID)
    assert store.claim_next_paid_job() == "orphan"
    store.create_job(intake, job_id="active", status=JobStatus.PAID)
    assert store.claim_next_paid_job() == "active"
    make_stale("orphan")

    worker = BookGenerationWorker(runner, stale_after=600)
    assert worker.run_once() == "orphan"
    assert store.load_job("orphan").status == JobStatus.COMPLETE
    assert worker.run_once() is None
    assert store.load_job("active").status == JobStatus.GENERATING


def test_worker_defaults_stale_window_from_settings(runner, settings):
    assert BookGenerationWorker(runner).stale_after == settings.stale_job_after


def test_last_attempt_error_propagates_without_extra_retry(runner, paid_job, images, sleeps):
    images.fail_times = 100
    events = []
    with pytest.raises(UpstreamGenerationError):
        runner.run(paid_job.id, progress_callback=lambda event, payload: events.append((event, payload)))
    retries = [payload["attempt"] for event, payload in events if event == "stage:retry"]
    assert retries == [1, 2]
    assert len(images.calls) == 3
