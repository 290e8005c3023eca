from __future__ import annotations

import threading

import pytest

from picturebook.common import CreditExhaustedError, NotFoundError, UpstreamGenerationError, ValidationError
from picturebook.pipeline import BookJobRunner, RegenerationService


@pytest.fixture
def completed_job(controller, paid_job):
    BookJobRunner(controller, sleep=lambda _: None).run(paid_job.id)
    return paid_job


@pytest.fixture
def service(store, images, settings):
    return RegenerationService(store, images, settings=settings, seed_fn=lambda: 4242)


def _illustration(store, job_id, scene_number):
    book = store.load_job(job_id).book
    return next(
        page
        for page in book["pages"]
        if page["type"] == "story-illustration" and page["sceneNumber"] == scene_number
    )


def test_regenerate_scene_replaces_illustration_and_spends_a_credit(service, store, completed_job, images):
    before = _illustration(store, completed_job.id, 2)["illustrationUrl"]
    original_call = images.calls[2]

    result = service.regenerate_scene(completed_job.id, 2)

    assert result["remainingCredits"] == 1
    assert result["seed"] == 4242
    assert result["illustrationUrl"] != before
    assert _illustration(store, completed_job.id, 2)["illustrationUrl"] == result["illustrationUrl"]
    assert images.calls[-1]["prompt"] == original_call["prompt"]
    assert images.calls[-1]["negative_prompt"] == original_call["negative_prompt"]
    assert images.calls[-1]["reference_images"] == original_call["reference_images"]
    metadata = store.load_job(completed_job.id).illustration_metadata[1]
    assert metadata["seed"] == 4242


def test_credits_run_out(service, completed_job):
    service.regenerate_scene(completed_job.id, 1)
    service.regenerate_scene(completed_job.id, 1)
    assert service.regeneration_credits(completed_job.id) == 0
    with pytest.raises(CreditExhaustedError):
        service.regenerate_scene(completed_job.id, 1)


def test_failed_generation_refunds_the_credit(service, store, completed_job, images):
    before = _illustration(store, completed_job.id, 1)["illustrationUrl"]
    images.fail_times = 1
    with pytest.raises(UpstreamGenerationError):
        service.regenerate_scene(completed_job.id, 1)
    assert service.regeneration_credits(completed_job.id) == 2
    assert _illustration(store, completed_job.id, 1)["illustrationUrl"] == before


def test_concurrent_regenerations_never_overspend(service, store, completed_job):
    outcomes = []

    def regenerate():
        try:
            service.regenerate_scene(completed_job.id, 3)
            outcomes.append("ok")
        except CreditExhaustedError:
            outcomes.append("exhausted")

    threads = [threading.Thread(target=regenerate) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["exhausted", "exhausted", "ok", "ok"]
    assert store.regeneration_credits(completed_job.id) == 0


def test_unknown_scene_is_not_found(service, completed_job):
    with pytest.raises(NotFoundError):
        service.regenerate_scene(completed_job.id, 99)
    assert service.regeneration_credits(completed_job.id) == 2


def test_regeneration_requires_complete_book(service, paid_job):
    with pytest.raises(ValidationError):
        service.regenerate_scene(paid_job.id, 1)


def test_update_page_text_is_free(service, store, completed_job):
    book = service.update_page_text(completed_job.id, 4, "  A brand new first page.  ")
    assert book["pages"][3]["text"] == "A brand new first page."
    assert store.load_job(completed_job.id).book["pages"][3]["text"] == "A brand new first page."
    assert service.regeneration_credits(completed_job.id) == 2


def test_update_page_text_rejects_blank_and_image_pages(service, completed_job):
    with pytest.raises(ValidationError):
        service.update_page_text(completed_job.id, 4, "   ")
    with pytest.raises(ValidationError):
        service.update_page_text(completed_job.id, 3, "text on a picture")
