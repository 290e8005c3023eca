from __future__ import annotations

import threading
from types import SimpleNamespace

import pytest
import requests

from picturebook.ai_generation import LocalObjectStore, ReplicateImageGenerator, normalize_image_outputs
from picturebook.common import (
    ChatResult,
    PictureBookError,
    RetryPolicy,
    StageOrderViolationError,
    UpstreamGenerationError,
    ValidationError,
    calculate_delay,
    extract_json_object,
)
from picturebook.pipeline import CharacterDescriptionGenerator, PipelineSettings
from picturebook.story_generation import Character


class RecordingClient:
    def __init__(self, output):
        self.output = output
        self.runs = []

    def run(self, model, input):
        self.runs.append((model, input))
        return self.output


def test_replicate_generator_builds_seedream_payload():
    client = RecordingClient([SimpleNamespace(url="https://out.test/1.webp")])
    generator = ReplicateImageGenerator(client=client)
    url = generator.generate_image(
        prompt="SCENE: a meadow.",
        negative_prompt="blurry",
        seed=7,
        reference_images=["https://ref.test/a.png", "https://ref.test/b.png"],
    )
    assert url == "https://out.test/1.webp"
    model, payload = client.runs[0]
    assert model == "bytedance/seedream-4.5"
    assert payload["seed"] == 7
    assert payload["negative_prompt"] == "blurry"
    assert payload["aspect_ratio"] == "3:4"
    assert payload["image_input"] == ["https://ref.test/a.png", "https://ref.test/b.png"]
    assert "7" not in payload["prompt"]


def test_replicate_generator_rejects_unconfigured_model():
    generator = ReplicateImageGenerator(client=RecordingClient("x"), model_identifier="someone/unknown")
    with pytest.raises(ValueError):
        generator.generate_image(prompt="p", negative_prompt="n", seed=1)


def test_replicate_generator_requires_output():
    generator = ReplicateImageGenerator(client=RecordingClient([]))
    with pytest.raises(RuntimeError):
        generator.generate_image(prompt="p", negative_prompt="n", seed=1)


def test_replicate_generator_requires_token(monkeypatch):
    monkeypatch.delenv("REPLICATE_API_TOKEN", raising=False)
    with pytest.raises(ValueError):
        ReplicateImageGenerator()


def test_normalize_image_outputs_shapes():
    assert normalize_image_outputs(None) == []
    assert normalize_image_outputs("https://a") == ["https://a"]
    assert normalize_image_outputs(["https://a", SimpleNamespace(url=lambda: "https://b")]) == [
        "https://a",
        "https://b",
    ]
    assert normalize_image_outputs(iter("https://c")) == ["https://c"]



def test_replicate_generator_gives_up_after_timeout():
    release = threading.Event()

    class HangingClient(RecordingClient):
        def run(self, model, input):
            release.wait(5)
            return super().run(model, input)

    generator = ReplicateImageGenerator(client=HangingClient(["https://out.test/late.webp"]))
    try:
        with pytest.raises(TimeoutError):
            generator.generate_image(prompt="p", negative_prompt="n", seed=1, timeout=0.01)
    finally:
        release.set()


def test_replicate_generator_uses_configured_timeout(monkeypatch):
    monkeypatch.setenv("REPLICATE_TIMEOUT", "45")
    client = RecordingClient(["https://out.test/1.webp"])
    generator = ReplicateImageGenerator(client=client)
    assert generator.generate_image(prompt="p", negative_prompt="n", seed=1) == "https://out.test/1.webp"
    assert len(client.runs) == 1

def test_object_store_copies_image(tmp_path, monkeypatch):
    response = SimpleNamespace(
        content=b"png-bytes",
        headers={"Content-Type": "image/png"},
        raise_for_status=lambda: None,
    )
    monkeypatch.setattr(requests, "get", lambda url, timeout: response)
    object_store = LocalObjectStore(tmp_path, public_base_url="https://cdn.test/")
    url = object_store.persist_remote_image("https://provider.test/x.webp", key_stem="job/cover-1")
    assert url == "https://cdn.test/job/cover-1.png"
    assert (tmp_path / "job" / "cover-1.png").read_bytes() == b"png-bytes"


def test_object_store_keeps_provider_url_on_download_failure(tmp_path, monkeypatch):
    def fail(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(requests, "get", fail)
    object_store = LocalObjectStore(tmp_path)
    assert object_store.persist_remote_image("https://provider.test/x.webp", key_stem="j/s") == (
        "https://provider.test/x.webp"
    )



def test_object_store_download_never_outlives_the_caller_timeout(tmp_path, monkeypatch):
    timeouts = []

    def fail(url, timeout):
        timeouts.append(timeout)
        raise requests.Timeout("slow")

    monkeypatch.setattr(requests, "get", fail)
    object_store = LocalObjectStore(tmp_path, request_timeout=30.0)
    object_store.persist_remote_image("https://provider.test/x.webp", key_stem="j/a", timeout=4.5)
    object_store.persist_remote_image("https://provider.test/x.webp", key_stem="j/b", timeout=120.0)
    object_store.persist_remote_image("https://provider.test/x.webp", key_stem="j/c")
    assert timeouts == [4.5, 30.0, 30.0]

def test_extract_json_object_tolerates_surrounding_prose():
    assert extract_json_object('Here you go: {"a": 1} thanks') == {"a": 1}
    with pytest.raises(ValueError):
        extract_json_object("no json")


def test_description_generator_filters_clothing_keywords():
    def completion(**kwargs):
        return ChatResult(
            text='{"description": "Round face.", "consistencyKeywords": "curly red hair, green jacket, freckles"}',
            raw=None,
        )

    generator = CharacterDescriptionGenerator(completion_fn=completion, model="test-model")
    description = generator.describe(Character(id="m", name="Mia"))
    assert description.consistency_keywords == "curly red hair, freckles"
    assert description.visual_prompt == "curly red hair, freckles"


def test_description_generator_rejects_empty_description():
    generator = CharacterDescriptionGenerator(
        completion_fn=lambda **kwargs: ChatResult(text='{"description": ""}', raw=None),
        model="test-model",
    )
    with pytest.raises(ValueError):
        generator.describe(Character(id="m", name="Mia"))


def test_settings_from_env():
    settings = PipelineSettings.from_env(
        {"PICTUREBOOK_SCENE_COUNT": "8", "PICTUREBOOK_REGENERATION_CREDITS": "5"}
    )
    assert settings.scene_count == 8
    assert settings.regeneration_credits == 5
    assert settings.retry_policy().max_attempts == 3
    with pytest.raises(ValidationError):
        PipelineSettings.from_env({"PICTUREBOOK_SCENE_COUNT": "many"})
    with pytest.raises(ValidationError):
        PipelineSettings(scene_count=0)



def test_settings_keep_lease_above_stage_budget():
    PipelineSettings(stage_time_budget=100.0, lease_ttl=115.0)
    with pytest.raises(ValidationError):
        PipelineSettings(stage_time_budget=290.0, lease_ttl=300.0)
    with pytest.raises(ValidationError):
        PipelineSettings(lease_ttl=300.0, stale_job_after=300.0)
    settings = PipelineSettings.from_env({"PICTUREBOOK_STALE_JOB_AFTER": "900"})
    assert settings.stale_job_after == 900.0

def test_calculate_delay_is_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)
    assert [calculate_delay(attempt, policy) for attempt in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_error_payload_carries_stage_entity_and_details():
    error = StageOrderViolationError("scenes missing", stage="finalize", missing_scenes=[2])
    payload = error.to_payload()
    assert payload["success"] is False
    assert payload["errorType"] == "StageOrderViolation"
    assert payload["missingScenes"] == [2]
    assert payload["retryable"] is False
    assert payload["error"] == "[finalize] scenes missing"

    upstream = UpstreamGenerationError("timeout", stage="scene_image", entity="scene 4")
    assert upstream.retryable
    assert upstream.user_message == "[scene_image / scene 4] timeout"
    assert isinstance(upstream, PictureBookError)
    assert "Details" not in str(upstream)
