"""
Shared fixtures: a temporary job store and in-process fakes for the text and image services.
"""

from __future__ import annotations

import itertools
import json
import re
import threading
from typing import Any

import pytest

from picturebook.common import ChatResult
from picturebook.pipeline import (
    JobStatus,
    PipelineController,
    PipelineSettings,
    SQLiteJobStore,
    build_default_services,
)
from picturebook.story_generation import BookIntake

SCENE_COUNT = 3

_EXACT_COUNT = re.compile(r"exactly (\d+) scenes")
_SCENE_HEADER = re.compile(r"SCENE (\d+):")


class FakeCompletion:
    """Routes chat calls by system prompt and answers with canned JSON."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def fail_next(self, kind: str, times: int = 1) -> None:
        self.failures[kind] = times

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call["kind"] == kind)

    def __call__(self, *, model, messages, **kwargs) -> ChatResult:
        system = messages[0]["content"]
        user = messages[1]["content"]
        user_text = user if isinstance(user, str) else user[0]["text"]

        if "story planner" in system:
            kind = "outline"
        elif "single page" in system:
            kind = "page"
        elif "continuity director" in system:
            kind = "identity"
        elif "back cover" in system:
            kind = "back_cover"
        else:
            raise AssertionError(f"Unexpected prompt: {system[:60]}")

        with self._lock:
            self.calls.append({"kind": kind, "model": model, "messages": messages, **kwargs})
            if self.failures.get(kind):
                self.failures[kind] -= 1
                raise RuntimeError(f"{kind} service unavailable")

        if kind == "outline":
            count = int(_EXACT_COUNT.search(user_text).group(1))
            payload = {
                "title": "Mia and the Moon Garden",
                "dedication": "For Mia, who waters the stars.",
                "scenes": [
                    {
                        "number": number,
                        "title": f"Scene title {number}",
                        "summary": f"Summary of scene {number}.",
                        "sceneDescription": f"Outline visual for scene {number}",
                        "emotionalTone": "curious",
                    }
                    for number in range(1, count + 1)
                ],
            }
            return ChatResult(text=json.dumps(payload), raw=None)
        if kind == "page":
            number = int(_SCENE_HEADER.search(user_text).group(1))
            payload = {
                "text": f"Page text for scene {number}.",
                "visualPrompt": f"Refined visual for scene {number}",
            }
            return ChatResult(text=json.dumps(payload), raw=None)
        if kind == "identity":
            name = re.search(r"CHARACTER: (.+)", user_text).group(1).strip()
            payload = {
                "description": f"{name} has a round face and warm brown eyes.",
                "consistencyKeywords": f"{name} round face, brown eyes, red scarf",
            }
            return ChatResult(text=json.dumps(payload), raw=None)
        return ChatResult(text="A cozy adventure under the moon. What will Mia find?", raw=None)


class FakeImageGenerator:
    """Counts calls and returns a unique URL per image."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.fail_times = 0
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def generate_image(
        self, *, prompt, negative_prompt, seed, aspect_ratio="3:4", reference_images=(), timeout=None
    ):
        with self._lock:
            self.calls.append(
                {
                    "prompt": prompt,
                    "negative_prompt": negative_prompt,
                    "seed": seed,
                    "aspect_ratio": aspect_ratio,
                    "reference_images": list(reference_images),
                    "timeout": timeout,
                }
            )
            if self.fail_times:
                self.fail_times -= 1
                raise RuntimeError("image model overloaded")
            return f"https://images.test/{next(self._counter)}.webp"


@pytest.fixture
def intake_data() -> dict[str, Any]:
    return {
        "settings": {
            "ageRange": "5-8",
            "theme": "adventure",
            "artStyle": "pixar-3d",
            "sceneCount": SCENE_COUNT,
        },
        "characters": [
            {
                "id": "mia",
                "name": "Mia",
                "entityType": "human",
                "gender": "female",
                "age": "6",
                "photoUrl": "https://photos.test/mia.jpg",
                "role": "main",
            },
            {
                "id": "biscuit",
                "name": "Biscuit",
                "entityType": "animal",
                "description": "a golden retriever puppy",
                "role": "supporting",
            },
        ],
    }


@pytest.fixture
def intake(intake_data) -> BookIntake:
    return BookIntake.from_mapping(intake_data)


@pytest.fixture
def store(tmp_path) -> SQLiteJobStore:
    job_store = SQLiteJobStore(tmp_path / "jobs.db")
    yield job_store
    job_store.close()


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(
        scene_count=SCENE_COUNT,
        regeneration_credits=2,
        max_stage_attempts=3,
        retry_base_delay=0.01,
        retry_max_delay=0.01,
    )


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def images() -> FakeImageGenerator:
    return FakeImageGenerator()


@pytest.fixture
def controller(store, settings, completion, images) -> PipelineController:
    seeds = itertools.count(1000)
    services = build_default_services(completion_fn=completion, image_generator=images, api_key="test-key")
    services.seed_fn = lambda: next(seeds)
    return PipelineController(store, services=services, settings=settings)


@pytest.fixture
def paid_job(store, intake):
    return store.create_job(intake, job_id="job-1", status=JobStatus.PAID)


@pytest.fixture
def make_stale(store):
    """Backdate a job's last activity as if its worker had died long ago."""

    def backdate(job_id: str) -> None:
        with store._transaction() as conn:
            conn.execute(
                "UPDATE jobs SET updated_at = ? WHERE id = ?",
                ("2000-01-01T00:00:00.000000+00:00", job_id),
            )

    return backdate
