"""
Service layer for producing story outlines via LiteLLM-compatible models.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping

from picturebook.common import ChatResult, CompletionCallable, call_chat_completion, extract_json_object

from .profile import BookIntake
from .prompting import StoryPrompt, build_outline_prompt

logger = logging.getLogger(__name__)

DEFAULT_TEXT_MODEL = "gpt-4.1-mini"


def resolve_text_model(model: str | None, *env_names: str) -> str:
    for candidate in (model, *(os.getenv(name) for name in env_names), os.getenv("LITELLM_MODEL")):
        if candidate:
            return candidate
    return DEFAULT_TEXT_MODEL


def resolve_api_key(api_key: str | None) -> str | None:
    return api_key or os.getenv("OPENAI_API_KEY") or os.getenv("LITELLM_API_KEY")


@dataclass(frozen=True)
class SceneSpec:
    """One narrative beat of the outline."""

    number: int
    title: str
    summary: str
    scene_description: str
    emotional_tone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "summary": self.summary,
            "sceneDescription": self.scene_description,
            "emotionalTone": self.emotional_tone,
        }


@dataclass(frozen=True)
class Outline:
    """Book title, dedication and the ordered scene specs (1-based, contiguous)."""

    title: str
    scenes: tuple[SceneSpec, ...]
    dedication: str | None = None

    def scene(self, number: int) -> SceneSpec:
        if not 1 <= number <= len(self.scenes):
            raise IndexError(f"Scene {number} is outside 1..{len(self.scenes)}.")
        return self.scenes[number - 1]

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "dedication": self.dedication,
            "scenes": [scene.to_dict() for scene in self.scenes],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, scene_count: int | None = None) -> "Outline":
        """
        Validate and normalize an outline mapping.

        Scenes are renumbered by position. Extra scenes beyond ``scene_count`` are
        dropped; too few scenes is an error.
        """
        title = str(payload.get("title") or "").strip()
        if not title:
            raise ValueError("Outline response missing 'title'.")

        raw_scenes = payload.get("scenes")
        if not isinstance(raw_scenes, list) or not raw_scenes:
            raise ValueError("Outline response missing 'scenes'.")

        if scene_count is not None:
            if len(raw_scenes) < scene_count:
                raise ValueError(
                    f"Outline has {len(raw_scenes)} scenes, expected {scene_count}."
                )
            if len(raw_scenes) > scene_count:
                logger.warning(
                    "Outline returned %d scenes; keeping the first %d.",
                    len(raw_scenes),
                    scene_count,
                )
                raw_scenes = raw_scenes[:scene_count]

        scenes: list[SceneSpec] = []
        for position, entry in enumerate(raw_scenes, start=1):
            if not isinstance(entry, Mapping):
                raise ValueError(f"Invalid scene entry at position {position}: {entry!r}")
            summary = str(entry.get("summary") or "").strip()
            description = str(
                entry.get("sceneDescription") or entry.get("scene_description") or summary
            ).strip()
            if not summary and not description:
                raise ValueError(f"Scene {position} has neither a summary nor a description.")
            tone = entry.get("emotionalTone") or entry.get("emotional_tone")
            scenes.append(
                SceneSpec(
                    number=position,
                    title=str(entry.get("title") or f"Scene {position}").strip(),
                    summary=summary or description,
                    scene_description=description,
                    emotional_tone=str(tone).strip() if tone else None,
                )
            )

        dedication = payload.get("dedication")
        return cls(
            title=title,
            scenes=tuple(scenes),
            dedication=str(dedication).strip() if dedication else None,
        )


class StoryOutlineGenerator:
    """
    High-level helper that turns a job intake into a scene-by-scene outline.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        completion_fn: CompletionCallable | None = None,
        timeout: float | None = None,
    ) -> None:
        self._api_key = resolve_api_key(api_key)
        self._model = resolve_text_model(model, "PICTUREBOOK_STORY_MODEL", "LITELLM_STORY_MODEL")
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion
        self._timeout = timeout

    @property
    def model(self) -> str:
        """Return the model identifier in use."""
        return self._model

    def generate_outline(
        self,
        intake: BookIntake,
        *,
        scene_count: int,
        temperature: float = 0.8,
        max_output_tokens: int = 3000,
        **response_kwargs: Any,
    ) -> Outline:
        """
        Invoke the configured LLM once and return a validated outline.
        """
        prompt: StoryPrompt = build_outline_prompt(intake, scene_count=scene_count)

        messages = [
            {"role": "system", "content": prompt.system},
            {"role": "user", "content": prompt.user},
        ]

        if self._timeout is not None:
            response_kwargs.setdefault("timeout", self._timeout)

        result: ChatResult = self._completion_fn(
            model=self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_output_tokens,
            api_key=self._api_key,
            **response_kwargs,
        )

        if not result.text:
            raise RuntimeError("LLM response did not contain any text content.")

        outline = Outline.from_dict(extract_json_object(result.text), scene_count=scene_count)
        logger.info("Outline '%s' generated with %d scenes.", outline.title, len(outline.scenes))
        return outline
