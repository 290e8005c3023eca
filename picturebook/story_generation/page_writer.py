"""
Per-page narrative text and back cover summary generation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from picturebook.common import ChatResult, CompletionCallable, call_chat_completion, extract_json_object

from .profile import BookIntake
from .prompting import build_back_cover_prompt, build_page_prompt
from .story_service import Outline, SceneSpec, resolve_api_key, resolve_text_model


@dataclass(frozen=True)
class PageText:
    """Narrative for one scene plus the visual description refreshed from that text."""

    text: str
    visual_prompt: str

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "visualPrompt": self.visual_prompt}


class _TextService:
    _model_env: tuple[str, ...] = ()

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        completion_fn: CompletionCallable | None = None,
        timeout: float | None = None,
    ) -> None:
        self._api_key = resolve_api_key(api_key)
        self._model = resolve_text_model(model, *self._model_env)
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion
        self._timeout = timeout

    @property
    def model(self) -> str:
        return self._model

    def _complete(
        self,
        system: str,
        user: str,
        *,
        temperature: float,
        max_tokens: int,
        timeout: float | None = None,
    ) -> str:
        extra: dict[str, Any] = {}
        if timeout is None:
            timeout = self._timeout
        if timeout is not None:
            extra["timeout"] = timeout
        result: ChatResult = self._completion_fn(
            model=self._model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=self._api_key,
            **extra,
        )
        if not result.text:
            raise RuntimeError("LLM response did not contain any text content.")
        return result.text


class PageTextGenerator(_TextService):
    """
    Writes the text of a single scene, continuing from the pages before it.
    """

    _model_env = ("PICTUREBOOK_PAGE_MODEL", "PICTUREBOOK_STORY_MODEL", "LITELLM_STORY_MODEL")

    def write_page(
        self,
        intake: BookIntake,
        scene: SceneSpec,
        *,
        previous_texts: Sequence[str] = (),
        temperature: float = 0.8,
        max_output_tokens: int = 900,
        timeout: float | None = None,
    ) -> PageText:
        prompt = build_page_prompt(
            intake,
            scene_number=scene.number,
            scene_title=scene.title,
            scene_summary=scene.summary,
            emotional_tone=scene.emotional_tone,
            previous_texts=previous_texts,
        )
        payload = extract_json_object(
            self._complete(
                prompt.system,
                prompt.user,
                temperature=temperature,
                max_tokens=max_output_tokens,
                timeout=timeout,
            )
        )

        text = str(payload.get("text") or "").strip()
        if not text:
            raise ValueError(f"Page text response for scene {scene.number} missing 'text'.")
        visual = str(payload.get("visualPrompt") or "").strip() or scene.scene_description
        return PageText(text=text, visual_prompt=visual)


class BackCoverWriter(_TextService):
    """Writes the plain-text back cover summary."""

    _model_env = ("PICTUREBOOK_PAGE_MODEL", "PICTUREBOOK_STORY_MODEL", "LITELLM_STORY_MODEL")

    def write_summary(
        self,
        intake: BookIntake,
        outline: Outline,
        *,
        temperature: float = 0.7,
        max_output_tokens: int = 400,
        timeout: float | None = None,
    ) -> str:
        prompt = build_back_cover_prompt(
            intake,
            title=outline.title,
            scene_summaries=[scene.summary for scene in outline.scenes],
        )
        return self._complete(
            prompt.system,
            prompt.user,
            temperature=temperature,
            max_tokens=max_output_tokens,
            timeout=timeout,
        ).strip()
