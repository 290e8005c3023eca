"""
Character visual descriptions for illustration continuity.
"""

from __future__ import annotations

import base64
import logging
import mimetypes
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

from picturebook.ai_generation import get_age_physical_descriptors, load_prompt_rules, resolve_reference_images
from picturebook.common import CompletionCallable, call_chat_completion, extract_json_object
from picturebook.story_generation import Character
from picturebook.story_generation.story_service import resolve_api_key

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_MODEL = "gpt-4o-mini"

_NON_PHYSICAL_PATTERN = re.compile(
    r"\b("
    r"jacket|hoodie|sweater|coat|shirt|t-shirt|tee|top|blouse|pants|jeans|shorts|skirt|dress|"
    r"outfit|clothing|attire|costume|cape|uniform|boots|shoes|sneakers|sandals|socks|"
    r"hat|beanie|cap|helmet|gloves|scarf|mask|backpack|bag|vest|overalls|goggles|"
    r"bracelet|necklace|earrings|watch|rings|belt|collar|bow"
    r")\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class CharacterDescription:
    """Cached appearance text for one character, reused verbatim in every picture."""

    character_id: str
    name: str
    description: str
    consistency_keywords: str

    @property
    def visual_prompt(self) -> str:
        return self.consistency_keywords or self.description

    def to_dict(self) -> dict[str, Any]:
        return {
            "characterId": self.character_id,
            "name": self.name,
            "description": self.description,
            "consistencyKeywords": self.consistency_keywords,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CharacterDescription":
        return cls(
            character_id=str(payload.get("characterId") or ""),
            name=str(payload.get("name") or ""),
            description=str(payload.get("description") or ""),
            consistency_keywords=str(payload.get("consistencyKeywords") or ""),
        )


def _filter_physical_keywords(keywords: str) -> str:
    kept = [
        token.strip()
        for token in keywords.split(",")
        if token.strip() and not _NON_PHYSICAL_PATTERN.search(token)
    ]
    return ", ".join(kept)


def _entity_summary(character: Character) -> str:
    if character.entity_type == "human":
        descriptors = get_age_physical_descriptors(character.age)
        age_text = descriptors.label if descriptors.years is not None else "age unknown"
        return f"human, {character.gender or 'unspecified gender'}, {age_text}"
    if character.entity_type == "animal":
        return f"animal, {character.description or 'species unknown'}"
    return f"object, {character.description or 'unspecified object'}"


class CharacterDescriptionGenerator:
    """
    Uses a multimodal chat model to describe each character's permanent visual features.
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
        self._model = (
            model
            or os.getenv("PICTUREBOOK_IDENTITY_MODEL")
            or os.getenv("LITELLM_IDENTITY_MODEL")
            or DEFAULT_IDENTITY_MODEL
        )
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion
        self._timeout = timeout

    @property
    def model(self) -> str:
        return self._model

    def describe(
        self,
        character: Character,
        *,
        max_tokens: int = 450,
        temperature: float = 0.2,
        timeout: float | None = None,
    ) -> CharacterDescription:
        """
        Describe one character once; the result is cached for the whole job.
        """
        placeholder = load_prompt_rules()["placeholder_reference"]
        references = [url for url in resolve_reference_images(character) if url != placeholder]

        user_text = (
            "Analyze this character and create a visual description for illustration consistency.\n\n"
            f"CHARACTER: {character.name}\n"
            f"TYPE: {_entity_summary(character)}\n"
            "Focus on permanent visual features that stay the same in every scene "
            "(face shape, skin tone, eye color, hair color and texture, markings, shape, colors). "
            "Do not mention clothing, outfits, or accessories.\n\n"
            "Respond in JSON format:\n"
            '{"description": "2-3 sentences describing permanent appearance", '
            '"consistencyKeywords": "comma-separated visual keywords"}'
        )
        content: list[dict[str, Any]] | str
        if references:
            content = [
                {"type": "text", "text": user_text},
                {"type": "image_url", "image_url": {"url": _normalize_image_input(references[0])}},
            ]
        else:
            content = user_text

        messages: Sequence[dict[str, Any]] = [
            {
                "role": "system",
                "content": (
                    "You are an illustration continuity director. "
                    "Describe only inherent physical features. "
                    "Never mention clothing, outfits, accessories, or props. "
                    "Do not speculate about names, backstory, or personality."
                ),
            },
            {"role": "user", "content": content},
        ]

        extra: dict[str, Any] = {}
        if timeout is None:
            timeout = self._timeout
        if timeout is not None:
            extra["timeout"] = timeout
        result = self._completion_fn(
            model=self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=self._api_key,
            **extra,
        )
        payload = extract_json_object(result.text)
        description = str(payload.get("description") or "").strip()
        if not description:
            raise ValueError(f"Character description for {character.name!r} is empty.")
        keywords = _filter_physical_keywords(str(payload.get("consistencyKeywords") or ""))
        logger.debug("Described %s: %s", character.name, keywords)
        return CharacterDescription(
            character_id=character.id,
            name=character.name,
            description=description,
            consistency_keywords=keywords,
        )


def _normalize_image_input(reference_image: str | Path) -> str:
    candidate = str(reference_image)
    if candidate.lower().startswith(("http://", "https://", "data:")):
        return candidate

    image_path = Path(reference_image).expanduser()
    data = image_path.read_bytes()
    mime_type, _ = mimetypes.guess_type(image_path.name)
    base64_data = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type or 'image/jpeg'};base64,{base64_data}"
