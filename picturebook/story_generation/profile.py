"""
Structured representations of the job intake: characters and narrative settings.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Sequence

from picturebook.common import ValidationError

ENTITY_TYPES = ("human", "animal", "object")
ROLES = ("main", "supporting")
AGE_RANGES = ("0-2", "2-4", "5-8", "9-12")

DEFAULT_AGE_RANGE = "5-8"
DEFAULT_THEME = "adventure"
DEFAULT_ART_STYLE = "pixar-3d"

_SUBJECT_PATTERN = re.compile(r"^\s*Subject:\s*(?P<subject>[^.]*)\.?\s*(?P<rest>[\s\S]*)$", re.IGNORECASE)


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value).strip()
    return text or None


def _coerce_optional_int(value: Any, *, field_name: str) -> int | None:
    if value is None or value == "":
        return None

    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"Expected an integer-compatible value for {field_name}, got {value!r}"
        ) from exc


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _normalize_choice(value: Any, *, choices: Sequence[str], default: str, field_name: str) -> str:
    text = _coerce_optional_str(value)
    if text is None:
        return default
    normalized = text.lower()
    if normalized not in choices:
        raise ValidationError(
            f"Unsupported {field_name} {text!r}; expected one of {', '.join(choices)}."
        )
    return normalized


@dataclass(frozen=True)
class AvatarReference:
    """
    Generated avatar reference, normalized once at ingestion.

    ``kind`` is ``"single"`` for one URL and ``"multi"`` for an ordered list.
    """

    kind: str
    urls: tuple[str, ...]

    @property
    def primary(self) -> str:
        return self.urls[0]

    @classmethod
    def parse(cls, value: Any) -> "AvatarReference | None":
        """
        Accept a bare URL, a JSON-encoded string or array, or an already-decoded list.
        """
        if value is None:
            return None

        if isinstance(value, AvatarReference):
            return value

        if isinstance(value, Mapping):
            urls = value.get("urls") or value.get("url")
            return cls.parse(urls)

        if isinstance(value, str):
            text = value.strip()
            if not text or text == "[]":
                return None
            if text[0] in "[\"":
                try:
                    decoded = json.loads(text)
                except json.JSONDecodeError as exc:
                    raise ValidationError(f"Malformed avatar reference {text!r}.") from exc
                return cls.parse(decoded)
            return cls(kind="single", urls=(text,))

        if isinstance(value, Iterable):
            urls = tuple(
                item.strip() for item in value if isinstance(item, str) and item.strip()
            )
            if not urls:
                return None
            if len(urls) == 1:
                return cls(kind="single", urls=urls)
            return cls(kind="multi", urls=urls)

        raise ValidationError(f"Unsupported avatar reference type: {type(value).__name__}.")

    def to_value(self) -> str | list[str]:
        if self.kind == "single":
            return self.urls[0]
        return list(self.urls)


@dataclass(frozen=True)
class Character:
    """
    One member of the book's cast.

    Attributes
    ----------
    id:
        Stable identifier used as the consistency cache key.
    name:
        Display name used in prompts and text.
    entity_type:
        ``human``, ``animal`` or ``object``; selects the prompt template.
    gender:
        ``male``, ``female``, ``other`` or free text.
    age:
        Free-text age for humans ("5", "5 years"); drives the proportion descriptor.
    photo_url:
        Uploaded source image.
    avatar:
        Generated avatar reference(s), preferred over the photo.
    description:
        Free-text appearance notes (species/breed for animals).
    clothing_style:
        Wardrobe to state explicitly; empty means the template's fallback.
    story_role:
        Narrative role ("the brave explorer").
    role:
        ``main`` or ``supporting``.
    art_style:
        Style override; the main character's value wins for the whole job.
    """

    id: str
    name: str
    entity_type: str = "human"
    gender: str | None = None
    age: str | None = None
    photo_url: str | None = None
    avatar: AvatarReference | None = None
    description: str | None = None
    clothing_style: str | None = None
    story_role: str | None = None
    role: str = "supporting"
    art_style: str | None = None

    @property
    def is_main(self) -> bool:
        return self.role == "main"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, position: int = 0) -> "Character":
        if not isinstance(data, Mapping):
            raise ValidationError("Character entries must be mappings.")

        name = _coerce_optional_str(data.get("name"))
        if not name:
            raise ValidationError("Character 'name' is required.", entity=f"character #{position + 1}")

        identifier = _coerce_optional_str(_pick(data, "id", "character_id", "characterId"))
        entity_type = _normalize_choice(
            _pick(data, "entity_type", "entityType"),
            choices=ENTITY_TYPES,
            default="human",
            field_name="entity type",
        )
        role = _normalize_choice(
            data.get("role"),
            choices=ROLES,
            default="supporting",
            field_name="role",
        )

        return cls(
            id=identifier or f"character-{position + 1}",
            name=name,
            entity_type=entity_type,
            gender=_coerce_optional_str(data.get("gender")),
            age=_coerce_optional_str(data.get("age")),
            photo_url=_coerce_optional_str(_pick(data, "photo_url", "photoUrl")),
            avatar=AvatarReference.parse(_pick(data, "avatar", "ai_avatar_url", "aiAvatarUrl")),
            description=_coerce_optional_str(data.get("description")),
            clothing_style=_coerce_optional_str(_pick(data, "clothing_style", "clothingStyle")),
            story_role=_coerce_optional_str(_pick(data, "story_role", "storyRole")),
            role=role,
            art_style=_coerce_optional_str(_pick(data, "art_style", "artStyle")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "entityType": self.entity_type,
            "gender": self.gender,
            "age": self.age,
            "photoUrl": self.photo_url,
            "aiAvatarUrl": self.avatar.to_value() if self.avatar else None,
            "description": self.description,
            "clothingStyle": self.clothing_style,
            "storyRole": self.story_role,
            "role": self.role,
            "artStyle": self.art_style,
        }


@dataclass(frozen=True)
class JobSettings:
    """Narrative settings for one book."""

    age_range: str = DEFAULT_AGE_RANGE
    theme: str = DEFAULT_THEME
    art_style: str = DEFAULT_ART_STYLE
    subject: str | None = None
    free_text_description: str | None = None
    title: str | None = None
    scene_count: int | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "JobSettings":
        data = data or {}
        age_range = _coerce_optional_str(_pick(data, "age_range", "ageRange")) or DEFAULT_AGE_RANGE
        if age_range not in AGE_RANGES:
            raise ValidationError(
                f"Unsupported age range {age_range!r}; expected one of {', '.join(AGE_RANGES)}."
            )

        subject = _coerce_optional_str(data.get("subject"))
        free_text = _coerce_optional_str(
            _pick(data, "free_text_description", "freeTextDescription", "description")
        )
        if free_text and subject is None:
            subject, free_text = split_subject(free_text)

        scene_count = _coerce_optional_int(
            _pick(data, "scene_count", "sceneCount"), field_name="scene count"
        )
        if scene_count is not None and scene_count < 1:
            raise ValidationError("Scene count must be at least 1.")

        return cls(
            age_range=age_range,
            theme=_coerce_optional_str(data.get("theme")) or DEFAULT_THEME,
            art_style=_coerce_optional_str(_pick(data, "art_style", "artStyle")) or DEFAULT_ART_STYLE,
            subject=subject,
            free_text_description=free_text,
            title=_coerce_optional_str(data.get("title")),
            scene_count=scene_count,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ageRange": self.age_range,
            "theme": self.theme,
            "artStyle": self.art_style,
            "subject": self.subject,
            "freeTextDescription": self.free_text_description,
            "title": self.title,
            "sceneCount": self.scene_count,
        }


def split_subject(description: str) -> tuple[str | None, str | None]:
    """
    Split ``"Subject: X. rest"`` into ``("X", "rest")``; other text passes through.
    """
    match = _SUBJECT_PATTERN.match(description)
    if match is None:
        return None, description
    subject = match.group("subject").strip() or None
    rest = match.group("rest").strip() or None
    return subject, rest


@dataclass(frozen=True)
class BookIntake:
    """Settings plus the ordered cast, as submitted for one job."""

    settings: JobSettings
    characters: tuple[Character, ...] = field(default_factory=tuple)

    @property
    def main_character(self) -> Character | None:
        for character in self.characters:
            if character.is_main:
                return character
        return self.characters[0] if self.characters else None

    @property
    def art_style(self) -> str:
        main = self.main_character
        if main is not None and main.art_style:
            return main.art_style
        return self.settings.art_style

    def with_scene_count(self, scene_count: int) -> "BookIntake":
        if scene_count < 1:
            raise ValidationError("Scene count must be at least 1.")
        return replace(self, settings=replace(self.settings, scene_count=scene_count))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BookIntake":
        if not isinstance(data, Mapping):
            raise ValidationError("Job intake must deserialize to a mapping.")

        raw_characters = data.get("characters") or []
        if not isinstance(raw_characters, Sequence) or isinstance(raw_characters, (str, bytes)):
            raise ValidationError("'characters' must be a list of mappings.")
        characters = tuple(
            Character.from_mapping(item, position=index)
            for index, item in enumerate(raw_characters)
        )
        if not characters:
            raise ValidationError("At least one character is required.")

        main_count = sum(1 for character in characters if character.is_main)
        if main_count > 1:
            raise ValidationError("At most one character may have the 'main' role.")
        if main_count == 0:
            characters = (replace(characters[0], role="main"),) + characters[1:]

        seen: set[str] = set()
        for character in characters:
            if character.id in seen:
                raise ValidationError(f"Duplicate character id {character.id!r}.")
            seen.add(character.id)

        return cls(settings=JobSettings.from_mapping(data.get("settings")), characters=characters)
