"""
Per-job character consistency cache.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from picturebook.ai_generation import CastMember
from picturebook.common import StageOrderViolationError
from picturebook.story_generation import Character

from .identity import CharacterDescription
from .progress import CHARACTER_DESCRIPTIONS_KEY, Progress


class CharacterConsistencyCache:
    """
    Read-only view over the descriptions computed by the ``character_consistency`` stage.

    Lookups go by character id first, then by name, so every scene reuses the
    same wording for the same character.
    """

    def __init__(self, descriptions: Sequence[CharacterDescription]) -> None:
        self._descriptions = tuple(descriptions)
        self._by_id = {item.character_id: item for item in self._descriptions if item.character_id}
        self._by_name = {item.name: item for item in self._descriptions if item.name}

    def __len__(self) -> int:
        return len(self._descriptions)

    @classmethod
    def from_data(cls, payload: Any) -> "CharacterConsistencyCache":
        if not isinstance(payload, list):
            raise StageOrderViolationError(
                "Character descriptions have not been computed yet.",
                stage="character_consistency",
            )
        return cls([CharacterDescription.from_dict(item) for item in payload if isinstance(item, Mapping)])

    @classmethod
    def from_progress(cls, progress: Progress) -> "CharacterConsistencyCache":
        return cls.from_data(progress.data.get(CHARACTER_DESCRIPTIONS_KEY))

    def to_data(self) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self._descriptions]

    def get(self, character: Character) -> CharacterDescription:
        found = self._by_id.get(character.id) or self._by_name.get(character.name)
        if found is None:
            raise StageOrderViolationError(
                f"No cached description for {character.name}; run character_consistency first.",
                stage="character_consistency",
                entity=character.name,
            )
        return found

    def covers(self, characters: Sequence[Character]) -> bool:
        return all(
            character.id in self._by_id or character.name in self._by_name for character in characters
        )

    def cast(
        self,
        characters: Sequence[Character],
        actions: Mapping[str, str] | None = None,
    ) -> list[CastMember]:
        """Pair each character with its cached description, in cast order."""
        actions = actions or {}
        return [
            CastMember(
                character=character,
                visual_description=self.get(character).visual_prompt,
                action=actions.get(character.id) or actions.get(character.name),
            )
            for character in characters
        ]
