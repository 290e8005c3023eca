"""
Finished book document produced by the ``finalize`` stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

PAGE_TYPES = ("cover", "title", "story-text", "story-illustration", "back")


@dataclass
class BookPage:
    """One page of the finished book; ``page_number`` is 1-based."""

    page_number: int
    type: str
    scene_number: int | None = None
    text: str | None = None
    illustration_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"pageNumber": self.page_number, "type": self.type}
        if self.scene_number is not None:
            payload["sceneNumber"] = self.scene_number
        if self.text is not None:
            payload["text"] = self.text
        if self.illustration_url is not None:
            payload["illustrationUrl"] = self.illustration_url
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "BookPage":
        page_type = str(payload.get("type") or "")
        if page_type not in PAGE_TYPES:
            raise ValueError(f"Invalid page type: {page_type!r}")
        scene_number = payload.get("sceneNumber")
        return cls(
            page_number=int(payload["pageNumber"]),
            type=page_type,
            scene_number=int(scene_number) if scene_number is not None else None,
            text=payload.get("text"),
            illustration_url=payload.get("illustrationUrl"),
        )


@dataclass
class Book:
    """Title, dedication, ordered pages and the per-scene regeneration metadata."""

    title: str
    dedication: str
    pages: list[BookPage] = field(default_factory=list)
    illustration_metadata: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "dedication": self.dedication,
            "pages": [page.to_dict() for page in self.pages],
            "illustration_metadata": list(self.illustration_metadata),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Book":
        if "pages" not in payload:
            raise ValueError("Book payload must include 'pages'.")
        return cls(
            title=str(payload.get("title") or ""),
            dedication=str(payload.get("dedication") or ""),
            pages=[BookPage.from_dict(entry) for entry in payload.get("pages", [])],
            illustration_metadata=list(payload.get("illustration_metadata") or []),
        )
