"""Shared value types for the media tag search pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar


T = TypeVar("T")


class MediaType(str, Enum):
    GALGAME = "GALGAME"
    ANIME = "ANIME"
    MANGA = "MANGA"


@dataclass(frozen=True)
class CatalogItem:
    id: str | int
    title: str
    alt_title: str = ""
    description: str = ""
    rating: float | None = None
    vote_count: int | None = None
    image_url: str | None = None
    source_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "altTitle": self.alt_title,
            "description": self.description,
            "rating": self.rating,
            "voteCount": self.vote_count,
            "imageUrl": self.image_url,
            "sourceUrl": self.source_url,
        }


@dataclass(frozen=True)
class ScoredItem:
    item: CatalogItem
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        payload = self.item.to_dict()
        payload["similarity"] = self.similarity
        return payload


@dataclass(frozen=True)
class StageOutcome(Generic[T]):
    """Value returned across a pipeline stage boundary.

    ``degraded`` separates "legitimately empty" from "an upstream failed and
    this is the fallback or partial value".
    """

    value: T
    degraded: bool = False
    reason: str | None = None

    @classmethod
    def ok(cls, value: T) -> "StageOutcome[T]":
        return cls(value=value)

    @classmethod
    def degraded_to(cls, value: T, reason: str) -> "StageOutcome[T]":
        return cls(value=value, degraded=True, reason=reason)


@dataclass(frozen=True)
class TagVocabulary:
    tags: tuple[str, ...] = ()
    genres: tuple[str, ...] = ()

    @classmethod
    def empty(cls) -> "TagVocabulary":
        return cls()

    @property
    def is_loaded(self) -> bool:
        return bool(self.tags)


@dataclass
class RetrievalReport:
    source: str
    ai_tags: list[str] = field(default_factory=list)
    tag_ids: list[str] = field(default_factory=list)
    items: list[CatalogItem] = field(default_factory=list)
    degraded_stages: dict[str, str] = field(default_factory=dict)

    def record(self, stage: str, outcome: StageOutcome[Any]) -> Any:
        if outcome.degraded:
            self.degraded_stages[stage] = outcome.reason or "degraded"
        return outcome.value
