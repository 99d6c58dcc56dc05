"""Similarity-based re-ranking of catalog candidates, as a batch or a progress stream."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from media_tag_assistant.context import RequestCancelled, RequestContext, gather_or_cancel
from media_tag_assistant.models import CatalogItem, ScoredItem


_LOGGER = logging.getLogger(__name__)

Scorer = Callable[[str, str, RequestContext | None], Awaitable[float]]


@dataclass(frozen=True)
class FilterSettings:
    min_score: float = 0.35
    max_results: int = 20
    top_n: int = 50
    batch_size: int = 5
    min_description_length: int = 20


class SemanticFilter:
    """Scores candidates against the user's text in sequential, concurrent batches.

    All scorer calls inside one batch run together; the next batch starts only
    once every call of the previous one has finished.
    """

    def __init__(self, scorer: Scorer, settings: FilterSettings | None = None) -> None:
        self.scorer = scorer
        self.settings = settings or FilterSettings()

    def _batches(self, items: list[CatalogItem]):
        size = max(1, self.settings.batch_size)
        for start in range(0, len(items), size):
            yield items[start : start + size]

    async def _score_one(self, item: CatalogItem, user_text: str, context: RequestContext | None) -> float | None:
        try:
            return await self.scorer(user_text, item.description, context)
        except RequestCancelled:
            raise
        except Exception as exc:
            _LOGGER.warning("Similarity scoring raised for item %s: %s", item.id, exc)
            return None

    async def _score_batch(
        self,
        batch: list[CatalogItem],
        user_text: str,
        context: RequestContext | None,
    ) -> list[ScoredItem]:
        if context is not None:
            context.check()
        scores = await gather_or_cancel(*(self._score_one(item, user_text, context) for item in batch))
        return [
            ScoredItem(item=item, similarity=score)
            for item, score in zip(batch, scores)
            if score is not None and score >= self.settings.min_score
        ]

    async def filter_items(
        self,
        items: list[CatalogItem],
        user_text: str,
        context: RequestContext | None = None,
    ) -> list[ScoredItem]:
        _LOGGER.info("Semantic filter received %d candidates", len(items))
        candidates = [
            item
            for item in items
            if item.description and len(item.description) >= self.settings.min_description_length
        ]
        candidates = candidates[: self.settings.top_n]
        _LOGGER.info("Semantic filter scoring %d candidates", len(candidates))

        scored: list[ScoredItem] = []
        for batch in self._batches(candidates):
            scored.extend(await self._score_batch(batch, user_text, context))

        scored.sort(key=lambda row: row.similarity, reverse=True)
        return scored[: self.settings.max_results]

    async def stream(
        self,
        items: list[CatalogItem],
        user_text: str,
        context: RequestContext | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        candidates = [item for item in items if item.description]
        total = len(candidates)
        processed = 0
        sent = 0
        _LOGGER.info("Semantic stream started: %d of %d candidates have descriptions", total, len(items))

        for batch in self._batches(candidates):
            passed = await self._score_batch(batch, user_text, context)
            processed += len(batch)
            sent += len(passed)
            yield {
                "type": "progress",
                "done": sent,
                "total": total,
                "progress": round(processed / total * 100),
                "results": [row.to_dict() for row in passed],
            }

        yield {"type": "end"}
