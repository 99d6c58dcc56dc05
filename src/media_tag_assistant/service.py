"""Search orchestration: text to tags to catalog candidates to ranked or streamed results."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from media_tag_assistant.catalogs import (
    AniListClient,
    VndbClient,
    resolve_tag_ids,
    search_media_by_tags_or,
    search_vn_by_tags,
)
from media_tag_assistant.context import RequestCancelled, RequestContext
from media_tag_assistant.llm_utils import (
    CompletionClient,
    LLMConfig,
    extract_tags,
    make_client,
    score_similarity,
)
from media_tag_assistant.models import MediaType, RetrievalReport, TagVocabulary
from media_tag_assistant.semantic_filter import FilterSettings, SemanticFilter


_LOGGER = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_score(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if 0 <= value <= 1 else default


@dataclass(frozen=True)
class SearchSettings:
    vndb_base_url: str = "https://api.vndb.org/kana"
    anilist_url: str = "https://graphql.anilist.co"
    http_timeout_seconds: float = 15.0
    call_timeout_seconds: float = 30.0
    search_timeout_seconds: float = 180.0
    max_results: int = 200
    min_rating: int = 60
    min_votes: int = 5
    per_page: int = 50
    fanout_concurrency: int = 5
    filter_settings: FilterSettings = FilterSettings()

    @classmethod
    def from_env(cls) -> "SearchSettings":
        return cls(
            vndb_base_url=os.getenv("MTA_VNDB_API_URL", "").strip() or cls.vndb_base_url,
            anilist_url=os.getenv("MTA_ANILIST_API_URL", "").strip() or cls.anilist_url,
            http_timeout_seconds=_env_float("MTA_HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds),
            call_timeout_seconds=_env_float("MTA_CALL_TIMEOUT_SECONDS", cls.call_timeout_seconds),
            search_timeout_seconds=_env_float("MTA_SEARCH_TIMEOUT_SECONDS", cls.search_timeout_seconds),
            max_results=_env_int("MTA_MAX_RESULTS", cls.max_results),
            min_rating=_env_int("MTA_MIN_RATING", cls.min_rating),
            min_votes=_env_int("MTA_MIN_VOTES", cls.min_votes),
            fanout_concurrency=_env_int("MTA_FANOUT_CONCURRENCY", cls.fanout_concurrency),
            filter_settings=FilterSettings(
                min_score=_env_score("MTA_MIN_SCORE", 0.35),
                max_results=_env_int("MTA_FILTER_MAX_RESULTS", 20),
                top_n=_env_int("MTA_FILTER_TOP_N", 50),
                batch_size=_env_int("MTA_BATCH_SIZE", 5),
                min_description_length=_env_int("MTA_MIN_DESCRIPTION_LENGTH", 20),
            ),
        )


class TagVocabularyCache:
    """Holds the AniList vocabulary once loaded; empty until then or after a failed load."""

    def __init__(self) -> None:
        self._value = TagVocabulary.empty()

    @property
    def value(self) -> TagVocabulary:
        return self._value

    async def load(self, client: AniListClient) -> TagVocabulary:
        if self._value.is_loaded:
            return self._value
        try:
            vocabulary = await client.load_vocabulary()
        except Exception as exc:
            _LOGGER.warning("Loading the AniList tag vocabulary failed: %s", exc)
            return self._value
        self._value = vocabulary
        _LOGGER.info(
            "Loaded AniList vocabulary: %d tags, %d genres",
            len(vocabulary.tags),
            len(vocabulary.genres),
        )
        return vocabulary


_SOURCES = {
    MediaType.GALGAME: "VNDB",
    MediaType.ANIME: "AniList-ANIME",
    MediaType.MANGA: "AniList-MANGA",
}


class SearchService:
    def __init__(
        self,
        *,
        llm_config: LLMConfig | None = None,
        settings: SearchSettings | None = None,
        completion_client: CompletionClient | None = None,
        vndb_client: VndbClient | None = None,
        anilist_client: AniListClient | None = None,
        vocabulary: TagVocabularyCache | None = None,
    ) -> None:
        self.cfg = llm_config or LLMConfig.from_env()
        self.settings = settings or SearchSettings.from_env()

        owns_clients = completion_client is None or vndb_client is None or anilist_client is None
        self._http = httpx.AsyncClient(timeout=self.settings.http_timeout_seconds) if owns_clients else None
        self.llm = completion_client or make_client(self.cfg, http_client=self._http)
        self.vndb = vndb_client or VndbClient(
            base_url=self.settings.vndb_base_url,
            timeout_seconds=self.settings.http_timeout_seconds,
            http_client=self._http,
        )
        self.anilist = anilist_client or AniListClient(
            base_url=self.settings.anilist_url,
            timeout_seconds=self.settings.http_timeout_seconds,
            http_client=self._http,
        )
        self.vocabulary = vocabulary or TagVocabularyCache()
        self.semantic_filter = SemanticFilter(self._score, self.settings.filter_settings)

    @property
    def api_key_loaded(self) -> bool:
        return self.llm.has_api_key

    def new_context(self) -> RequestContext:
        return RequestContext.with_budget(
            self.settings.search_timeout_seconds,
            call_timeout=self.settings.call_timeout_seconds,
        )

    async def load_vocabulary(self) -> TagVocabulary:
        return await self.vocabulary.load(self.anilist)

    async def aclose(self) -> None:
        """Close the shared HTTP client; injected clients stay open for their owner."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _score(self, user_text: str, description: str, context: RequestContext | None) -> float:
        outcome = await score_similarity(
            self.llm,
            user_text=user_text,
            description=description,
            model=self.cfg.similarity_model,
            context=context,
        )
        return outcome.value

    async def retrieve(
        self,
        text: str,
        media_type: MediaType,
        context: RequestContext | None = None,
    ) -> RetrievalReport:
        report = RetrievalReport(source=_SOURCES[media_type])

        if media_type is MediaType.GALGAME:
            report.ai_tags = report.record(
                "tags",
                await extract_tags(
                    self.llm,
                    text=text,
                    media_type=media_type,
                    model=self.cfg.tag_model,
                    context=context,
                ),
            )
            report.tag_ids = report.record(
                "tag_ids",
                await resolve_tag_ids(
                    self.vndb,
                    report.ai_tags,
                    concurrency=self.settings.fanout_concurrency,
                    context=context,
                ),
            )
            report.items = report.record(
                "catalog",
                await search_vn_by_tags(
                    self.vndb,
                    report.tag_ids,
                    max_results=self.settings.max_results,
                    min_rating=self.settings.min_rating,
                    min_votes=self.settings.min_votes,
                    per_page=self.settings.per_page,
                    context=context,
                ),
            )
        else:
            report.ai_tags = report.record(
                "tags",
                await extract_tags(
                    self.llm,
                    text=text,
                    media_type=media_type,
                    model=self.cfg.tag_model,
                    vocabulary=self.vocabulary.value.tags,
                    context=context,
                ),
            )
            report.items = report.record(
                "catalog",
                await search_media_by_tags_or(
                    self.anilist,
                    report.ai_tags,
                    media_type=media_type,
                    per_page=self.settings.per_page,
                    max_results=self.settings.max_results,
                    concurrency=self.settings.fanout_concurrency,
                    context=context,
                ),
            )

        _LOGGER.info(
            "%s search: tags=%s ids=%s candidates=%d degraded=%s",
            report.source,
            report.ai_tags,
            report.tag_ids,
            len(report.items),
            sorted(report.degraded_stages),
        )
        return report

    async def search(
        self,
        text: str,
        media_type: MediaType,
        *,
        semantic: bool = False,
        context: RequestContext | None = None,
    ) -> dict[str, Any]:
        context = context or self.new_context()
        report = await self.retrieve(text, media_type, context)

        if semantic:
            scored = await self.semantic_filter.filter_items(report.items, text, context)
            results = [row.to_dict() for row in scored]
        else:
            results = [item.to_dict() for item in report.items]

        return {
            "input": text,
            "type": media_type.value,
            "status": {
                "source": report.source,
                "semantic": semantic,
                "degraded": report.degraded_stages,
            },
            "aiTags": report.ai_tags,
            "tagIds": report.tag_ids,
            "results": results,
            "debug": {"apiKeyLoaded": self.api_key_loaded},
        }

    async def search_stream(
        self,
        text: str,
        media_type: MediaType,
        context: RequestContext | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield progress records followed by exactly one ``end`` or ``error`` record."""
        context = context or self.new_context()
        try:
            report = await self.retrieve(text, media_type, context)
            async for record in self.semantic_filter.stream(report.items, text, context):
                if record["type"] != "end":
                    yield record
        except RequestCancelled as exc:
            _LOGGER.warning("Streaming search stopped: %s", exc)
            yield {"type": "error", "message": str(exc)}
            return
        except Exception as exc:
            _LOGGER.exception("Streaming search failed")
            yield {"type": "error", "message": str(exc) or type(exc).__name__}
            return

        yield {"type": "end"}
