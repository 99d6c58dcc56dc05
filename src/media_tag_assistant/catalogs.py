"""VNDB and AniList clients, tag resolution, retrieval and item normalization."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import httpx

from media_tag_assistant.context import RequestCancelled, RequestContext, gather_or_cancel, guarded
from media_tag_assistant.models import CatalogItem, MediaType, StageOutcome, TagVocabulary


_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_BR_TAG = re.compile(r"<br\s*/?>", re.I)
_HTML_TAG = re.compile(r"</?[^>]+>")
_BBCODE_TAG = re.compile(r"\[/?(?:url|spoiler|quote|raw|code|b|i|u|s)(?:=[^\]]*)?\]", re.I)

VNDB_FIELDS = "id,title,alttitle,description,rating,votecount,image.url"

ANILIST_MEDIA_QUERY = """
query ($type: MediaType, $tags: [String], $perPage: Int) {
  Page(page: 1, perPage: $perPage) {
    media(type: $type, tag_in: $tags, sort: POPULARITY_DESC) {
      id
      title { romaji english native }
      description
      averageScore
      siteUrl
      coverImage { large medium }
    }
  }
}
"""

ANILIST_GENRE_QUERY = "query { GenreCollection }"
ANILIST_TAG_QUERY = "query { MediaTagCollection { name } }"


class UpstreamError(RuntimeError):
    pass


class _JsonApiClient:
    def __init__(self, *, base_url: str, timeout_seconds: float, http_client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self._http = http_client or httpx.AsyncClient(timeout=self.timeout_seconds)

    async def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        endpoint = f"{self.base_url}{path}"
        try:
            response = await self._http.post(
                endpoint,
                json=payload,
                headers={"Accept": "application/json"},
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Request to {endpoint} failed: {exc}") from exc

        if response.status_code >= 400:
            raise UpstreamError(f"Request to {endpoint} failed ({response.status_code}): {response.text[:300]}")
        try:
            parsed = response.json()
        except ValueError as exc:
            raise UpstreamError(f"Response from {endpoint} was not JSON.") from exc
        if not isinstance(parsed, dict):
            raise UpstreamError(f"Response from {endpoint} was not a JSON object.")
        return parsed

    async def aclose(self) -> None:
        await self._http.aclose()


class VndbClient(_JsonApiClient):
    """Client for the VNDB Kana API (``/tag`` and ``/vn``)."""

    def __init__(
        self,
        *,
        base_url: str = "https://api.vndb.org/kana",
        timeout_seconds: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds, http_client=http_client)

    async def search_tags(self, name: str, *, results: int = 1) -> list[dict[str, Any]]:
        payload = {
            "filters": ["and", ["search", "=", name]],
            "fields": "id,name",
            "results": results,
            "sort": "searchrank",
        }
        response = await self._post_json("/tag", payload)
        rows = response.get("results")
        return [row for row in rows if isinstance(row, dict)] if isinstance(rows, list) else []

    async def query_vn(
        self,
        *,
        filters: list[Any],
        fields: str = VNDB_FIELDS,
        sort: str = "rating",
        reverse: bool = True,
        results: int = 50,
        page: int = 1,
    ) -> list[dict[str, Any]]:
        payload = {
            "filters": filters,
            "fields": fields,
            "sort": sort,
            "reverse": reverse,
            "results": results,
            "page": page,
        }
        response = await self._post_json("/vn", payload)
        rows = response.get("results")
        return [row for row in rows if isinstance(row, dict)] if isinstance(rows, list) else []


class AniListClient(_JsonApiClient):
    """Client for the AniList GraphQL endpoint."""

    def __init__(
        self,
        *,
        base_url: str = "https://graphql.anilist.co",
        timeout_seconds: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds, http_client=http_client)

    async def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables
        response = await self._post_json("", payload)
        errors = response.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) and errors else errors
            message = first.get("message") if isinstance(first, dict) else first
            raise UpstreamError(f"AniList query failed: {message}")
        data = response.get("data")
        return data if isinstance(data, dict) else {}

    async def media_by_tags(self, tags: list[str], *, media_type: MediaType, per_page: int = 50) -> list[dict[str, Any]]:
        data = await self.graphql(
            ANILIST_MEDIA_QUERY,
            {"type": media_type.value, "tags": tags, "perPage": per_page},
        )
        media = (data.get("Page") or {}).get("media")
        return [row for row in media if isinstance(row, dict)] if isinstance(media, list) else []

    async def load_vocabulary(self) -> TagVocabulary:
        genre_data = await self.graphql(ANILIST_GENRE_QUERY)
        tag_data = await self.graphql(ANILIST_TAG_QUERY)
        genres = [value for value in genre_data.get("GenreCollection") or [] if isinstance(value, str)]
        tags = [
            row["name"]
            for row in tag_data.get("MediaTagCollection") or []
            if isinstance(row, dict) and isinstance(row.get("name"), str)
        ]
        return TagVocabulary(tags=tuple(tags), genres=tuple(genres))


def strip_markup(text: str | None) -> str:
    if not text:
        return ""
    cleaned = _BR_TAG.sub("\n", text)
    cleaned = _HTML_TAG.sub("", cleaned)
    cleaned = _BBCODE_TAG.sub("", cleaned)
    return cleaned.strip()


def rescale_rating(value: Any) -> float | None:
    """Map a 0-100 score onto 0-10 with one decimal; missing or zero means unrated."""
    if value is None or isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if score == 0:
        return None
    return round(max(0.0, min(10.0, score / 10)), 1)


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_vn(row: dict[str, Any]) -> CatalogItem:
    vn_id = str(row.get("id"))
    image = row.get("image")
    return CatalogItem(
        id=vn_id,
        title=str(row.get("title") or "Untitled"),
        alt_title=str(row.get("alttitle") or ""),
        description=strip_markup(row.get("description")),
        rating=rescale_rating(row.get("rating")),
        vote_count=_optional_int(row.get("votecount")),
        image_url=image.get("url") if isinstance(image, dict) else None,
        source_url=f"https://vndb.org/{vn_id}",
    )


def normalize_media(row: dict[str, Any]) -> CatalogItem:
    title = row.get("title") if isinstance(row.get("title"), dict) else {}
    cover = row.get("coverImage") if isinstance(row.get("coverImage"), dict) else {}
    return CatalogItem(
        id=row.get("id"),
        title=title.get("romaji") or title.get("english") or title.get("native") or "Untitled",
        alt_title=title.get("english") or "",
        description=strip_markup(row.get("description")),
        rating=rescale_rating(row.get("averageScore")),
        vote_count=None,
        image_url=cover.get("large") or cover.get("medium") or None,
        source_url=str(row.get("siteUrl") or ""),
    )


async def _fan_out(
    values: list[str],
    call: Callable[[str], Awaitable[T]],
    *,
    concurrency: int,
    stage: str,
) -> tuple[list[tuple[str, T]], list[str]]:
    """Run ``call`` once per value with at most ``concurrency`` in flight.

    Returns successful ``(value, result)`` pairs in input order plus the
    failure messages. ``RequestCancelled`` aborts the whole fan-out.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def bounded(value: str) -> tuple[str, T | None, str | None]:
        async with semaphore:
            try:
                return value, await call(value), None
            except RequestCancelled:
                raise
            except Exception as exc:
                _LOGGER.warning("%s failed for %r: %s", stage, value, exc)
                return value, None, f"{value}: {str(exc) or type(exc).__name__}"

    done = await gather_or_cancel(*(bounded(value) for value in values))
    successes = [(value, result) for value, result, error in done if error is None]
    failures = [error for _value, _result, error in done if error is not None]
    return successes, failures


async def resolve_tag_ids(
    client: VndbClient,
    tag_names: Iterable[str],
    *,
    concurrency: int = 5,
    context: RequestContext | None = None,
) -> StageOutcome[list[str]]:
    names = [name for name in tag_names if name]
    if not names:
        return StageOutcome.ok([])

    async def lookup(name: str) -> list[dict[str, Any]]:
        return await guarded(context, client.search_tags(name, results=1))

    successes, failures = await _fan_out(names, lookup, concurrency=concurrency, stage="VNDB tag lookup")
    ids = [str(rows[0]["id"]) for _name, rows in successes if rows and rows[0].get("id")]
    _LOGGER.info("Resolved %d of %d tag names to VNDB ids", len(ids), len(names))
    if failures:
        return StageOutcome.degraded_to(ids, "; ".join(failures))
    return StageOutcome.ok(ids)


def build_vn_filters(tag_ids: list[str], *, min_rating: int, min_votes: int) -> list[Any]:
    distinct = list(dict.fromkeys(tag_ids))
    if len(distinct) == 1:
        tag_filter: list[Any] = ["tag", "=", distinct[0]]
    else:
        tag_filter = ["or", *(["tag", "=", tag_id] for tag_id in distinct)]
    return [
        "and",
        tag_filter,
        ["rating", ">=", min_rating],
        ["votecount", ">=", min_votes],
    ]


async def search_vn_by_tags(
    client: VndbClient,
    tag_ids: list[str],
    *,
    max_results: int = 200,
    sort_by: str = "rating",
    min_rating: int = 60,
    min_votes: int = 5,
    per_page: int = 50,
    context: RequestContext | None = None,
) -> StageOutcome[list[CatalogItem]]:
    if not tag_ids:
        return StageOutcome.ok([])

    filters = build_vn_filters(tag_ids, min_rating=min_rating, min_votes=min_votes)
    rows: list[dict[str, Any]] = []
    page = 1
    failure: str | None = None

    while len(rows) < max_results:
        try:
            batch = await guarded(
                context,
                client.query_vn(filters=filters, sort=sort_by, reverse=True, results=per_page, page=page),
            )
        except RequestCancelled:
            raise
        except Exception as exc:
            _LOGGER.warning("VNDB VN query failed on page %d: %s", page, exc)
            failure = f"page {page}: {str(exc) or type(exc).__name__}"
            break

        if not batch:
            break
        rows.extend(batch)
        if len(batch) < per_page:
            break
        page += 1

    items = [normalize_vn(row) for row in rows[:max_results]]
    if failure:
        return StageOutcome.degraded_to(items, failure)
    return StageOutcome.ok(items)


async def search_media_by_tags_or(
    client: AniListClient,
    tags: list[str],
    *,
    media_type: MediaType,
    per_page: int = 50,
    max_results: int = 200,
    concurrency: int = 5,
    context: RequestContext | None = None,
) -> StageOutcome[list[CatalogItem]]:
    if not tags:
        return StageOutcome.ok([])

    async def query_once(tag: str) -> list[dict[str, Any]]:
        return await guarded(context, client.media_by_tags([tag], media_type=media_type, per_page=per_page))

    successes, failures = await _fan_out(list(tags), query_once, concurrency=concurrency, stage="AniList query")

    by_id: dict[Any, dict[str, Any]] = {}
    for _tag, media in successes:
        for row in media:
            media_id = row.get("id")
            if media_id is not None and media_id not in by_id:
                by_id[media_id] = row

    items = [normalize_media(row) for row in list(by_id.values())[:max_results]]
    if failures:
        return StageOutcome.degraded_to(items, "; ".join(failures))
    return StageOutcome.ok(items)
