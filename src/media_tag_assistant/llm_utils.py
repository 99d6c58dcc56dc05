"""Chat-completion helpers for tag extraction and similarity scoring."""

from __future__ import annotations

import json
import logging
import math
import os
import re
from dataclasses import dataclass
from typing import Any, Iterable

import httpx

from media_tag_assistant.context import RequestCancelled, RequestContext, guarded
from media_tag_assistant.models import MediaType, StageOutcome


_LOGGER = logging.getLogger(__name__)

_ARRAY_PATTERN = re.compile(r"\[[^\]]*\]", re.S)
_LEADING_NUMBER = re.compile(r"\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)")
_LINE_BREAKS = re.compile(r"\r?\n")

MAX_EXTRACTED_TAGS = 5


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class LLMConfig:
    api_key: str
    base_url: str
    chat_model: str
    tag_model: str
    similarity_model: str
    timeout_seconds: float

    @classmethod
    def from_env(cls) -> "LLMConfig":
        chat_model = os.getenv("MTA_CHAT_MODEL", "deepseek-chat").strip() or "deepseek-chat"
        return cls(
            api_key=os.getenv("DEEPSEEK_API_KEY", "").strip(),
            base_url=os.getenv("MTA_LLM_BASE_URL", "").strip() or "https://api.deepseek.com",
            chat_model=chat_model,
            tag_model=os.getenv("MTA_TAG_MODEL", chat_model),
            similarity_model=os.getenv("MTA_SIMILARITY_MODEL", chat_model),
            timeout_seconds=_env_float("MTA_LLM_TIMEOUT_SECONDS", 20.0),
        )


class CompletionError(RuntimeError):
    pass


class CompletionClient:
    """Minimal client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        timeout_seconds: float,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self._http = http_client or httpx.AsyncClient(timeout=self.timeout_seconds)

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)

    async def _post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise CompletionError("DEEPSEEK_API_KEY is not set.")

        endpoint = f"{self.base_url}{path}"
        try:
            response = await self._http.post(
                endpoint,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Accept": "application/json",
                },
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise CompletionError(f"Completion request failed at {path}: {exc}") from exc

        if response.status_code >= 400:
            raise CompletionError(
                f"Completion request failed ({response.status_code}) at {path}: {response.text[:300]}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise CompletionError(f"Completion response at {path} was not JSON.") from exc

    @staticmethod
    def _extract_chat_text(payload: dict[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        return content.strip() if isinstance(content, str) else ""

    async def chat_text(
        self,
        *,
        prompt: str,
        model: str,
        system: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        response = await self._post_json("/chat/completions", payload)
        return self._extract_chat_text(response)

    async def aclose(self) -> None:
        await self._http.aclose()


def make_client(config: LLMConfig | None = None, http_client: httpx.AsyncClient | None = None) -> CompletionClient:
    cfg = config or LLMConfig.from_env()
    return CompletionClient(
        api_key=cfg.api_key,
        base_url=cfg.base_url,
        timeout_seconds=cfg.timeout_seconds,
        http_client=http_client,
    )


def _clean_tags(values: Iterable[Any]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for value in values:
        if not isinstance(value, str):
            continue
        cleaned = " ".join(value.split())
        if not cleaned:
            continue
        key = cleaned.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(cleaned)
    return out


def _parse_tag_array(raw: str | None) -> list[str] | None:
    match = _ARRAY_PATTERN.search(raw or "")
    if not match:
        return None
    try:
        parsed = json.loads(_LINE_BREAKS.sub("", match.group(0)))
    except ValueError:
        return None
    if not isinstance(parsed, list):
        return None
    return _clean_tags(parsed)


def _parse_tag_object(raw: str | None) -> list[str] | None:
    text = (raw or "").strip()
    if not text:
        return None

    if text.startswith("```"):
        first_newline = text.find("\n")
        last_fence = text.rfind("```")
        if first_newline != -1 and last_fence > first_newline:
            text = text[first_newline:last_fence].strip()

    candidates = [text]
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            tags = parsed.get("tags")
            return _clean_tags(tags) if isinstance(tags, list) else None

    return _parse_tag_array(text)


def parse_tag_array(raw: str | None) -> list[str]:
    """Pull the first JSON array out of free model text; ``[]`` when there is none."""
    return _parse_tag_array(raw) or []


def parse_tag_object(raw: str | None) -> list[str]:
    """Read ``{"tags": [...]}`` from model text, tolerating fences and chatter."""
    return _parse_tag_object(raw) or []


def _parse_score(raw: str | None) -> float | None:
    match = _LEADING_NUMBER.match(raw or "")
    if not match:
        return None
    try:
        value = float(match.group(1))
    except ValueError:
        return None
    if math.isnan(value):
        return None
    return max(0.0, min(1.0, value))


def parse_score(raw: str | None) -> float:
    score = _parse_score(raw)
    return 0.0 if score is None else score


def constrain_to_vocabulary(tags: list[str], vocabulary: Iterable[str], *, limit: int = MAX_EXTRACTED_TAGS) -> list[str]:
    allowed_lookup = {value.casefold(): value for value in vocabulary}
    if not allowed_lookup:
        return tags[:limit]

    constrained: list[str] = []
    for tag in tags:
        official = allowed_lookup.get(tag.casefold())
        if official and official not in constrained:
            constrained.append(official)
    return constrained[:limit]


def _galgame_tag_prompt(text: str) -> str:
    return (
        "You are a visual novel (galgame) tag analyzer.\n"
        "Based on the user's description, output the most relevant VNDB tag names in English.\n"
        "Rules:\n"
        "- Output ONLY a JSON array\n"
        "- No explanation\n"
        "- Short English tag names\n"
        '- Avoid generic tags like "Drama", "Romance" unless absolutely necessary\n'
        "- Prefer specific story or character traits\n"
        "User description:\n"
        f'"{text}"'
    )


def _anilist_tag_prompt(text: str, media_type: MediaType, vocabulary: tuple[str, ...]) -> str:
    kind = "manga" if media_type is MediaType.MANGA else "anime"
    if vocabulary:
        allowed = f"- Tags must come from the official AniList tags: {', '.join(vocabulary)}\n"
    else:
        allowed = "- Tags should be common official AniList tags\n"
    return (
        f"You are an {kind} tag analyzer.\n\n"
        "From the user description, extract suitable AniList tags only.\n\n"
        "Rules:\n"
        "- Output ONLY valid JSON\n"
        "- No explanation\n"
        f"{allowed}"
        f"- Keep concise (max {MAX_EXTRACTED_TAGS} tags)\n\n"
        "JSON format:\n"
        '{\n  "tags": []\n}\n\n'
        "User description:\n"
        f'"{text}"'
    )


async def extract_tags(
    client: CompletionClient,
    *,
    text: str,
    media_type: MediaType,
    model: str,
    vocabulary: Iterable[str] = (),
    context: RequestContext | None = None,
    max_tags: int = MAX_EXTRACTED_TAGS,
) -> StageOutcome[list[str]]:
    if not (text or "").strip():
        return StageOutcome.ok([])

    try:
        if media_type is MediaType.GALGAME:
            raw = await guarded(
                context,
                client.chat_text(
                    prompt=_galgame_tag_prompt(text),
                    model=model,
                    system="You strictly follow the output rules and only return JSON array of VNDB tags.",
                    temperature=0.7,
                    max_tokens=500,
                ),
            )
            tags = _parse_tag_array(raw)
            if tags is None:
                _LOGGER.warning("Tag extraction returned no JSON array: %.200s", raw)
                return StageOutcome.degraded_to([], "model output was not a JSON array")
            return StageOutcome.ok(tags)

        allowed = tuple(vocabulary)
        raw = await guarded(
            context,
            client.chat_text(
                prompt=_anilist_tag_prompt(text, media_type, allowed),
                model=model,
                system="Only output JSON. No explanation.",
                temperature=0.4,
                max_tokens=300,
            ),
        )
    except RequestCancelled:
        raise
    except Exception as exc:
        _LOGGER.warning("Tag extraction failed for %s: %s", media_type.value, exc)
        return StageOutcome.degraded_to([], f"tag extraction failed: {str(exc) or type(exc).__name__}")

    tags = _parse_tag_object(raw)
    if tags is None:
        _LOGGER.warning("Tag extraction returned no JSON tags object: %.200s", raw)
        return StageOutcome.degraded_to([], "model output was not a JSON tags object")
    return StageOutcome.ok(constrain_to_vocabulary(tags, allowed, limit=max_tags))


def _similarity_prompt(user_text: str, description: str) -> str:
    return (
        "You are a semantic similarity evaluator.\n\n"
        "Compare the following two texts and output a similarity score between 0 and 1.\n\n"
        "Rules:\n"
        "- Output ONLY a number between 0 and 1\n"
        "- No explanation\n\n"
        "User text:\n"
        f'"{user_text}"\n\n'
        "Item description:\n"
        f'"{description}"'
    )


async def score_similarity(
    client: CompletionClient,
    *,
    user_text: str,
    description: str,
    model: str,
    context: RequestContext | None = None,
) -> StageOutcome[float]:
    if not description:
        return StageOutcome.ok(0.0)

    _LOGGER.debug("Scoring similarity (user text %d chars, description %d chars)", len(user_text), len(description))
    try:
        raw = await guarded(
            context,
            client.chat_text(
                prompt=_similarity_prompt(user_text, description),
                model=model,
                system="Only output a number between 0 and 1.",
                temperature=0,
                max_tokens=20,
            ),
        )
    except RequestCancelled:
        raise
    except Exception as exc:
        _LOGGER.warning("Similarity scoring failed: %s", exc)
        return StageOutcome.degraded_to(0.0, f"similarity scoring failed: {str(exc) or type(exc).__name__}")

    score = _parse_score(raw)
    if score is None:
        _LOGGER.warning("Similarity response was not numeric: %.80s", raw)
        return StageOutcome.degraded_to(0.0, "model output was not a number")
    return StageOutcome.ok(score)
