"""Summarization clients.

Turns a transcript into a title, summary, topic tags and optional sections.
Two providers: an OpenAI-compatible chat completions API (DeepSeek by
default) and the notes backend's /api/summarize endpoint.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from note_processor.summarize.prompts import MAX_TAGS, SYSTEM_PROMPT, build_user_prompt
from note_processor.utils.errors import (
    ConfigurationError,
    SummarizationError,
    SummarizationParseError,
)
from note_processor.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_CHAT_BASE_URL = "https://api.deepseek.com"
DEFAULT_CHAT_MODEL = "deepseek-chat"
TEMPERATURE = 0.2
REQUEST_TIMEOUT_SECONDS = 120.0


@dataclass
class Section:
    heading: str
    bullets: list[str] = field(default_factory=list)


@dataclass
class SummaryResult:
    """Structured summary of one transcript."""

    title: str
    summary: str
    tags: list[str] = field(default_factory=list)
    sections: list[Section] = field(default_factory=list)


def _decode(content: str) -> dict[str, Any]:
    try:
        data = json.loads(content)
    except (TypeError, ValueError) as exc:
        raise SummarizationParseError(
            f"Model output is not JSON: {exc}", content=content
        ) from exc
    if not isinstance(data, dict):
        raise SummarizationParseError(
            f"Model output is a JSON {type(data).__name__}, expected an object",
            content=content,
        )
    return data


def _parse_sections(raw: Any) -> list[Section]:
    if not isinstance(raw, list):
        return []
    sections = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        bullets = item.get("bullets") or []
        sections.append(
            Section(
                heading=str(item.get("heading") or ""),
                bullets=[str(b) for b in bullets if isinstance(b, str) and b.strip()],
            )
        )
    return sections


def parse_summary_content(content: str, max_tags: int = MAX_TAGS) -> SummaryResult:
    """Parse a model reply into a SummaryResult.

    Output that is not a JSON object degrades to the raw content as the
    summary with an empty title, tags and sections.

    Args:
        content: The assistant message content.
        max_tags: Tags beyond this count are dropped.

    Returns:
        SummaryResult, never raising on malformed content.
    """
    try:
        data = _decode(content)
    except SummarizationParseError as exc:
        logger.warning("Summary reply not parseable, using raw text: %s", exc)
        return SummaryResult(title="", summary=content)

    tags = data.get("tags") or []
    if not isinstance(tags, list):
        tags = []
    tags = [str(t).strip() for t in tags if str(t).strip()][:max_tags]

    summary = data.get("summary")
    return SummaryResult(
        title=str(data.get("title") or ""),
        summary=str(summary) if summary is not None else content,
        tags=tags,
        sections=_parse_sections(data.get("sections")),
    )


class SummarizationEngine(ABC):
    """Abstract base class for summarization providers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier."""

    @abstractmethod
    async def summarize(
        self, text: str, meta: dict[str, Any] | None = None
    ) -> SummaryResult:
        """Summarize a transcript.

        Args:
            text: Full transcript text.
            meta: Optional note metadata (time, location, people, hashtags).

        Raises:
            SummarizationError: On transport or provider failure (retryable).
            ConfigurationError: When the provider is not configured.
        """

    async def close(self) -> None:
        """Release provider resources."""


class ChatSummarizationClient(SummarizationEngine):
    """Summarization via an OpenAI-compatible chat completions API.

    Reads configuration from environment variables:
        DEEPSEEK_API_KEY, DEEPSEEK_BASE_URL, DEEPSEEK_MODEL
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("DEEPSEEK_API_KEY", "")
        self._base_url = (
            base_url or os.environ.get("DEEPSEEK_BASE_URL", "") or DEFAULT_CHAT_BASE_URL
        ).rstrip("/")
        self._model = model or os.environ.get("DEEPSEEK_MODEL", "") or DEFAULT_CHAT_MODEL
        self._client = http_client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)

    @property
    def provider_name(self) -> str:
        return f"chat:{self._model}"

    async def close(self) -> None:
        await self._client.aclose()

    async def summarize(
        self, text: str, meta: dict[str, Any] | None = None
    ) -> SummaryResult:
        if not self._api_key:
            raise ConfigurationError("deepseek_api_key_missing")

        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(text, meta)},
            ],
            "temperature": TEMPERATURE,
        }
        data = await self._post_chat(payload)

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise SummarizationError(
                f"Chat response missing message content: {exc}"
            ) from exc
        return parse_summary_content(str(content))

    @retry_with_backoff(
        max_retries=2, base_delay=2.0, retryable_exceptions=(SummarizationError,)
    )
    async def _post_chat(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/v1/chat/completions"
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            response = await self._client.post(url, headers=headers, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SummarizationError(
                f"Chat completion failed: HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise SummarizationError(f"Chat completion failed: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise SummarizationError(
                f"Chat completion returned non-JSON body: {exc}",
                status_code=response.status_code,
            ) from exc


class BackendSummarizationClient(SummarizationEngine):
    """Summarization through the notes backend's /api/summarize endpoint.

    Uses the first entry of BACKEND_BASE_URLS unless base_url is given.
    """

    def __init__(
        self,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if base_url is None:
            candidates = os.environ.get("BACKEND_BASE_URLS", "").split(",")
            base_url = next((c.strip() for c in candidates if c.strip()), "")
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)

    @property
    def provider_name(self) -> str:
        return "backend"

    async def close(self) -> None:
        await self._client.aclose()

    async def summarize(
        self, text: str, meta: dict[str, Any] | None = None
    ) -> SummaryResult:
        if not self._base_url:
            raise ConfigurationError("backend_base_url_missing")
        data = await self._post_summarize(text)
        tags = data.get("tags") or []
        return SummaryResult(
            title=str(data.get("title") or ""),
            summary=str(data.get("summary") or ""),
            tags=[str(t) for t in tags][:MAX_TAGS] if isinstance(tags, list) else [],
        )

    @retry_with_backoff(
        max_retries=2, base_delay=2.0, retryable_exceptions=(SummarizationError,)
    )
    async def _post_summarize(self, text: str) -> dict[str, Any]:
        url = f"{self._base_url}/api/summarize"
        try:
            response = await self._client.post(url, json={"text": text})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise SummarizationError(
                f"Backend summarize failed: HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise SummarizationError(f"Backend summarize failed: {exc}") from exc
        except ValueError as exc:
            raise SummarizationError(
                f"Backend summarize returned non-JSON body: {exc}"
            ) from exc
        return data if isinstance(data, dict) else {}


SUMMARIZATION_ENGINES: dict[str, type[SummarizationEngine]] = {
    "deepseek": ChatSummarizationClient,
    "backend": BackendSummarizationClient,
}


def get_summarization_engine(provider: str, **kwargs: Any) -> SummarizationEngine:
    """Create a summarization engine by provider name.

    Raises:
        ConfigurationError: If the provider name is not registered.
    """
    engine_cls = SUMMARIZATION_ENGINES.get(provider)
    if not engine_cls:
        available = ", ".join(sorted(SUMMARIZATION_ENGINES.keys()))
        raise ConfigurationError(
            f"Unknown summarization provider: '{provider}'. Available: {available}"
        )
    return engine_cls(**kwargs)
