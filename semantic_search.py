"""Access to the upstream content and semantic-search providers.

Both providers are external services; only their contracts live here. A
failing provider degrades to "nothing found" so that the tutor can still
reply with a fixed message.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional, Protocol, Sequence, Tuple

import requests

from engines.errors import ProviderError
from schemas import SemanticSearchResult

logger = logging.getLogger(__name__)


class ContentProvider(Protocol):
    def content_ids_for_course(self, course_id: str) -> List[str]: ...


class SearchProvider(Protocol):
    def semantic_search(self, query: str, content_ids: Sequence[str]) -> List[SemanticSearchResult]: ...


class HttpSearchProvider:
    """JSON-over-HTTP client for both provider contracts."""

    def __init__(self, content_url: str, search_url: str, timeout: Optional[float] = 30.0) -> None:
        self.content_url = content_url.rstrip("/")
        self.search_url = search_url.rstrip("/")
        self.timeout = timeout

    def _post(self, url: str, payload: dict) -> object:
        try:
            r = requests.post(url, json=payload, timeout=self.timeout)
            r.raise_for_status()
            return r.json()
        except (requests.RequestException, ValueError) as exc:
            raise ProviderError(f"Provider call to {url} failed: {exc}") from exc

    def content_ids_for_course(self, course_id: str) -> List[str]:
        data = self._post(f"{self.content_url}/content-ids", {"courseId": course_id})
        if not isinstance(data, list):
            raise ProviderError(f"Unexpected content id payload: {str(data)[:200]}")
        return [str(item) for item in data]

    def semantic_search(self, query: str, content_ids: Sequence[str]) -> List[SemanticSearchResult]:
        data = self._post(
            f"{self.search_url}/semantic-search",
            {"queryText": query, "contentWhitelist": list(content_ids)},
        )
        if not isinstance(data, list):
            raise ProviderError(f"Unexpected search payload: {str(data)[:200]}")
        try:
            return [SemanticSearchResult.model_validate(item) for item in data]
        except ValueError as exc:
            raise ProviderError(f"Malformed search result: {exc}") from exc


class UnconfiguredProvider:
    """Stand-in used when no provider URLs are set; every call fails softly."""

    def content_ids_for_course(self, course_id: str) -> List[str]:
        raise ProviderError("CONTENT_SERVICE_URL is not configured")

    def semantic_search(self, query: str, content_ids: Sequence[str]) -> List[SemanticSearchResult]:
        raise ProviderError("SEARCH_SERVICE_URL is not configured")


def providers_from_env() -> Tuple[ContentProvider, SearchProvider]:
    content_url = os.getenv("CONTENT_SERVICE_URL")
    search_url = os.getenv("SEARCH_SERVICE_URL")
    if content_url and search_url:
        provider = HttpSearchProvider(content_url, search_url)
        return provider, provider
    logger.info("Semantic search providers not configured; lecture answers will report no content")
    unconfigured = UnconfiguredProvider()
    return unconfigured, unconfigured


def semantic_search(
    query: str,
    course_id: str,
    content_provider: ContentProvider,
    search_provider: SearchProvider,
) -> List[SemanticSearchResult]:
    """Search the course's content; provider failures yield an empty list."""
    try:
        content_ids = content_provider.content_ids_for_course(course_id)
        return search_provider.semantic_search(query, content_ids)
    except ProviderError as exc:
        logger.warning("Semantic search for course %s failed: %s", course_id, exc)
        return []


def format_numbered_list(texts: Sequence[Optional[str]]) -> str:
    """``[1] first\\n\\n[2] second``; blank entries are skipped but keep their number."""
    parts = []
    for index, text in enumerate(texts, start=1):
        if text is None or not text.strip():
            continue
        parts.append(f"[{index}] {text.strip()}")
    return "\n\n".join(parts)
