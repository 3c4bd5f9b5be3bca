"""
SearXNG Web Search Client

Async HTTP client for a SearXNG metasearch instance (JSON API).
Implements the web search backend interface consumed by WebSearchAdapter.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..common.config import WebSearchConfig
from .adapters import SourceError, TransientSourceError

logger = logging.getLogger("evidence.retriever.searxng")


class SearxngClient:
    """
    Async client for the SearXNG ``/search`` endpoint.

    The underlying ``httpx.AsyncClient`` is created lazily on first use
    unless one is injected.

    Usage:
        client = SearxngClient(base_url="http://searxng:8080")
        response = await client.search("Klimaschutz", max_results=5)
        await client.close()
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 2.5,
        categories: str = "general",
        safesearch: int = 0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: SearXNG instance URL, with or without trailing slash
            timeout: Request timeout in seconds
            categories: Default SearXNG category list
            safesearch: 0 (off), 1 (moderate) or 2 (strict)
            http_client: Preconfigured client, mainly for tests
        """
        if not base_url:
            raise ValueError("SearXNG base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.categories = categories
        self.safesearch = safesearch
        self._client = http_client
        self._owns_client = http_client is None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def search(
        self,
        query: str,
        max_results: int = 8,
        language: str = "de-DE",
        category: Optional[str] = None,
        page: int = 1,
    ) -> Dict[str, Any]:
        """
        Run one web search.

        Returns:
            {"results": [{title, url, content, score, engine, published_date}],
             "suggestions": [str]}

        Raises:
            TransientSourceError: 5xx / 429 responses (worth one retry)
            SourceError: other HTTP errors or an unreadable body
            httpx.TransportError: connection-level failures
        """
        params = {
            "q": query,
            "format": "json",
            "categories": category or self.categories,
            "language": language,
            "safesearch": self.safesearch,
            "pageno": page,
        }

        client = self._ensure_client()
        response = await client.get(f"{self.base_url}/search", params=params)

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSourceError(f"SearXNG returned HTTP {response.status_code}")
        if response.status_code != 200:
            raise SourceError(f"SearXNG returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise SourceError(f"SearXNG returned invalid JSON: {e}") from e

        results = [self._to_result(r) for r in data.get("results", []) if r.get("url")]
        suggestions = [s for s in data.get("suggestions", []) if isinstance(s, str)]

        logger.debug("SearXNG %r: %d results, %d suggestions", query, len(results), len(suggestions))
        return {
            "results": results[:max_results],
            "suggestions": suggestions,
        }

    @staticmethod
    def _to_result(raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "title": raw.get("title") or raw.get("url", ""),
            "url": raw.get("url"),
            "content": raw.get("content") or "",
            "score": raw.get("score"),
            "engine": raw.get("engine"),
            "published_date": raw.get("publishedDate"),
        }


def create_searxng_client(config: WebSearchConfig) -> Optional[SearxngClient]:
    """
    Build a client from configuration.

    Returns None when web search is disabled, so callers can configure a
    NullAdapter instead.
    """
    if not config.enabled or not config.base_url:
        logger.info("Web search disabled")
        return None
    return SearxngClient(
        base_url=config.base_url,
        timeout=config.timeout,
        categories=config.categories,
        safesearch=config.safesearch,
    )

