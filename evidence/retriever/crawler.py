"""
Web Page Fetcher

Downloads a web result page and reduces it to readable text, so a
citation can quote the page rather than the search engine's snippet.
Implements the content fetcher interface consumed by the coordinator.
"""

import logging
import re
from typing import Optional

import httpx
from bs4 import BeautifulSoup

from ..common.config import WebSearchConfig
from .adapters import SourceError, TransientSourceError

logger = logging.getLogger("evidence.retriever.crawler")

# Page chrome that never carries the article text
NOISE_TAGS = ["script", "style", "noscript", "nav", "header", "footer", "aside", "form"]

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
    "User-Agent": "Mozilla/5.0 (compatible; evidence-fetcher/0.1)",
}

_WHITESPACE_RE = re.compile(r"\s+")


def extract_text(html: str, max_chars: int = 2000) -> str:
    """Visible text of an HTML page, whitespace collapsed, truncated to max_chars."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(NOISE_TAGS):
        tag.decompose()
    text = _WHITESPACE_RE.sub(" ", soup.get_text(" ", strip=True)).strip()
    return text[:max_chars]


class PageFetcher:
    """
    Async HTML page fetcher.

    Like SearxngClient, the ``httpx.AsyncClient`` is created lazily unless
    one is injected. Callers bound each fetch with their own time budget.
    """

    def __init__(
        self,
        timeout: float = 3.0,
        max_chars: int = 2000,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self.max_chars = max_chars
        self._client = http_client
        self._owns_client = http_client is None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=DEFAULT_HEADERS,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def fetch(self, url: str) -> Optional[str]:
        """
        Fetch one page and return its readable text.

        Returns:
            The extracted text, or None for non-HTML or empty pages

        Raises:
            TransientSourceError: 5xx / 429 responses
            SourceError: other non-200 responses
            httpx.TransportError: connection-level failures
        """
        response = await self._ensure_client().get(url)

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSourceError(f"{url} returned HTTP {response.status_code}")
        if response.status_code != 200:
            raise SourceError(f"{url} returned HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "").lower()
        if "html" not in content_type:
            logger.debug("Skipping %s: content type %r", url, content_type)
            return None

        text = extract_text(response.text, self.max_chars)
        logger.debug("Fetched %s: %d chars", url, len(text))
        return text or None


def create_page_fetcher(config: WebSearchConfig) -> Optional[PageFetcher]:
    """Build a fetcher, or None when web search or page enrichment is off."""
    if not config.enabled or config.crawl_top <= 0:
        return None
    return PageFetcher(timeout=config.crawl_timeout, max_chars=config.crawl_max_chars)
