"""
Retrieval Coordinator

Fans subqueries out to source adapters concurrently.
Every (subquery, source) pair becomes one RetrievalRequest; all requests
are issued at once, each time-boxed by its adapter's budget, and joined.
A timed-out or failing source contributes zero hits, never an exception.
With a content fetcher configured, the top-ranked web hits then have their
snippets replaced by the fetched page text, each fetch under its own budget.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..common.config import ConfigurationError, EvidenceConfig
from ..common.schemas import (
    Complexity,
    RawHit,
    RetrievalRequest,
    SearchStepResult,
    SourceType,
)
from .adapters import (
    AdapterResult,
    ContentFetcher,
    DocumentSearchAdapter,
    DocumentSearchBackend,
    NullAdapter,
    PriorResearchAdapter,
    PriorResearchBackend,
    SourceAdapter,
    WebSearchAdapter,
    WebSearchBackend,
)
from .tuning import select_weights

logger = logging.getLogger("evidence.retriever.coordinator")

WEB_SOURCE_ID = "web"
PRIOR_RESEARCH_SOURCE_ID = "prior_research"

DEFAULT_ENRICH_TOP = 3
DEFAULT_ENRICH_TIMEOUT = 3.0
DEFAULT_ENRICH_MAX_CHARS = 2000


@dataclass
class RetrievalRound:
    """Everything one coordinated retrieval produced"""
    hits: List[RawHit]
    outcomes: List[AdapterResult]
    subqueries: List[str]
    source_ids: List[str]
    elapsed_ms: float = 0.0
    hits_per_source: Dict[str, int] = field(default_factory=dict)
    enriched: int = 0

    @property
    def failures(self) -> List[AdapterResult]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def all_failed(self) -> bool:
        return bool(self.outcomes) and all(not o.ok for o in self.outcomes)

    @property
    def suggestions(self) -> List[str]:
        """Backend query suggestions, deduplicated, first-seen order"""
        seen = set()
        merged = []
        for outcome in self.outcomes:
            for s in outcome.suggestions:
                key = s.strip().lower()
                if key and key not in seen:
                    seen.add(key)
                    merged.append(s.strip())
        return merged

    @property
    def search_steps(self) -> List[SearchStepResult]:
        return [
            SearchStepResult(
                source_id=o.source_id,
                query=o.query,
                status=o.status,
                hit_count=len(o.hits),
                elapsed_ms=round(o.elapsed_ms, 1),
                error=o.error,
            )
            for o in self.outcomes
        ]


class RetrievalCoordinator:
    """
    Issues the cross-product of subqueries and sources concurrently.

    Adapters are injected; the coordinator never creates backends itself.
    Returned hits carry no ordering promise.
    """

    def __init__(
        self,
        adapters: Mapping[str, SourceAdapter],
        recall_threshold: float = 0.0,
        content_fetcher: Optional[ContentFetcher] = None,
        enrich_top: int = DEFAULT_ENRICH_TOP,
        enrich_timeout: float = DEFAULT_ENRICH_TIMEOUT,
        enrich_max_chars: int = DEFAULT_ENRICH_MAX_CHARS,
    ):
        """
        Args:
            adapters: source id -> adapter
            recall_threshold: Backend-side score floor; kept low so the
                dynamic threshold sees the full distribution
            content_fetcher: Fetches page text for the top web hits; None
                keeps search engine snippets
            enrich_top: How many web hits, by rank, to fetch
            enrich_timeout: Budget per page fetch in seconds
            enrich_max_chars: Cap on the fetched text kept as snippet
        """
        if not adapters:
            raise ConfigurationError("At least one source adapter is required")
        self._adapters = dict(adapters)
        self._recall_threshold = recall_threshold
        self._fetcher = content_fetcher
        self._enrich_top = enrich_top
        self._enrich_timeout = enrich_timeout
        self._enrich_max_chars = enrich_max_chars

    @property
    def source_ids(self) -> List[str]:
        return list(self._adapters)

    def adapter(self, source_id: str) -> SourceAdapter:
        return self._adapters[source_id]

    def sources_of_type(self, source_type: SourceType) -> List[str]:
        """Enabled sources of one type; NullAdapters are left out."""
        return [
            sid for sid, a in self._adapters.items()
            if a.source_type == source_type and not isinstance(a, NullAdapter)
        ]

    def validate_sources(self, source_ids: Optional[Iterable[str]]) -> List[str]:
        """Resolve a source selection or raise ConfigurationError.

        None selects every configured source.
        """
        if source_ids is None:
            return self.source_ids
        selected = list(dict.fromkeys(source_ids))
        if not selected:
            raise ConfigurationError("Source selection is empty")
        unknown = [s for s in selected if s not in self._adapters]
        if unknown:
            raise ConfigurationError(
                f"Unknown source id(s): {', '.join(unknown)}; "
                f"configured: {', '.join(self._adapters)}"
            )
        return selected

    def build_requests(
        self,
        subqueries: List[str],
        source_ids: List[str],
        complexity: Complexity = Complexity.MODERATE,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[RetrievalRequest]:
        requests = []
        for subquery in subqueries:
            vector_weight, text_weight = select_weights(subquery)
            for source_id in source_ids:
                requests.append(RetrievalRequest(
                    query=subquery,
                    source_id=source_id,
                    vector_weight=vector_weight,
                    text_weight=text_weight,
                    threshold=self._recall_threshold,
                    limit=complexity.recall_limit,
                    filters=filters,
                ))
        return requests

    async def retrieve(
        self,
        subqueries: List[str],
        source_ids: Optional[Iterable[str]] = None,
        complexity: Complexity = Complexity.MODERATE,
        filters: Optional[Dict[str, Any]] = None,
    ) -> RetrievalRound:
        """
        Run one retrieval round.

        Args:
            subqueries: Query strings; blanks are dropped, duplicates kept once
            source_ids: Sources to query (None = all configured)
            complexity: Sets the per-request recall limit
            filters: Structured filter passed through to every request

        Returns:
            RetrievalRound with flattened hits and per-request outcomes

        Raises:
            ConfigurationError: empty subqueries or unknown/empty sources
        """
        source_ids = self.validate_sources(source_ids)
        queries = list(dict.fromkeys(q.strip() for q in subqueries if q and q.strip()))
        if not queries:
            raise ConfigurationError("No non-empty query to retrieve for")

        requests = self.build_requests(queries, source_ids, complexity, filters)
        logger.info(
            "Dispatching %d request(s): %d subquery(ies) x %d source(s)",
            len(requests), len(queries), len(source_ids),
        )

        start = time.perf_counter()
        outcomes = await asyncio.gather(*(self._run(r) for r in requests))

        hits: List[RawHit] = []
        per_source: Dict[str, int] = {sid: 0 for sid in source_ids}
        for outcome in outcomes:
            hits.extend(outcome.hits)
            per_source[outcome.source_id] += len(outcome.hits)

        enriched = 0
        if self._fetcher is not None and self._enrich_top > 0:
            hits, enriched = await self._enrich(hits)
        elapsed_ms = (time.perf_counter() - start) * 1000

        failed = sum(1 for o in outcomes if not o.ok)
        logger.info(
            "Retrieval round done in %.0fms: %d hits, %d/%d request(s) failed",
            elapsed_ms, len(hits), failed, len(outcomes),
        )
        return RetrievalRound(
            hits=hits,
            outcomes=list(outcomes),
            subqueries=queries,
            source_ids=source_ids,
            elapsed_ms=elapsed_ms,
            hits_per_source=per_source,
            enriched=enriched,
        )

    async def _run(self, request: RetrievalRequest) -> AdapterResult:
        """Run one adapter call under its time budget."""
        adapter = self._adapters[request.source_id]
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(adapter.retrieve(request), timeout=adapter.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "%s timed out after %.1fs for %r", request.source_id, adapter.timeout, request.query,
            )
            result = AdapterResult.failure(
                request, f"timed out after {adapter.timeout}s", timed_out=True,
            )
        result.elapsed_ms = (time.perf_counter() - start) * 1000
        return result

    async def _enrich(self, hits: List[RawHit]) -> Tuple[List[RawHit], int]:
        """Replace the snippets of the top-ranked web hits with fetched page text.

        A page that times out, fails or has no text leaves its hit as it was.
        """
        ranked = sorted((h for h in hits if h.source_type == "web" and h.url), key=lambda h: h.rank)
        urls = list(dict.fromkeys(h.url for h in ranked))[:self._enrich_top]
        if not urls:
            return hits, 0

        pages = await asyncio.gather(*(self._fetch_page(url) for url in urls))
        texts = {url: text for url, text in zip(urls, pages) if text}
        logger.info("Enriched %d of %d web page(s)", len(texts), len(urls))
        if not texts:
            return hits, 0

        enriched = [
            h.model_copy(update={"snippet": texts[h.url], "crawled": True})
            if h.source_type == "web" and h.url in texts else h
            for h in hits
        ]
        return enriched, len(texts)

    async def _fetch_page(self, url: str) -> Optional[str]:
        try:
            text = await asyncio.wait_for(self._fetcher.fetch(url), timeout=self._enrich_timeout)
        except asyncio.TimeoutError:
            logger.warning("Page fetch timed out after %.1fs: %s", self._enrich_timeout, url)
            return None
        except Exception as e:
            logger.warning("Page fetch failed for %s: %s", url, e)
            return None
        if not text or not text.strip():
            return None
        return text.strip()[:self._enrich_max_chars]


def build_coordinator(
    config: EvidenceConfig,
    document_backend: Optional[DocumentSearchBackend] = None,
    web_backend: Optional[WebSearchBackend] = None,
    prior_research_backend: Optional[PriorResearchBackend] = None,
    content_fetcher: Optional[ContentFetcher] = None,
) -> RetrievalCoordinator:
    """
    Wire adapters from configuration and explicitly supplied backends.

    A missing optional backend becomes a NullAdapter under the same
    source id, so source selections stay valid whether or not the
    backend is configured. The content fetcher is only used while web
    search is enabled.
    """
    retry = {
        "retry_delay": config.retriever.retry_delay,
        "max_retries": config.retriever.max_retries,
    }
    adapters: Dict[str, SourceAdapter] = {}

    if document_backend is not None:
        for collection in config.search.collections:
            adapters[collection] = DocumentSearchAdapter(
                collection, document_backend, collection=collection,
                timeout=config.search.timeout, **retry,
            )

    if web_backend is not None and config.web.enabled:
        adapters[WEB_SOURCE_ID] = WebSearchAdapter(
            WEB_SOURCE_ID, web_backend,
            language=config.web.language,
            max_results=config.web.max_results,
            timeout=config.web.timeout, **retry,
        )
    else:
        adapters[WEB_SOURCE_ID] = NullAdapter(WEB_SOURCE_ID, SourceType.WEB)

    if prior_research_backend is not None:
        adapters[PRIOR_RESEARCH_SOURCE_ID] = PriorResearchAdapter(
            PRIOR_RESEARCH_SOURCE_ID, prior_research_backend,
            timeout=config.retriever.prior_research_timeout, **retry,
        )
    else:
        adapters[PRIOR_RESEARCH_SOURCE_ID] = NullAdapter(
            PRIOR_RESEARCH_SOURCE_ID, SourceType.PRIOR_RESEARCH,
        )

    if not isinstance(adapters[WEB_SOURCE_ID], WebSearchAdapter):
        content_fetcher = None
    return RetrievalCoordinator(
        adapters,
        content_fetcher=content_fetcher,
        enrich_top=config.web.crawl_top,
        enrich_timeout=config.web.crawl_timeout,
        enrich_max_chars=config.web.crawl_max_chars,
    )
