"""
Source Retrieval Adapters

Narrow clients wrapping one retrieval backend each. An adapter turns the
backend's response into RawHit variants and reports failure as data: a
failing source never raises into the coordinator, it returns an
AdapterResult with ok=False and no hits.

Adapters do not dedupe, diversify, or rank across sources.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from ..common.schemas import (
    DocumentHit,
    PriorResearchHit,
    RawHit,
    RetrievalRequest,
    SourceType,
    WebHit,
)

logger = logging.getLogger("evidence.retriever.adapters")


class SourceError(Exception):
    """A backend answered, but not usefully."""
    pass


class TransientSourceError(SourceError):
    """A backend failure that may succeed on retry (overload, 5xx)."""
    pass


# Failures that earn one retry
TRANSIENT_ERRORS = (TransientSourceError, httpx.TransportError, ConnectionError)


# ============================================================================
# Backend interfaces
# ============================================================================

class DocumentSearchBackend(Protocol):
    async def search(
        self,
        query: str,
        collection: str,
        limit: int,
        weights: Tuple[float, float],
        threshold: float,
        filters: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Return {"results": [...], "collection": str}."""
        ...


class WebSearchBackend(Protocol):
    async def search(
        self,
        query: str,
        max_results: int,
        language: str,
        category: Optional[str],
    ) -> Dict[str, Any]:
        """Return {"results": [...], "suggestions": [...]}."""
        ...


class PriorResearchBackend(Protocol):
    async def lookup(self, query: str, limit: int) -> List[Dict[str, Any]]:
        ...


class ContentFetcher(Protocol):
    async def fetch(self, url: str) -> Optional[str]:
        """Return the readable text of a page, or None when it has none."""
        ...


# ============================================================================
# Results
# ============================================================================

@dataclass
class AdapterResult:
    """Outcome of one adapter call"""
    source_id: str
    query: str
    ok: bool
    hits: List[RawHit] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    error: Optional[str] = None
    timed_out: bool = False
    attempts: int = 1
    elapsed_ms: float = 0.0

    @classmethod
    def failure(
        cls,
        request: RetrievalRequest,
        error: str,
        *,
        timed_out: bool = False,
        attempts: int = 1,
    ) -> "AdapterResult":
        return cls(
            source_id=request.source_id,
            query=request.query,
            ok=False,
            error=error,
            timed_out=timed_out,
            attempts=attempts,
        )

    @property
    def status(self) -> str:
        if self.timed_out:
            return "timeout"
        if not self.ok:
            return "failed"
        return "ok" if self.hits else "empty"


# ============================================================================
# Adapters
# ============================================================================

class SourceAdapter:
    """
    Base class for source adapters.

    Subclasses implement ``_fetch``; ``retrieve`` adds the retry policy and
    converts every failure into an AdapterResult.
    """

    source_type: SourceType = SourceType.DOCUMENT

    def __init__(
        self,
        source_id: str,
        *,
        timeout: float = 2.0,
        retry_delay: float = 0.25,
        max_retries: int = 1,
    ):
        """
        Args:
            source_id: Identifier callers use to select this source
            timeout: Time budget the coordinator grants each call, in seconds
            retry_delay: Fixed pause before a retry, in seconds
            max_retries: Retries on transient failure (0 disables)
        """
        if not source_id:
            raise ValueError("source_id is required")
        self.source_id = source_id
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.max_retries = max_retries

    async def retrieve(self, request: RetrievalRequest) -> AdapterResult:
        """Fetch hits for one request. Never raises for backend failures."""
        attempt = 0
        while True:
            attempt += 1
            try:
                hits, suggestions = await self._fetch(request)
            except TRANSIENT_ERRORS as e:
                if attempt <= self.max_retries:
                    logger.info(
                        "%s: transient failure for %r (%s), retrying in %.2fs",
                        self.source_id, request.query, e, self.retry_delay,
                    )
                    await asyncio.sleep(self.retry_delay)
                    continue
                logger.warning(
                    "%s: giving up on %r after %d attempt(s): %s",
                    self.source_id, request.query, attempt, e,
                )
                return AdapterResult.failure(request, str(e) or type(e).__name__, attempts=attempt)
            except SourceError as e:
                logger.warning("%s: search failed for %r: %s", self.source_id, request.query, e)
                return AdapterResult.failure(request, str(e), attempts=attempt)
            except Exception as e:
                logger.error("%s: unexpected search error: %s", self.source_id, e, exc_info=True)
                return AdapterResult.failure(request, str(e) or type(e).__name__, attempts=attempt)

            if not hits:
                logger.info("%s: no hits for %r", self.source_id, request.query)
            return AdapterResult(
                source_id=request.source_id,
                query=request.query,
                ok=True,
                hits=hits,
                suggestions=suggestions,
                attempts=attempt,
            )

    async def _fetch(self, request: RetrievalRequest) -> Tuple[List[RawHit], List[str]]:
        raise NotImplementedError


class DocumentSearchAdapter(SourceAdapter):
    """Searches one document collection through a hybrid vector/text backend."""

    source_type = SourceType.DOCUMENT

    def __init__(self, source_id: str, backend: DocumentSearchBackend, collection: str = "", **kwargs):
        super().__init__(source_id, **kwargs)
        self._backend = backend
        self.collection = collection or source_id

    async def _fetch(self, request: RetrievalRequest) -> Tuple[List[RawHit], List[str]]:
        response = await self._backend.search(
            query=request.query,
            collection=self.collection,
            limit=request.limit,
            weights=(request.vector_weight, request.text_weight),
            threshold=request.threshold,
            filters=request.filters,
        )
        if response is None:
            raise SourceError("backend returned no response")

        collection = response.get("collection") or self.collection
        return [self._to_hit(r, collection) for r in response.get("results", [])], []

    def _to_hit(self, raw: Dict[str, Any], collection: str) -> DocumentHit:
        """Convert a backend row to a DocumentHit"""
        metadata = raw.get("metadata") or {}

        document_id = str(raw.get("document_id") or metadata.get("document_id") or raw.get("id", ""))
        chunk_index = raw.get("chunk_index", metadata.get("chunk_index", 0)) or 0
        snippet = raw.get("snippet") or raw.get("text") or raw.get("content") or ""
        score = raw.get("score", raw.get("similarity"))

        return DocumentHit(
            source_id=self.source_id,
            title=raw.get("title") or metadata.get("title") or "Untitled",
            snippet=snippet,
            url=raw.get("url") or metadata.get("url"),
            score=float(score) if score is not None else None,
            content_type=raw.get("content_type") or metadata.get("content_type"),
            document_id=document_id,
            chunk_index=int(chunk_index),
            collection=collection,
        )


class WebSearchAdapter(SourceAdapter):
    """Web search through a metasearch backend such as SearXNG."""

    source_type = SourceType.WEB

    def __init__(
        self,
        source_id: str,
        backend: WebSearchBackend,
        language: str = "de-DE",
        category: Optional[str] = None,
        max_results: int = 8,
        **kwargs,
    ):
        kwargs.setdefault("timeout", 2.5)
        super().__init__(source_id, **kwargs)
        self._backend = backend
        self.language = language
        self.category = category
        self.max_results = max_results

    async def _fetch(self, request: RetrievalRequest) -> Tuple[List[RawHit], List[str]]:
        response = await self._backend.search(
            query=request.query,
            max_results=min(self.max_results, request.limit),
            language=self.language,
            category=self.category,
        )
        if response is None:
            raise SourceError("backend returned no response")

        hits = []
        for rank, raw in enumerate(response.get("results", []), 1):
            if not raw.get("url"):
                continue
            score = raw.get("score")
            hits.append(WebHit(
                source_id=self.source_id,
                title=raw.get("title") or raw["url"],
                snippet=raw.get("content") or raw.get("snippet") or "",
                url=raw["url"],
                score=float(score) if score is not None else None,
                content_type=raw.get("content_type"),
                rank=rank,
                engine=raw.get("engine"),
            ))
        return hits, list(response.get("suggestions", []))


class PriorResearchAdapter(SourceAdapter):
    """Looks up findings from earlier research runs."""

    source_type = SourceType.PRIOR_RESEARCH

    def __init__(self, source_id: str, backend: PriorResearchBackend, **kwargs):
        kwargs.setdefault("timeout", 3.0)
        super().__init__(source_id, **kwargs)
        self._backend = backend

    async def _fetch(self, request: RetrievalRequest) -> Tuple[List[RawHit], List[str]]:
        rows = await self._backend.lookup(request.query, request.limit)
        hits = []
        for raw in rows or []:
            score = raw.get("score")
            hits.append(PriorResearchHit(
                source_id=self.source_id,
                title=raw.get("title") or "Recherche",
                snippet=raw.get("snippet") or raw.get("summary") or "",
                url=raw.get("url"),
                score=float(score) if score is not None else None,
                content_type=raw.get("content_type"),
                research_id=str(raw.get("research_id") or raw.get("id", "")),
            ))
        return hits, []


class NullAdapter(SourceAdapter):
    """Stand-in for an optional backend that is configured off."""

    def __init__(self, source_id: str, source_type: SourceType = SourceType.WEB, **kwargs):
        super().__init__(source_id, **kwargs)
        self.source_type = source_type

    async def _fetch(self, request: RetrievalRequest) -> Tuple[List[RawHit], List[str]]:
        logger.debug("%s is disabled, returning no hits", self.source_id)
        return [], []
