"""
Deduplicator / Diversifier

Turns the unordered hits of a retrieval round into a ranked, deduplicated
evidence set:
1. identity dedup, first-seen wins
2. dynamic quality threshold and result cap
3. relevance descending, title ascending
4. optional Maximal Marginal Relevance pass for topical spread
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit, urlunsplit

import numpy as np

from ..common.embedding_service import EmbeddingService
from ..common.schemas import RawHit
from .tuning import ThresholdDecision, compute_dynamic_threshold

logger = logging.getLogger("evidence.retriever.dedup")

DEFAULT_MMR_LAMBDA = 0.7
MIN_WEB_RELEVANCE = 0.1

_TOKEN_RE = re.compile(r"\w{3,}")


def normalize_url(url: str) -> str:
    """Canonical form used for identity: lowercase host, no www, fragment or trailing slash."""
    parts = urlsplit(url.strip())
    host = parts.netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    path = parts.path.rstrip("/")
    scheme = parts.scheme.lower()
    if scheme in ("http", "https"):
        scheme = "https"
    return urlunsplit((scheme, host, path, parts.query, ""))


def identity_key(hit: RawHit) -> Tuple:
    """Normalized URL, else (document id, chunk index), else research id, else source + title.

    A document hit and a web hit pointing at the same page share one identity.
    """
    if hit.url:
        return ("url", normalize_url(hit.url))
    document_id = getattr(hit, "document_id", "")
    if document_id:
        return ("chunk", document_id, hit.chunk_index)
    research_id = getattr(hit, "research_id", "")
    if research_id:
        return ("research", research_id)
    return ("title", hit.source_id, hit.title.casefold())


def relevance_of(hit: RawHit) -> float:
    """Normalize a raw score into [0, 1] by source convention.

    Web backends rarely return calibrated scores, so web hits fall back to
    a rank-based value (1.0, 0.9, 0.8, ...).
    """
    if hit.source_type == "web":
        if hit.score is not None and 0.0 <= hit.score <= 1.0:
            return float(hit.score)
        return max(MIN_WEB_RELEVANCE, round(1.0 - 0.1 * (hit.rank - 1), 4))
    if hit.score is None:
        return 0.0
    return max(0.0, min(1.0, float(hit.score)))


@dataclass(frozen=True)
class DedupedResult:
    """A hit that survived dedup, with its normalized relevance"""
    hit: RawHit
    relevance: float

    @property
    def title(self) -> str:
        return self.hit.title

    @property
    def snippet(self) -> str:
        return self.hit.snippet

    @property
    def url(self) -> Optional[str]:
        return self.hit.url

    @property
    def source_type(self) -> str:
        return self.hit.source_type

    @property
    def domain(self) -> str:
        return self.hit.domain

    @property
    def kind(self) -> str:
        """Synthesis classification: person, document, prior_research or web"""
        return "person" if self.hit.is_person else self.hit.source_type

    @property
    def identity(self) -> Tuple:
        return identity_key(self.hit)

    @property
    def document_key(self) -> str:
        """Groups chunks of one document for distinct-document counts"""
        document_id = getattr(self.hit, "document_id", "")
        if document_id:
            return f"doc:{document_id}"
        return "|".join(str(part) for part in self.identity)


def sort_key(result: DedupedResult):
    """Relevance descending, title ascending, identity as final tie-break."""
    return (-result.relevance, result.title.casefold(), repr(result.identity))


def dedupe(hits: Iterable[RawHit]) -> List[DedupedResult]:
    """Keep the first hit per identity key, in input order."""
    seen = set()
    results = []
    for hit in hits:
        key = identity_key(hit)
        if key in seen:
            continue
        seen.add(key)
        results.append(DedupedResult(hit=hit, relevance=relevance_of(hit)))
    return results


def jaccard_matrix(texts: Sequence[str]) -> np.ndarray:
    """Pairwise token-set Jaccard similarity"""
    token_sets = [set(_TOKEN_RE.findall(t.lower())) for t in texts]
    n = len(token_sets)
    matrix = np.eye(n)
    for i in range(n):
        for j in range(i + 1, n):
            union = token_sets[i] | token_sets[j]
            sim = len(token_sets[i] & token_sets[j]) / len(union) if union else 0.0
            matrix[i, j] = matrix[j, i] = sim
    return matrix


def mmr_rerank(
    results: Sequence[DedupedResult],
    lambda_: float = DEFAULT_MMR_LAMBDA,
    limit: Optional[int] = None,
    similarity: Optional[np.ndarray] = None,
    max_per_domain: Optional[int] = None,
) -> List[DedupedResult]:
    """
    Maximal Marginal Relevance selection.

    Iteratively picks the candidate maximizing
    ``lambda * relevance - (1 - lambda) * max similarity to the picks so far``.
    Ties go to the earlier candidate, so a relevance-sorted input gives a
    deterministic output.

    Args:
        results: Candidates, expected in relevance order
        lambda_: 1.0 is pure relevance, 0.0 pure novelty
        limit: Stop after this many picks
        similarity: Precomputed pairwise similarity (defaults to Jaccard of
            title + snippet)
        max_per_domain: Skip candidates whose domain already has this many picks
    """
    if not 0.0 <= lambda_ <= 1.0:
        raise ValueError(f"lambda must be within [0, 1], got {lambda_}")

    n = len(results)
    if n == 0:
        return []
    limit = n if limit is None else min(limit, n)
    if similarity is None:
        similarity = jaccard_matrix([f"{r.title} {r.snippet}" for r in results])

    selected: List[int] = []
    remaining = list(range(n))
    domain_counts: dict = {}

    while remaining and len(selected) < limit:
        best_idx = None
        best_score = float("-inf")
        for idx in remaining:
            domain = results[idx].domain
            if max_per_domain and domain and domain_counts.get(domain, 0) >= max_per_domain:
                continue
            redundancy = max((similarity[idx, s] for s in selected), default=0.0)
            score = lambda_ * results[idx].relevance - (1 - lambda_) * redundancy
            if score > best_score:
                best_score = score
                best_idx = idx
        if best_idx is None:
            break
        selected.append(best_idx)
        remaining.remove(best_idx)
        domain = results[best_idx].domain
        domain_counts[domain] = domain_counts.get(domain, 0) + 1

    return [results[i] for i in selected]


@dataclass
class DedupOutcome:
    """Ranked evidence plus what was dropped on the way"""
    results: List[DedupedResult]
    decision: Optional[ThresholdDecision] = None
    diversified: bool = False
    duplicates_dropped: int = 0
    below_threshold: int = 0

    @property
    def no_evidence(self) -> bool:
        return not self.results


class Deduplicator:
    """
    Merges multi-source hits into a ranked evidence set.

    Diversification uses embedding cosine similarity when an available
    EmbeddingService is injected, token-set Jaccard otherwise.
    """

    def __init__(
        self,
        embedding_service: Optional[EmbeddingService] = None,
        mmr_lambda: float = DEFAULT_MMR_LAMBDA,
        max_per_domain: Optional[int] = None,
        mmr_min_candidates: int = 4,
    ):
        self._embedding = embedding_service
        self.mmr_lambda = mmr_lambda
        self.max_per_domain = max_per_domain
        self.mmr_min_candidates = mmr_min_candidates

    def process(
        self,
        hits: Iterable[RawHit],
        diversify: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> DedupOutcome:
        """
        Run dedup, threshold, sort and (optionally) MMR.

        Args:
            hits: Raw hits from any number of sources, any order
            diversify: Force MMR on/off; default is on for more than 3 results
            limit: Final cap applied after MMR
        """
        hits = list(hits)
        results = dedupe(hits)
        duplicates = len(hits) - len(results)

        if not results:
            logger.info("No evidence: %d hit(s) in, nothing usable", len(hits))
            return DedupOutcome(results=[], duplicates_dropped=duplicates)

        decision = compute_dynamic_threshold(r.relevance for r in results)
        kept = sorted(
            (r for r in results if r.relevance >= decision.quality_min),
            key=sort_key,
        )
        below = len(results) - len(kept)
        kept = kept[:decision.max_results]

        if diversify is None:
            diversify = len(kept) >= self.mmr_min_candidates
        if diversify and kept:
            kept = mmr_rerank(
                kept,
                lambda_=self.mmr_lambda,
                limit=limit,
                similarity=self._similarity(kept),
                max_per_domain=self.max_per_domain,
            )
        elif limit is not None:
            kept = kept[:limit]

        logger.info(
            "Dedup: %d in, %d duplicate(s), %d below %.2f, %d kept%s",
            len(hits), duplicates, below, decision.quality_min, len(kept),
            " (diversified)" if diversify else "",
        )
        return DedupOutcome(
            results=kept,
            decision=decision,
            diversified=bool(diversify),
            duplicates_dropped=duplicates,
            below_threshold=below,
        )

    def _similarity(self, results: List[DedupedResult]) -> Optional[np.ndarray]:
        if self._embedding is None:
            return None
        return self._embedding.similarity_matrix([f"{r.title} {r.snippet}" for r in results])
