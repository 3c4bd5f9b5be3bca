"""
Retriever Agent - Cited Answers from Multiple Sources

Searches document collections, the web and prior research, and
synthesizes answers whose citations are checked against their sources.

Key Components:
- QueryProcessor: Plans subqueries for a question
- RetrievalCoordinator: Fans subqueries out to source adapters concurrently
- Deduplicator: Dedup, dynamic threshold, MMR diversification
- Synthesizer: LLM or template drafts with [n] markers
- GroundingValidator: Checks every citation against its snippet

Pipeline:
1. Plan subqueries
2. Retrieve from all selected sources (timeouts become empty results)
3. Deduplicate, threshold and rank evidence
4. Draft, renumber citations, validate grounding (template fallback)
"""

from .adapters import (
    AdapterResult,
    DocumentSearchAdapter,
    NullAdapter,
    PriorResearchAdapter,
    SourceAdapter,
    SourceError,
    TransientSourceError,
    WebSearchAdapter,
)
from .coordinator import RetrievalCoordinator, RetrievalRound, build_coordinator
from .crawler import PageFetcher, create_page_fetcher
from .dedup import DedupedResult, DedupOutcome, Deduplicator, mmr_rerank
from .grounding import GroundingValidator, GroundingVerdict
from .pipeline import EvidencePipeline, PipelineState
from .query_processor import ParsedQuery, QueryProcessor
from .references import ReferenceMap, renumber_citations
from .research import ResearchAgent, plan_research
from .searxng import SearxngClient, create_searxng_client
from .synthesizer import Draft, Synthesizer
from .tuning import compute_dynamic_threshold, select_weights, token_budget

__all__ = [
    "AdapterResult",
    "DocumentSearchAdapter",
    "NullAdapter",
    "PriorResearchAdapter",
    "SourceAdapter",
    "SourceError",
    "TransientSourceError",
    "WebSearchAdapter",
    "RetrievalCoordinator",
    "RetrievalRound",
    "build_coordinator",
    "PageFetcher",
    "create_page_fetcher",
    "DedupedResult",
    "DedupOutcome",
    "Deduplicator",
    "mmr_rerank",
    "GroundingValidator",
    "GroundingVerdict",
    "EvidencePipeline",
    "PipelineState",
    "ParsedQuery",
    "QueryProcessor",
    "ReferenceMap",
    "renumber_citations",
    "ResearchAgent",
    "plan_research",
    "SearxngClient",
    "create_searxng_client",
    "Draft",
    "Synthesizer",
    "compute_dynamic_threshold",
    "select_weights",
    "token_budget",
]
