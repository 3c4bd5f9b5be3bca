"""
Retrieval Tuning

Pure functions that adapt retrieval and synthesis parameters to the
query and to the evidence actually found:
- hybrid search weights from query shape
- inclusion threshold and result cap from the score distribution
- completion token ceiling from evidence richness
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Tuple

logger = logging.getLogger("evidence.retriever.tuning")

HIGH_QUALITY_SCORE = 0.45
MEDIUM_QUALITY_SCORE = 0.38

# (min high-quality hits, qualityMin, maxResults), checked top-down
_THRESHOLD_TIERS = (
    (15, 0.40, 25),
    (8, 0.38, 20),
    (4, 0.37, 15),
)

# (min references, min distinct documents, token ceiling), checked top-down
_TOKEN_TIERS = (
    (15, 8, 3000),
    (10, 0, 2500),
    (6, 0, 2000),
    (4, 0, 1500),
    (2, 0, 1000),
)
MIN_TOKEN_BUDGET = 800


@dataclass(frozen=True)
class ThresholdDecision:
    """Result of the dynamic threshold calculation"""
    quality_min: float
    max_results: int
    high_count: int
    medium_count: int


def select_weights(text: str) -> Tuple[float, float]:
    """Map query shape to (vector_weight, text_weight).

    Single words are poor full-text queries, so vector similarity dominates.
    Two-word queries are balanced. Longer phrasings drift from indexed
    wording, so vector similarity dominates again.
    """
    tokens = text.split() if text else []
    if not tokens:
        raise ValueError("Cannot select weights for an empty query")

    if len(tokens) == 1:
        return 0.8, 0.2
    if len(tokens) == 2:
        return 0.65, 0.35
    return 0.75, 0.25


def compute_dynamic_threshold(scores: Iterable[float]) -> ThresholdDecision:
    """Derive (qualityMin, maxResults) from the unfiltered score distribution.

    qualityMin depends only on the number of high-quality hits and never
    decreases as that number grows.
    """
    scores = list(scores)
    high = sum(1 for s in scores if s >= HIGH_QUALITY_SCORE)
    medium = sum(1 for s in scores if s >= MEDIUM_QUALITY_SCORE)

    for min_high, quality_min, max_results in _THRESHOLD_TIERS:
        if high >= min_high:
            break
    else:
        if high >= 1:
            quality_min, max_results = 0.36, (12 if medium >= 5 else 10)
        else:
            quality_min, max_results = 0.35, 8

    logger.debug(
        "Dynamic threshold: %d high / %d medium of %d -> min=%.2f cap=%d",
        high, medium, len(scores), quality_min, max_results,
    )
    return ThresholdDecision(
        quality_min=quality_min,
        max_results=max_results,
        high_count=high,
        medium_count=medium,
    )


def token_budget(reference_count: int, document_count: int) -> int:
    """Completion token ceiling for the model-backed synthesizer."""
    for min_refs, min_docs, budget in _TOKEN_TIERS:
        if reference_count >= min_refs and document_count >= min_docs:
            return budget
    return MIN_TOKEN_BUDGET
