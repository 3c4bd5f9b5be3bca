"""
Evidence Pipeline

Single-turn question answering:
PLANNING -> RETRIEVING -> DEDUPING -> REFERENCING -> DRAFTING ->
RENUMBERING -> VALIDATING -> DONE

DEDUPING may end in NO_EVIDENCE. VALIDATING may take the FALLBACK edge
back into a template-only DRAFTING when too many model citations are
unsupported. Every transition is logged and recorded in the response
trace.
"""

import logging
import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from ..common.config import ConfigurationError, EvidenceConfig
from ..common.embedding_service import EmbeddingService
from ..common.llm_client import LLMClient
from ..common.schemas import (
    AnswerResponse,
    Complexity,
    Depth,
    SynthesisStrategy,
)
from .coordinator import RetrievalCoordinator
from .dedup import Deduplicator
from .grounding import GroundingValidator
from .query_processor import QueryExpander, QueryProcessor
from .references import ReferenceMap, renumber_citations
from .synthesizer import (
    NO_EVIDENCE_MESSAGES,
    Synthesizer,
    confidence_label,
    evidence_confidence,
    suggest_follow_ups,
)

logger = logging.getLogger("evidence.retriever.pipeline")


class PipelineState(str, Enum):
    """States of the single-turn answer flow"""
    PLANNING = "planning"
    RETRIEVING = "retrieving"
    DEDUPING = "deduping"
    NO_EVIDENCE = "no_evidence"
    REFERENCING = "referencing"
    DRAFTING = "drafting"
    RENUMBERING = "renumbering"
    VALIDATING = "validating"
    FALLBACK = "fallback"
    DONE = "done"


class StateTrace:
    """Per-request transition log, mirrored to a logger"""

    def __init__(self, question: str, log: logging.Logger = logger):
        self.question = question
        self.states: List[str] = []
        self._log = log

    def enter(self, state: PipelineState, detail: str = "") -> None:
        entry = state.value if not detail else f"{state.value}: {detail}"
        self.states.append(entry)
        self._log.info("[%s] %s", state.value.upper(), detail or self.question[:60])


def parse_depth(depth: Union[str, Depth, None]) -> Depth:
    if depth is None:
        return Depth.QUICK
    try:
        return Depth(depth)
    except ValueError:
        raise ConfigurationError(
            f"Unknown depth {depth!r}, expected one of: {', '.join(d.value for d in Depth)}"
        ) from None


def require_question(question: Optional[str]) -> str:
    if question is None or not question.strip():
        raise ConfigurationError("Question must not be empty")
    return question.strip()


class EvidencePipeline:
    """
    Answers a question with cited evidence from the configured sources.

    All collaborators are injected. Only configuration errors are raised,
    and only before retrieval starts; every other failure degrades to a
    smaller answer or the explicit no-evidence message.
    """

    def __init__(
        self,
        coordinator: RetrievalCoordinator,
        query_processor: Optional[QueryProcessor] = None,
        deduplicator: Optional[Deduplicator] = None,
        synthesizer: Optional[Synthesizer] = None,
        validator: Optional[GroundingValidator] = None,
        default_language: str = "de",
    ):
        self._coordinator = coordinator
        self._query_processor = query_processor or QueryProcessor(default_language=default_language)
        self._deduplicator = deduplicator or Deduplicator()
        self._synthesizer = synthesizer or Synthesizer()
        self._validator = validator or GroundingValidator()
        self.default_language = default_language

    @classmethod
    def from_config(
        cls,
        config: EvidenceConfig,
        coordinator: RetrievalCoordinator,
        llm_client: Optional[LLMClient] = None,
        embedding_service: Optional[EmbeddingService] = None,
        expander: Optional[QueryExpander] = None,
    ) -> "EvidencePipeline":
        return cls(
            coordinator=coordinator,
            query_processor=QueryProcessor(
                llm_client=llm_client,
                expander=expander,
                default_language=config.language,
            ),
            deduplicator=Deduplicator(
                embedding_service=embedding_service,
                mmr_lambda=config.retriever.mmr_lambda,
            ),
            synthesizer=Synthesizer(llm_client, temperature=config.llm.temperature),
            validator=GroundingValidator(
                max_ungrounded_ratio=config.grounding.max_ungrounded_ratio,
                min_citations=config.grounding.min_citations,
                min_overlap_ratio=config.grounding.min_overlap_ratio,
            ),
            default_language=config.language,
        )

    async def answer(
        self,
        question: str,
        source_selection: Optional[Iterable[str]] = None,
        depth: Union[str, Depth, None] = Depth.QUICK,
        use_llm: bool = True,
        filters: Optional[Dict[str, Any]] = None,
    ) -> AnswerResponse:
        """
        Answer a question.

        Args:
            question: Natural-language question
            source_selection: Source ids to search (None = all configured)
            depth: "quick" or "thorough"; thorough retrieves at complex depth
            use_llm: False forces the template synthesizer
            filters: Structured filter passed to every retrieval request

        Returns:
            AnswerResponse with text, citations, confidence, search steps,
            follow-up questions and the state trace

        Raises:
            ConfigurationError: empty question, empty or unknown source
                selection, unknown depth
        """
        question = require_question(question)
        source_ids = self._coordinator.validate_sources(source_selection)
        depth = parse_depth(depth)
        started = time.perf_counter()
        trace = StateTrace(question)
        metadata: Dict[str, Any] = {"depth": depth.value, "sources": source_ids}

        # PLANNING
        parsed = await self._query_processor.parse(question)
        complexity = Complexity.COMPLEX if depth == Depth.THOROUGH else parsed.complexity
        trace.enter(
            PipelineState.PLANNING,
            f"{len(parsed.subqueries)} subquery(ies), {complexity.value}"
            + ("" if parsed.planned else ", skipped"),
        )
        metadata.update({
            "subqueries": parsed.subqueries,
            "complexity": complexity.value,
            "language": parsed.language,
            "planner": parsed.planner,
        })

        # RETRIEVING
        retrieval = await self._coordinator.retrieve(parsed.subqueries, source_ids, complexity, filters)
        trace.enter(
            PipelineState.RETRIEVING,
            f"{len(retrieval.hits)} hit(s), {len(retrieval.failures)} failed request(s)",
        )
        search_steps = retrieval.search_steps
        metadata["enriched_pages"] = retrieval.enriched

        # DEDUPING
        outcome = self._deduplicator.process(retrieval.hits)
        if outcome.no_evidence:
            trace.enter(PipelineState.NO_EVIDENCE)
            trace.enter(PipelineState.DONE)
            metadata["elapsed_ms"] = round((time.perf_counter() - started) * 1000, 1)
            return AnswerResponse(
                text=NO_EVIDENCE_MESSAGES.get(parsed.language, NO_EVIDENCE_MESSAGES["de"]),
                search_steps=search_steps,
                follow_up_questions=suggest_follow_ups(question, retrieval.suggestions, parsed.language),
                trace=trace.states,
                metadata=metadata,
            )
        trace.enter(
            PipelineState.DEDUPING,
            f"{len(outcome.results)} kept, min {outcome.decision.quality_min:.2f}, "
            f"cap {outcome.decision.max_results}",
        )
        metadata.update({
            "quality_min": outcome.decision.quality_min,
            "max_results": outcome.decision.max_results,
            "diversified": outcome.diversified,
        })

        # REFERENCING
        reference_map = ReferenceMap.build(outcome.results, preserve_order=outcome.diversified)
        trace.enter(
            PipelineState.REFERENCING,
            f"{len(reference_map)} reference(s), {reference_map.distinct_documents} document(s)",
        )

        # DRAFTING
        draft = await self._synthesizer.synthesize(
            question, reference_map, parsed.language, use_llm=use_llm,
            strategy=SynthesisStrategy.FACTUAL,
        )
        trace.enter(PipelineState.DRAFTING, draft.strategy)
        metadata["token_budget"] = draft.max_tokens
        if draft.error:
            metadata["llm_error"] = draft.error

        # RENUMBERING
        renumbered = renumber_citations(draft.text, reference_map)
        trace.enter(PipelineState.RENUMBERING, f"{len(renumbered.reference_map)} cited")

        # VALIDATING
        grounding_confidence = 1.0
        fallback_used = False
        if draft.is_template:
            trace.enter(PipelineState.VALIDATING, "template draft, skipped")
            final = renumbered
        else:
            verdict = self._validator.validate(
                renumbered.text, renumbered.reference_map, unresolved=renumbered.dropped_markers,
            )
            trace.enter(
                PipelineState.VALIDATING,
                f"{verdict.grounded_count}/{verdict.total} grounded",
            )
            metadata["grounding"] = {
                "total": verdict.total,
                "grounded": verdict.grounded_count,
                "confidence": verdict.confidence,
            }
            if verdict.should_fallback:
                fallback_used = True
                trace.enter(PipelineState.FALLBACK, f"{verdict.total} citation(s) discarded")
                logger.warning(
                    "Discarding model draft: %d of %d citation(s) unsupported",
                    verdict.ungrounded_count, verdict.total,
                )
                metadata["discarded_citations"] = verdict.total
                draft = self._synthesizer.template(reference_map, parsed.language)
                trace.enter(PipelineState.DRAFTING, draft.strategy)
                final = renumber_citations(draft.text, reference_map)
                trace.enter(PipelineState.RENUMBERING, f"{len(final.reference_map)} cited")
            else:
                if verdict.total:
                    grounding_confidence = verdict.confidence
                # Stripping markers can change first-appearance order
                final = renumber_citations(verdict.text, renumbered.reference_map)

        trace.enter(PipelineState.DONE)
        used = [r for _, r in final.reference_map.items()]
        metadata.update({
            "strategy": draft.strategy,
            "fallback": fallback_used,
            "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
        })
        return AnswerResponse(
            text=final.text,
            citations=final.reference_map.citations(),
            confidence=round(evidence_confidence(used) * grounding_confidence, 2),
            confidence_label=confidence_label(used),
            search_steps=search_steps,
            follow_up_questions=suggest_follow_ups(question, retrieval.suggestions, parsed.language),
            trace=trace.states,
            metadata=metadata,
        )
