"""
Research Agent

Plan-then-execute research for a single question:
1. plan search steps (heuristic, optionally model-proposed)
2. run all steps concurrently through the retrieval coordinator
3. merge, rank and diversify sources
4. synthesize, ground, and suggest follow-up questions
"""

import asyncio
import logging
import re
import time
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from ..common.config import ConfigurationError, EvidenceConfig
from ..common.language import resolve_answer_language
from ..common.llm_client import LLMClient
from ..common.llm_utils import parse_llm_model
from ..common.schemas import (
    AnswerResponse,
    Complexity,
    Depth,
    LLMPlan,
    ResearchPlan,
    SearchStep,
    SearchStepResult,
    SourceType,
    SynthesisStrategy,
    Tool,
)
from .coordinator import RetrievalCoordinator, RetrievalRound
from .dedup import DedupedResult, dedupe, mmr_rerank, sort_key
from .grounding import GroundingValidator
from .pipeline import PipelineState, StateTrace, parse_depth, require_question
from .references import ReferenceMap, renumber_citations
from .synthesizer import (
    NO_EVIDENCE_MESSAGES,
    Synthesizer,
    confidence_label,
    evidence_confidence,
    suggest_follow_ups,
)

logger = logging.getLogger("evidence.retriever.research")

TOOL_SOURCE_TYPES = {
    Tool.DOCUMENT_SEARCH: SourceType.DOCUMENT,
    Tool.WEB_SEARCH: SourceType.WEB,
    Tool.PRIOR_RESEARCH: SourceType.PRIOR_RESEARCH,
}

MAX_COLLECTED_SOURCES = 10
MMR_MIN_SOURCES = 4
MMR_MAX_PER_DOMAIN = 2

PARTY_RE = re.compile(r"\b(grüne\w*|partei\w*|programm\w*|position\w*|wahlprogramm\w*|beschl(uss|üsse)\w*|antr(ag|äge)\w*)\b")
CURRENT_EVENTS_RE = re.compile(r"\b(aktuell\w*|heute|gestern|diese woche|kürzlich|news|nachricht\w*)\b")
LOCAL_RE = re.compile(r"\b(ort|stadt|stadtteil|region|gemeinde|kreis|wahlkreis)\b")
PERSON_RE = re.compile(r"\b(wer ist|wer war|politiker\w*|abgeordnet\w*|minister\w*|kandidat\w*)\b")

PLAN_PROMPT = """Plane die Recherche für die folgende Frage.
Verfügbare Werkzeuge: {tools}
Höchstens {max_steps} Schritte. Priorität 1 ist am wichtigsten.

Antworte ausschließlich mit einem gültigen JSON-Objekt:
{{
    "steps": [
        {{"tool": one of {tools}, "query": "...", "priority": 1-5, "rationale": "..."}}
    ],
    "strategy": one of ["factual_synthesis", "policy_overview", "biographical"]
}}

Frage: {question}

JSON:"""


def plan_research(
    question: str,
    depth: Union[str, Depth] = Depth.QUICK,
    available_tools: Optional[Iterable[Tool]] = None,
) -> ResearchPlan:
    """
    Heuristic research plan.

    Policy questions go to the document search, current events and
    anything unclassified to the web. Thorough plans cover both tools.

    Args:
        question: The user's question
        depth: quick (at most 3 steps) or thorough (at most 5)
        available_tools: Tools with a configured source (None = all)

    Returns:
        ResearchPlan sorted by priority; empty when no tool is available
    """
    depth = parse_depth(depth)
    tools: Set[Tool] = set(Tool) if available_tools is None else set(available_tools)
    q = question.lower()

    is_party = bool(PARTY_RE.search(q))
    is_current = bool(CURRENT_EVENTS_RE.search(q))
    is_local = bool(LOCAL_RE.search(q))

    steps: List[SearchStep] = []
    if is_party and not is_current:
        steps.append(SearchStep(
            tool=Tool.DOCUMENT_SEARCH, query=question, priority=2,
            rationale="Query relates to party positions or programs",
        ))
    if is_current or not steps:
        steps.append(SearchStep(
            tool=Tool.WEB_SEARCH, query=question, priority=1 if is_current else 3,
            rationale="Query about current events" if is_current else "General information search",
        ))
    if is_local and not any(s.tool == Tool.WEB_SEARCH for s in steps):
        steps.append(SearchStep(
            tool=Tool.WEB_SEARCH, query=question, priority=2,
            rationale="Local or geographic information needed",
        ))

    steps.sort(key=lambda s: s.priority)
    steps = steps[:depth.max_steps]

    if depth == Depth.THOROUGH:
        for tool, rationale in (
            (Tool.WEB_SEARCH, "Supplementary web search"),
            (Tool.DOCUMENT_SEARCH, "Supplementary document search"),
            (Tool.PRIOR_RESEARCH, "Earlier research on the topic"),
        ):
            if tool in tools and not any(s.tool == tool for s in steps):
                steps.append(SearchStep(
                    tool=tool, query=question,
                    priority=3 if tool != Tool.PRIOR_RESEARCH else 4,
                    rationale=rationale,
                ))
        steps = steps[:depth.max_steps]

    steps = _restrict_to(steps, tools, question)

    if PERSON_RE.search(q):
        strategy = SynthesisStrategy.BIOGRAPHICAL
    elif is_party:
        strategy = SynthesisStrategy.POLICY
    else:
        strategy = SynthesisStrategy.FACTUAL

    return ResearchPlan(steps=tuple(steps), strategy=strategy, depth=depth)


def _restrict_to(steps: List[SearchStep], tools: Set[Tool], question: str) -> List[SearchStep]:
    """Drop steps for unavailable tools; fall back to any available tool."""
    kept = [s for s in steps if s.tool in tools]
    if kept or not tools or not steps:
        return kept
    for tool in (Tool.WEB_SEARCH, Tool.DOCUMENT_SEARCH, Tool.PRIOR_RESEARCH):
        if tool in tools:
            return [SearchStep(tool=tool, query=question, priority=3, rationale="Only available source")]
    return kept


class ResearchAgent:
    """
    Plans and runs a multi-step search for one question.

    Shares the coordinator, synthesizer and grounding validator with the
    single-turn pipeline; only planning and source merging differ.
    """

    def __init__(
        self,
        coordinator: RetrievalCoordinator,
        synthesizer: Optional[Synthesizer] = None,
        validator: Optional[GroundingValidator] = None,
        llm_client: Optional[LLMClient] = None,
        llm_planning: bool = False,
        mmr_lambda: float = 0.7,
        max_per_domain: int = MMR_MAX_PER_DOMAIN,
        default_max_sources: int = 8,
        default_language: str = "de",
    ):
        """
        Args:
            coordinator: Retrieval coordinator with the configured sources
            synthesizer: Draft writer (template-only when None)
            validator: Grounding validator for model drafts
            llm_client: Client used for model-proposed plans
            llm_planning: Ask the model for a plan before the heuristic
            mmr_lambda: Relevance/novelty trade-off for source diversification
            max_per_domain: Sources allowed from one domain
            default_max_sources: Source cap when research() gets none
            default_language: Answer language when detection is inconclusive
        """
        self._coordinator = coordinator
        self._synthesizer = synthesizer or Synthesizer(llm_client)
        self._validator = validator or GroundingValidator()
        self._llm = llm_client
        self.llm_planning = llm_planning
        self.mmr_lambda = mmr_lambda
        self.max_per_domain = max_per_domain
        self.default_max_sources = default_max_sources
        self.default_language = default_language

    @classmethod
    def from_config(
        cls,
        config: EvidenceConfig,
        coordinator: RetrievalCoordinator,
        llm_client: Optional[LLMClient] = None,
        llm_planning: bool = False,
    ) -> "ResearchAgent":
        return cls(
            coordinator=coordinator,
            synthesizer=Synthesizer(llm_client, temperature=config.llm.temperature),
            validator=GroundingValidator(
                max_ungrounded_ratio=config.grounding.max_ungrounded_ratio,
                min_citations=config.grounding.min_citations,
                min_overlap_ratio=config.grounding.min_overlap_ratio,
            ),
            llm_client=llm_client,
            llm_planning=llm_planning,
            mmr_lambda=config.retriever.mmr_lambda,
            max_per_domain=config.retriever.max_per_domain,
            default_max_sources=config.retriever.max_sources,
            default_language=config.language,
        )

    @property
    def available_tools(self) -> List[Tool]:
        return [
            tool for tool, source_type in TOOL_SOURCE_TYPES.items()
            if self._coordinator.sources_of_type(source_type)
        ]

    async def plan(self, question: str, depth: Union[str, Depth] = Depth.QUICK) -> ResearchPlan:
        """Model-proposed plan when enabled and valid, heuristic plan otherwise."""
        depth = parse_depth(depth)
        tools = self.available_tools
        if self.llm_planning and self._llm is not None and self._llm.is_available:
            plan = await self._plan_with_llm(question, depth, tools)
            if plan is not None:
                return plan
        return plan_research(question, depth, tools)

    async def _plan_with_llm(
        self,
        question: str,
        depth: Depth,
        tools: List[Tool],
    ) -> Optional[ResearchPlan]:
        if not tools:
            return None
        prompt = PLAN_PROMPT.format(
            question=question,
            tools=[t.value for t in tools],
            max_steps=depth.max_steps,
        )
        try:
            raw = await asyncio.to_thread(self._llm.generate, prompt, max_tokens=400, temperature=0.0)
        except Exception as e:
            logger.warning("LLM planning failed: %s", e)
            return None

        proposed = parse_llm_model(raw, LLMPlan)
        if proposed is None:
            return None
        steps = [
            SearchStep(tool=Tool(s.tool), query=s.query.strip(), priority=s.priority, rationale=s.rationale)
            for s in proposed.steps
            if Tool(s.tool) in tools and s.query.strip()
        ]
        if not steps:
            logger.info("LLM plan had no usable steps, using heuristic plan")
            return None
        steps.sort(key=lambda s: s.priority)
        return ResearchPlan(
            steps=tuple(steps[:depth.max_steps]),
            strategy=SynthesisStrategy(proposed.strategy),
            depth=depth,
        )

    async def research(
        self,
        question: str,
        depth: Union[str, Depth, None] = Depth.QUICK,
        max_sources: Optional[int] = None,
        use_llm: bool = True,
    ) -> AnswerResponse:
        """
        Research a question.

        Args:
            question: Natural-language question
            depth: "quick" (up to 3 searches) or "thorough" (up to 5)
            max_sources: Sources handed to synthesis (default from config)
            use_llm: False forces the template synthesizer

        Returns:
            AnswerResponse, same shape as EvidencePipeline.answer

        Raises:
            ConfigurationError: empty question, unknown depth, max_sources < 1
        """
        question = require_question(question)
        depth = parse_depth(depth)
        max_sources = self.default_max_sources if max_sources is None else max_sources
        if max_sources < 1:
            raise ConfigurationError(f"max_sources must be at least 1, got {max_sources}")

        started = time.perf_counter()
        trace = StateTrace(question, log=logger)
        language = resolve_answer_language(question, self.default_language)

        plan = await self.plan(question, depth)
        trace.enter(
            PipelineState.PLANNING,
            f"{len(plan.steps)} step(s), strategy {plan.strategy.value}",
        )
        metadata: Dict[str, Any] = {
            "depth": depth.value,
            "strategy": plan.strategy.value,
            "plan": [s.model_dump(mode="json") for s in plan.steps],
            "language": language,
        }

        rounds = await self._execute(plan)
        search_steps: List[SearchStepResult] = [s for r in rounds for s in r.search_steps]
        suggestions = list(dict.fromkeys(s for r in rounds for s in r.suggestions))
        hits = [h for r in rounds for h in r.hits]
        trace.enter(PipelineState.RETRIEVING, f"{len(hits)} hit(s) from {len(search_steps)} search(es)")

        sources = self._collect_sources(hits, max_sources)
        if not sources:
            trace.enter(PipelineState.NO_EVIDENCE)
            trace.enter(PipelineState.DONE)
            metadata["elapsed_ms"] = round((time.perf_counter() - started) * 1000, 1)
            return AnswerResponse(
                text=NO_EVIDENCE_MESSAGES.get(language, NO_EVIDENCE_MESSAGES["de"]),
                search_steps=search_steps,
                follow_up_questions=suggest_follow_ups(question, suggestions, language),
                trace=trace.states,
                metadata=metadata,
            )
        trace.enter(PipelineState.DEDUPING, f"{len(sources)} source(s)")

        reference_map = ReferenceMap.build(sources, preserve_order=True)
        trace.enter(PipelineState.REFERENCING, f"{len(reference_map)} reference(s)")

        draft = await self._synthesizer.synthesize(
            question, reference_map, language, use_llm=use_llm, strategy=plan.strategy,
        )
        trace.enter(PipelineState.DRAFTING, draft.strategy)
        if draft.error:
            metadata["llm_error"] = draft.error

        renumbered = renumber_citations(draft.text, reference_map)
        trace.enter(PipelineState.RENUMBERING, f"{len(renumbered.reference_map)} cited")

        grounding_confidence = 1.0
        fallback_used = False
        final = renumbered
        if not draft.is_template:
            verdict = self._validator.validate(
                renumbered.text, renumbered.reference_map, unresolved=renumbered.dropped_markers,
            )
            trace.enter(PipelineState.VALIDATING, f"{verdict.grounded_count}/{verdict.total} grounded")
            if verdict.ungrounded_count:
                logger.warning("%d ungrounded citation(s) removed", verdict.ungrounded_count)
            if verdict.should_fallback:
                fallback_used = True
                trace.enter(PipelineState.FALLBACK, f"{verdict.total} citation(s) discarded")
                logger.warning("More than half of the citations ungrounded, using template synthesis")
                draft = self._synthesizer.template(reference_map, language)
                final = renumber_citations(draft.text, reference_map)
            else:
                if verdict.total:
                    grounding_confidence = verdict.confidence
                final = renumber_citations(verdict.text, renumbered.reference_map)

        trace.enter(PipelineState.DONE)
        used = [r for _, r in final.reference_map.items()]
        metadata.update({
            "fallback": fallback_used,
            "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
        })
        response = AnswerResponse(
            text=final.text,
            citations=final.reference_map.citations(),
            confidence=round(evidence_confidence(used) * grounding_confidence, 2),
            confidence_label=confidence_label(used),
            search_steps=search_steps,
            follow_up_questions=suggest_follow_ups(question, suggestions, language),
            trace=trace.states,
            metadata=metadata,
        )
        logger.info(
            "Research complete: %d citation(s), confidence %s",
            len(response.citations), response.confidence_label,
        )
        return response

    async def _execute(self, plan: ResearchPlan) -> List[RetrievalRound]:
        """Run every plan step concurrently; one retrieval round per step."""
        calls = []
        for step in plan.steps:
            source_ids = self._coordinator.sources_of_type(TOOL_SOURCE_TYPES[step.tool])
            if not source_ids:
                logger.info("No source configured for %s, step skipped", step.tool.value)
                continue
            complexity = Complexity.COMPLEX if plan.depth == Depth.THOROUGH else Complexity.MODERATE
            calls.append(self._coordinator.retrieve([step.query], source_ids, complexity))
        if not calls:
            return []
        return list(await asyncio.gather(*calls))

    def _collect_sources(self, hits, max_sources: int) -> List[DedupedResult]:
        """Dedup, rank, cap, diversify and limit collected hits."""
        ranked = sorted(dedupe(hits), key=sort_key)[:MAX_COLLECTED_SOURCES]
        if len(ranked) >= MMR_MIN_SOURCES:
            ranked = mmr_rerank(ranked, lambda_=self.mmr_lambda, max_per_domain=self.max_per_domain)
        return ranked[:max_sources]
