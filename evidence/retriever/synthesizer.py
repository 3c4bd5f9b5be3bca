"""
Synthesizer

Drafts a cited answer from a reference map.

Two interchangeable strategies:
- model-backed: the LLM writes the answer under strict grounding rules,
  with a token ceiling that grows with the evidence
- template-backed: the best snippet(s) per source kind, concatenated with
  markers; used without an LLM, on model errors and on grounding fallback
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..common.llm_client import LLMClient
from ..common.schemas import SynthesisStrategy
from .dedup import DedupedResult, sort_key
from .references import MARKER_RE, ReferenceMap, clean_draft
from .tuning import token_budget

logger = logging.getLogger("evidence.retriever.synthesizer")


NO_EVIDENCE_MESSAGES = {
    "de": "Zu dieser Anfrage konnten leider keine relevanten Informationen gefunden werden.",
    "en": "Unfortunately, no relevant information could be found for this request.",
}

SYSTEM_PROMPTS = {
    "de": """Du bist ein Recherche-Assistent. Beantworte die Frage ausschließlich auf Grundlage der nummerierten Quellen.

Regeln:
1. Verwende nur Informationen aus den Quellen. Kein externes Wissen, keine Vermutungen.
2. Belege jede Aussage direkt im Satz mit der Quellennummer, z.B. [1] oder [2][3].
3. Verwende nur Quellennummern, die unten aufgeführt sind.
4. Schreibe 2 bis 4 Absätze, immer auf Deutsch.
5. Füge kein Quellenverzeichnis an.
6. Wenn die Quellen die Frage nicht beantworten, sage das offen.""",
    "en": """You are a research assistant. Answer the question using only the numbered sources.

Rules:
1. Use only information from the sources. No outside knowledge, no speculation.
2. Cite every statement inline with its source number, e.g. [1] or [2][3].
3. Only use source numbers listed below.
4. Write 2 to 4 paragraphs, always in English.
5. Do not append a list of sources.
6. If the sources do not answer the question, say so plainly.""",
}

STRATEGY_HINTS = {
    "de": {
        SynthesisStrategy.POLICY: "Stelle die Positionen und Beschlüsse aus den Quellen geordnet dar.",
        SynthesisStrategy.BIOGRAPHICAL: "Beginne mit den Angaben zur Person.",
    },
    "en": {
        SynthesisStrategy.POLICY: "Lay out the positions and resolutions from the sources in order.",
        SynthesisStrategy.BIOGRAPHICAL: "Start with what the sources say about the person.",
    },
}

USER_PROMPTS = {
    "de": "Frage: {question}\n\nQuellen:\n{references}\n\nAntwort:",
    "en": "Question: {question}\n\nSources:\n{references}\n\nAnswer:",
}

# Template synthesis: (kinds, max snippets, max chars), in output order
TEMPLATE_SECTIONS = (
    (("person",), 2, 300),
    (("document", "prior_research"), 2, 250),
    (("web",), 2, 200),
)


@dataclass
class Draft:
    """Answer text with [n] markers pointing into reference_map"""
    text: str
    strategy: str  # "llm" or "template"
    reference_map: ReferenceMap
    max_tokens: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_template(self) -> bool:
        return self.strategy == "template"


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text[:limit]
    if " " in cut:
        cut = cut[:cut.rfind(" ")]
    return cut.rstrip(",;:-") + "…"


def confidence_label(used: List[DedupedResult]) -> str:
    """high: 3+ sources and one above 0.8; low: fewer than 2; medium otherwise"""
    if len(used) >= 3 and any(r.relevance > 0.8 for r in used):
        return "high"
    if len(used) < 2:
        return "low"
    return "medium"


def evidence_confidence(used: List[DedupedResult]) -> float:
    """Position-weighted mean relevance of the cited sources"""
    if not used:
        return 0.0
    total_weight = 0.0
    total_score = 0.0
    for i, r in enumerate(used[:5]):
        weight = 1.0 / (i + 1)
        total_weight += weight
        total_score += weight * r.relevance
    return round(total_score / total_weight, 2)


class Synthesizer:
    """
    Drafts answers from a reference map.

    Falls back to the template strategy if the LLM is unavailable or fails.
    """

    def __init__(self, llm_client: Optional[LLMClient] = None, temperature: float = 0.2):
        """
        Args:
            llm_client: Configured client, or None for template-only operation
            temperature: Sampling temperature for the model-backed strategy
        """
        self._llm = llm_client
        self.temperature = temperature

    @property
    def has_llm(self) -> bool:
        """Check if LLM is available"""
        return self._llm is not None and self._llm.is_available

    async def synthesize(
        self,
        question: str,
        reference_map: ReferenceMap,
        language: str = "de",
        use_llm: bool = True,
        strategy: SynthesisStrategy = SynthesisStrategy.FACTUAL,
    ) -> Draft:
        """
        Draft an answer.

        Args:
            question: The user's question
            reference_map: Evidence the draft may cite
            language: Answer language ("de" or "en")
            use_llm: Caller policy; False always uses the template
            strategy: Synthesis flavor, adds a focus hint to the model prompt

        Returns:
            Draft. Model errors are logged and answered with the template.
        """
        if use_llm and self.has_llm and reference_map:
            try:
                return await self._synthesize_with_llm(question, reference_map, language, strategy)
            except Exception as e:
                logger.warning("LLM synthesis failed: %s", e)
                draft = self.template(reference_map, language)
                draft.error = str(e) or type(e).__name__
                return draft

        return self.template(reference_map, language)

    async def _synthesize_with_llm(
        self,
        question: str,
        reference_map: ReferenceMap,
        language: str,
        strategy: SynthesisStrategy,
    ) -> Draft:
        """Synthesize using the LLM"""
        lang = language if language in SYSTEM_PROMPTS else "de"
        system = SYSTEM_PROMPTS[lang]
        hint = STRATEGY_HINTS[lang].get(strategy)
        if hint:
            system = f"{system}\n\n{hint}"
        max_tokens = token_budget(len(reference_map), reference_map.distinct_documents)
        prompt = USER_PROMPTS[lang].format(
            question=question,
            references=reference_map.to_prompt(),
        )

        raw = await asyncio.to_thread(
            self._llm.complete,
            system,
            [{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=self.temperature,
        )
        text = clean_draft(raw or "")
        if not text:
            raise ValueError("empty completion")

        logger.info(
            "LLM draft: %d chars, %d marker(s), budget %d tokens",
            len(text), len(MARKER_RE.findall(text)), max_tokens,
        )
        return Draft(text=text, strategy="llm", reference_map=reference_map, max_tokens=max_tokens)

    def template(
        self,
        reference_map: ReferenceMap,
        language: str = "de",
    ) -> Draft:
        """
        Rule-based synthesis: best snippets per source kind, person evidence
        first, then documents and prior research, then web.
        """
        if not reference_map:
            message = NO_EVIDENCE_MESSAGES.get(language, NO_EVIDENCE_MESSAGES["de"])
            return Draft(text=message, strategy="template", reference_map=reference_map)

        by_kind: Dict[str, List[int]] = {}
        for ref_id, r in reference_map.items():
            if r.snippet.strip():
                by_kind.setdefault(r.kind, []).append(ref_id)

        paragraphs = []
        for kinds, max_count, max_chars in TEMPLATE_SECTIONS:
            ids = sorted(
                (i for kind in kinds for i in by_kind.get(kind, [])),
                key=lambda i: sort_key(reference_map[i]),
            )
            if kinds == ("web",) and not paragraphs:
                max_count += 1
            for ref_id in ids[:max_count]:
                snippet = MARKER_RE.sub("", reference_map[ref_id].snippet)
                paragraphs.append(f"{_truncate(snippet, max_chars)} [{ref_id}]")

        if not paragraphs:
            # Nothing but titles to go on
            paragraphs = [f"{r.title} [{ref_id}]" for ref_id, r in reference_map.items()[:3]]

        return Draft(text="\n\n".join(paragraphs), strategy="template", reference_map=reference_map)


# (question pattern, German follow-ups, English follow-ups)
FOLLOW_UP_RULES = (
    (
        r"\b(wer|person|politiker\w*|who|politician)\b",
        ["Welche politischen Positionen vertritt diese Person?",
         "Welche aktuellen Projekte oder Initiativen gibt es?"],
        ["Which political positions does this person hold?",
         "Which current projects or initiatives are there?"],
    ),
    (
        r"\b(politik|position\w*|programm|thema|policy|program)\b",
        ["Wie hat sich diese Position in den letzten Jahren entwickelt?",
         "Welche Beschlüsse gibt es zu diesem Thema?"],
        ["How has this position developed in recent years?",
         "Which resolutions exist on this topic?"],
    ),
    (
        r"\b(ort|stadt|region|wahlkreis|city|district)\b",
        ["Wer sind die lokalen Vertreter*innen?",
         "Welche lokalen Initiativen gibt es?"],
        ["Who are the local representatives?",
         "Which local initiatives are there?"],
    ),
)

GENERIC_FOLLOW_UPS = {
    "de": ["Gibt es aktuelle Entwicklungen zu diesem Thema?",
           "Welche weiteren Informationen sind verfügbar?"],
    "en": ["Are there recent developments on this topic?",
           "What further information is available?"],
}


def suggest_follow_ups(
    question: str,
    suggestions: Optional[List[str]] = None,
    language: str = "de",
    limit: int = 3,
) -> List[str]:
    """Heuristic follow-up questions, topped up with search-engine suggestions."""
    lang = language if language in GENERIC_FOLLOW_UPS else "de"
    q = question.lower()
    follow_ups: List[str] = []
    for pattern, german, english in FOLLOW_UP_RULES:
        if re.search(pattern, q):
            follow_ups.extend(german if lang == "de" else english)
    if not follow_ups:
        follow_ups.extend(GENERIC_FOLLOW_UPS[lang])

    follow_ups = follow_ups[:max(limit - 1, 1)] if suggestions else follow_ups
    for s in suggestions or []:
        if s.lower() != q and s not in follow_ups:
            follow_ups.append(s)
    return follow_ups[:limit]
