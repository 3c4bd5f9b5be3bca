"""
Query Processor

Plans retrieval for a question: cleans it, classifies its complexity,
and decomposes it into at most four subqueries.
Decomposition is heuristic by default; an LLM may propose subqueries for
complex questions, but its output must pass a strict schema first.
Short questions (three tokens or fewer) are used as-is.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from ..common.language import resolve_answer_language
from ..common.llm_client import LLMClient
from ..common.llm_utils import parse_llm_model
from ..common.schemas import Complexity, LLMDecomposition
from .grounding import STOP_WORDS

logger = logging.getLogger("evidence.retriever.query_processor")

MAX_SUBQUERIES = 4
PLANNING_MIN_TOKENS = 4


class QueryExpander(Protocol):
    async def expand(self, query: str) -> Dict[str, Any]:
        """Return {"alternatives": [str, ...]}."""
        ...


@dataclass
class ParsedQuery:
    """Planned representation of a user question"""
    original: str
    cleaned: str
    complexity: Complexity
    subqueries: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    language: str = "de"
    planned: bool = False
    planner: str = "none"  # "none", "heuristic" or "llm"

    @property
    def token_count(self) -> int:
        return len(self.original.split())


class QueryProcessor:
    """
    Turns a question into subqueries for the retrieval coordinator.

    Responsibilities:
    1. Clean and normalize query text
    2. Classify complexity (simple, moderate, complex)
    3. Decompose into subqueries (heuristic, optionally LLM)
    4. Add best-effort alternatives from a query expansion service
    """

    # Complexity patterns (German first, English equivalents)
    COMPLEX_PATTERNS = [
        r"\b(vergleich\w*|unterschied\w*|pro und contra|gegenüber|versus|vs\.?)\b",
        r"\b(detailliert\w*|ausführlich\w*|umfassend\w*|gründlich\w*|tiefgehend\w*|vollständig\w*)\b",
        r"\b(einerseits|andererseits|sowohl .+ als auch)\b",
        r"\b(compare|comparison|difference between|pros and cons|in detail|comprehensive)\b",
    ]
    SIMPLE_PATTERNS = [
        r"^(was ist|wer ist|wo ist|wann)\b",
        r"^(hallo|hi|guten (morgen|tag|abend)|danke)\b",
        r"^(what is|who is|where is|when)\b",
    ]

    # Task prefixes that carry no search meaning
    TASK_PREFIXES = [
        r"^(bitte\s+)?(erstelle|schreibe|verfasse|formuliere|recherchiere|suche|finde)\b"
        r"(\s+\w+){0,3}?\s+(zu|über|zum|zur|nach)\s+",
        r"^(kannst du|könntest du)(\s+mir)?\s+(sagen|erklären|zusammenfassen),?\s*",
        r"^(please\s+)?(write|create|research|find|search for)\s+(an?\s+)?(\w+\s+)?(about|on|for)\s+",
    ]

    # Comparison: "Unterschied zwischen X und Y", "X vs Y"
    COMPARISON_PATTERNS = [
        r"(?:unterschied|unterschiede|vergleich)\w*\s+(?:zwischen|von)\s+(.+?)\s+und\s+(.+)",
        r"(.+?)\s+(?:vs\.?|versus|gegenüber)\s+(.+)",
        r"difference between\s+(.+?)\s+and\s+(.+)",
    ]

    DECOMPOSE_PROMPT = """Zerlege die folgende Frage in höchstens {max_subqueries} eigenständige Suchanfragen.
Jede Suchanfrage muss für sich allein verständlich sein. Erfinde keine neuen Themen.

Antworte ausschließlich mit einem gültigen JSON-Objekt:
{{
    "subqueries": ["..."],
    "complexity": one of ["simple", "moderate", "complex"]
}}

Frage: {query}

JSON:"""

    def __init__(
        self,
        llm_client: Optional[LLMClient] = None,
        expander: Optional[QueryExpander] = None,
        default_language: str = "de",
    ):
        """Initialize query processor.

        Args:
            llm_client: Optional client for LLM decomposition of complex questions
            expander: Optional query expansion service (failures are ignored)
            default_language: Answer language when detection is inconclusive
        """
        self._llm = llm_client
        self._expander = expander
        self._default_language = default_language

    async def parse(self, query: str) -> ParsedQuery:
        """
        Plan retrieval for a question.

        Args:
            query: Raw user question (non-empty)

        Returns:
            ParsedQuery with complexity and 1-4 subqueries
        """
        cleaned = self._clean_query(query)
        complexity = self.detect_complexity(cleaned)
        language = resolve_answer_language(query, self._default_language)
        keywords = self._extract_keywords(cleaned)

        if len(query.split()) < PLANNING_MIN_TOKENS:
            logger.debug("Planning skipped for short query %r", query)
            return ParsedQuery(
                original=query,
                cleaned=cleaned,
                complexity=complexity,
                subqueries=[query.strip()],
                keywords=keywords,
                language=language,
            )

        subqueries = None
        planner = "heuristic"
        if complexity == Complexity.COMPLEX and self._llm is not None and self._llm.is_available:
            subqueries = await self._decompose_with_llm(query)
            if subqueries:
                planner = "llm"
        if not subqueries:
            subqueries = self._decompose_heuristic(query)

        if len(subqueries) < MAX_SUBQUERIES:
            subqueries = await self._add_expansions(query, subqueries)

        return ParsedQuery(
            original=query,
            cleaned=cleaned,
            complexity=complexity,
            subqueries=subqueries[:MAX_SUBQUERIES],
            keywords=keywords,
            language=language,
            planned=True,
            planner=planner,
        )

    def detect_complexity(self, query: str) -> Complexity:
        """Classify a query; comparison and depth cues win over brevity."""
        query_lower = query.lower().strip()

        for pattern in self.COMPLEX_PATTERNS:
            if re.search(pattern, query_lower):
                return Complexity.COMPLEX

        if len(query_lower) < 30:
            return Complexity.SIMPLE
        for pattern in self.SIMPLE_PATTERNS:
            if re.search(pattern, query_lower):
                return Complexity.SIMPLE

        return Complexity.MODERATE

    def extract_search_topic(self, query: str) -> str:
        """Strip task phrasing ("Schreibe einen Text über ...") from a query."""
        topic = query.strip()
        for pattern in self.TASK_PREFIXES:
            stripped = re.sub(pattern, "", topic, count=1, flags=re.IGNORECASE)
            if stripped != topic and stripped.strip():
                topic = stripped
                break
        return topic.strip().rstrip("?.!").strip()

    def _clean_query(self, query: str) -> str:
        """Clean and normalize query text"""
        cleaned = query.lower().strip()

        # Remove extra whitespace
        cleaned = re.sub(r'\s+', ' ', cleaned)

        # Remove trailing punctuation (but keep question marks)
        cleaned = re.sub(r'[.!,;:]+$', '', cleaned)

        return cleaned

    def _extract_keywords(self, query: str) -> List[str]:
        """Extract important keywords from query"""
        words = re.findall(r'\b\w+\b', query.lower())

        keywords = [
            w for w in words
            if w not in STOP_WORDS and len(w) > 2
        ]

        return list(dict.fromkeys(keywords))[:15]

    def _decompose_heuristic(self, query: str) -> List[str]:
        """Original question first, then comparison sides or the search topic."""
        subqueries = [query.strip()]
        topic = self.extract_search_topic(query)

        for pattern in self.COMPARISON_PATTERNS:
            match = re.search(pattern, topic, re.IGNORECASE)
            if match:
                for side in match.groups():
                    side = side.strip().rstrip("?.!").strip()
                    if side and len(side.split()) <= 8:
                        subqueries.append(side)
                break
        else:
            if topic and topic.lower() != query.strip().rstrip("?.!").lower():
                subqueries.append(topic)

        return self._unique(subqueries)

    async def _decompose_with_llm(self, query: str) -> Optional[List[str]]:
        """Ask the LLM for subqueries; any invalid output yields None."""
        prompt = self.DECOMPOSE_PROMPT.format(query=query, max_subqueries=MAX_SUBQUERIES)
        try:
            raw = await asyncio.to_thread(self._llm.generate, prompt, max_tokens=256, temperature=0.0)
        except Exception as e:
            logger.warning("LLM decomposition failed: %s", e)
            return None

        parsed = parse_llm_model(raw, LLMDecomposition)
        if parsed is None:
            return None
        subqueries = [s.strip() for s in parsed.subqueries if s and s.strip()]
        if not subqueries:
            return None
        return self._unique([query.strip()] + subqueries)

    async def _add_expansions(self, query: str, subqueries: List[str]) -> List[str]:
        """Append alternatives from the expansion service, best effort."""
        if self._expander is None:
            return subqueries
        try:
            response = await self._expander.expand(query)
        except Exception as e:
            logger.info("Query expansion unavailable: %s", e)
            return subqueries

        alternatives = (response or {}).get("alternatives") or []
        extra = [a.strip() for a in alternatives if isinstance(a, str) and a.strip()]
        return self._unique(subqueries + extra)[:MAX_SUBQUERIES]

    @staticmethod
    def _unique(queries: List[str]) -> List[str]:
        seen = set()
        unique = []
        for q in queries:
            key = q.lower()
            if key not in seen:
                seen.add(key)
                unique.append(q)
        return unique[:MAX_SUBQUERIES]
