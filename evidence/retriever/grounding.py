"""
Grounding Validator

Checks every citation marker against the snippet it points to.
A marker is grounded when the sentence it closes shares enough content
words with the referenced snippet. Ungrounded markers are stripped; when
most of a draft's citations fail, the verdict asks for template fallback.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import FrozenSet, List, Set

from .references import MARKER_RE, ReferenceMap, tidy_spacing

logger = logging.getLogger("evidence.retriever.grounding")

STEM_LENGTH = 6

STOP_WORDS: FrozenSet[str] = frozenset({
    # German
    "der", "die", "das", "den", "dem", "des", "ein", "eine", "einen", "einem",
    "einer", "eines", "und", "oder", "aber", "auch", "als", "wie", "wenn",
    "dass", "ist", "sind", "war", "waren", "wird", "werden", "wurde", "wurden",
    "hat", "haben", "hatte", "sein", "seine", "ihre", "ihr", "sich", "mit",
    "von", "vom", "zum", "zur", "bei", "für", "auf", "aus", "nach", "über",
    "unter", "durch", "gegen", "ohne", "nicht", "noch", "nur", "sehr", "mehr",
    "kann", "können", "soll", "sollen", "muss", "müssen", "diese", "dieser",
    "dieses", "einem", "sowie", "bzw", "etwa", "dabei", "dazu", "damit",
    "laut", "zudem", "außerdem", "welche", "welcher", "was", "wer", "wo",
    # English
    "the", "and", "for", "with", "that", "this", "these", "those", "are",
    "was", "were", "has", "have", "had", "been", "from", "into", "about",
    "also", "which", "their", "there", "they", "not", "but", "its", "our",
    "will", "would", "can", "could", "should",
})

_WORD_RE = re.compile(r"\w+")
_TRAILING_MARKERS_RE = re.compile(r"(?:\s*\[\d+\])+\s*$")
_SENTENCE_BREAK_RE = re.compile(r"[.!?]\s+|\n")


def content_tokens(text: str) -> Set[str]:
    """Lowercased content words, stop words removed, cut to a common stem length."""
    tokens = set()
    for word in _WORD_RE.findall(text.lower()):
        if word in STOP_WORDS:
            continue
        if len(word) < 3 and not word.isdigit():
            continue
        tokens.add(word[:STEM_LENGTH])
    return tokens


def claim_before(text: str, position: int) -> str:
    """The sentence a marker at ``position`` closes.

    Handles both ``Satz [1].`` and ``Satz. [1]`` placements and runs of
    adjacent markers.
    """
    prefix = _TRAILING_MARKERS_RE.sub("", text[:position]).rstrip()
    if prefix and prefix[-1] in ".!?":
        prefix = prefix[:-1]
    start = 0
    for match in _SENTENCE_BREAK_RE.finditer(prefix):
        start = match.end()
    return MARKER_RE.sub("", prefix[start:]).strip()


@dataclass
class CitationCheck:
    """Grounding result for one marker occurrence"""
    ref_id: int
    start: int
    end: int
    claim: str
    grounded: bool
    shared_tokens: int = 0
    overlap: float = 0.0


@dataclass
class GroundingVerdict:
    """Per-citation results plus the aggregate decision"""
    checks: List[CitationCheck]
    text: str
    should_fallback: bool = False
    unresolved: int = 0
    notes: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        """Checked citations plus markers that resolved to no reference"""
        return len(self.checks) + self.unresolved

    @property
    def grounded_count(self) -> int:
        return sum(1 for c in self.checks if c.grounded)

    @property
    def ungrounded_count(self) -> int:
        return self.total - self.grounded_count

    @property
    def confidence(self) -> float:
        """Fraction of citations that are grounded; 0.0 without citations"""
        if not self.total:
            return 0.0
        return round(self.grounded_count / self.total, 4)


class GroundingValidator:
    """
    Lexical grounding check with a circuit breaker.

    Thresholds are tunable; the defaults fall back when more than half of
    at least three citations are unsupported.
    """

    def __init__(
        self,
        max_ungrounded_ratio: float = 0.5,
        min_citations: int = 3,
        min_overlap_ratio: float = 0.15,
        min_shared_tokens: int = 2,
    ):
        self.max_ungrounded_ratio = max_ungrounded_ratio
        self.min_citations = min_citations
        self.min_overlap_ratio = min_overlap_ratio
        self.min_shared_tokens = min_shared_tokens

    def is_supported(self, claim: str, source_text: str) -> CitationCheck:
        claim_tokens = content_tokens(claim)
        if not claim_tokens:
            return CitationCheck(ref_id=0, start=0, end=0, claim=claim, grounded=False)
        shared = claim_tokens & content_tokens(source_text)
        overlap = len(shared) / len(claim_tokens)
        grounded = (
            len(shared) >= min(self.min_shared_tokens, len(claim_tokens))
            and overlap >= self.min_overlap_ratio
        )
        return CitationCheck(
            ref_id=0, start=0, end=0, claim=claim, grounded=grounded,
            shared_tokens=len(shared), overlap=round(overlap, 4),
        )

    def validate(self, text: str, reference_map: ReferenceMap, unresolved: int = 0) -> GroundingVerdict:
        """
        Check every marker in ``text`` against ``reference_map``.

        Args:
            text: Draft with citation markers
            reference_map: References the markers point into
            unresolved: Markers already removed from ``text`` because they
                pointed at no reference; each one counts as ungrounded

        Returns:
            GroundingVerdict whose ``text`` has ungrounded markers removed
        """
        checks: List[CitationCheck] = []
        for match in MARKER_RE.finditer(text):
            ref_id = int(match.group(1))
            claim = claim_before(text, match.start())
            ref = reference_map.get(ref_id)
            if ref is None:
                check = CitationCheck(ref_id=0, start=0, end=0, claim=claim, grounded=False)
            else:
                check = self.is_supported(claim, f"{ref.title} {ref.snippet}")
            check.ref_id = ref_id
            check.start, check.end = match.start(), match.end()
            checks.append(check)

        stripped = self._strip_ungrounded(text, checks)
        verdict = GroundingVerdict(checks=checks, text=stripped, unresolved=unresolved)

        if verdict.total >= self.min_citations:
            ungrounded_ratio = verdict.ungrounded_count / verdict.total
            verdict.should_fallback = ungrounded_ratio > self.max_ungrounded_ratio

        if verdict.ungrounded_count:
            verdict.notes.append(
                f"{verdict.ungrounded_count} of {verdict.total} citation(s) not supported by their source"
            )
            logger.info(
                "Grounding: %d/%d citation(s) unsupported%s",
                verdict.ungrounded_count, verdict.total,
                ", falling back" if verdict.should_fallback else "",
            )
        return verdict

    @staticmethod
    def _strip_ungrounded(text: str, checks: List[CitationCheck]) -> str:
        if all(c.grounded for c in checks):
            return text
        parts = []
        cursor = 0
        for check in checks:
            if check.grounded:
                continue
            parts.append(text[cursor:check.start])
            cursor = check.end
        parts.append(text[cursor:])
        return tidy_spacing("".join(parts))
