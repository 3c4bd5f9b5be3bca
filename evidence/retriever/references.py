"""
Reference Map and Citation Renumbering

ReferenceMap assigns dense 1-based citation ids to the evidence set.
renumber_citations rewrites a draft so its markers follow reading order:
the first marker a reader meets is always [1].
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ..common.schemas import Citation
from .dedup import DedupedResult, sort_key

MARKER_RE = re.compile(r"\[(\d+)\]")
_GROUPED_MARKER_RE = re.compile(r"\[\s*(\d+(?:\s*[,;]\s*\d+)+)\s*\]")
_CODE_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*$", re.MULTILINE)
_SOURCES_SECTION_RE = re.compile(
    r"\n+\s*(?:#+\s*)?(?:\*\*)?(?:Quellen|Quellenangaben|Sources|References)(?:\*\*)?\s*:?\s*(?:\*\*)?\s*\n.*\Z",
    re.IGNORECASE | re.DOTALL,
)

SNIPPET_PROMPT_CHARS = 600


class ReferenceMap:
    """
    Ordered, 1-based id -> DedupedResult table.

    Ids are dense and follow the order the map was built with. Use
    ``build`` to get the canonical relevance/title ordering.
    """

    def __init__(self, entries: Sequence[DedupedResult] = ()):
        self._entries: Tuple[DedupedResult, ...] = tuple(entries)

    @classmethod
    def build(cls, results: Sequence[DedupedResult], preserve_order: bool = False) -> "ReferenceMap":
        """
        Args:
            results: Deduplicated evidence
            preserve_order: Keep the given order (e.g. MMR output) instead of
                sorting by relevance descending, title ascending
        """
        ordered = list(results) if preserve_order else sorted(results, key=sort_key)
        return cls(ordered)

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __contains__(self, ref_id: object) -> bool:
        return isinstance(ref_id, int) and 1 <= ref_id <= len(self._entries)

    def __getitem__(self, ref_id: int) -> DedupedResult:
        if ref_id not in self:
            raise KeyError(ref_id)
        return self._entries[ref_id - 1]

    def __iter__(self) -> Iterator[int]:
        return iter(range(1, len(self._entries) + 1))

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ReferenceMap) and self._entries == other._entries

    def get(self, ref_id: int) -> Optional[DedupedResult]:
        return self[ref_id] if ref_id in self else None

    def items(self) -> List[Tuple[int, DedupedResult]]:
        return list(enumerate(self._entries, 1))

    @property
    def distinct_documents(self) -> int:
        return len({r.document_key for r in self._entries})

    def to_prompt(self) -> str:
        """Reference listing for the synthesis prompt"""
        blocks = []
        for ref_id, r in self.items():
            header = f"[{ref_id}] {r.title}"
            if r.domain:
                header += f" ({r.domain})"
            snippet = r.snippet[:SNIPPET_PROMPT_CHARS]
            if len(r.snippet) > SNIPPET_PROMPT_CHARS:
                snippet += "..."
            blocks.append(f"{header}\n{snippet}")
        return "\n\n".join(blocks)

    def citations(self) -> List[Citation]:
        return [
            Citation(
                id=ref_id,
                title=r.title,
                url=r.url,
                snippet=r.snippet,
                source_type=r.kind,
            )
            for ref_id, r in self.items()
        ]


@dataclass
class RenumberedDraft:
    """Draft text whose markers follow first-appearance order"""
    text: str
    reference_map: ReferenceMap
    old_to_new: Dict[int, int] = field(default_factory=dict)
    dropped_markers: int = 0


def normalize_markers(text: str) -> str:
    """Split grouped markers: ``[1, 2]`` -> ``[1][2]``."""
    def _split(match: re.Match) -> str:
        ids = re.split(r"\s*[,;]\s*", match.group(1))
        return "".join(f"[{i}]" for i in ids)

    return _GROUPED_MARKER_RE.sub(_split, text)


def clean_draft(text: str) -> str:
    """Strip code fences and a trailing sources list the model added on its own."""
    text = _CODE_FENCE_RE.sub("", text)
    text = _SOURCES_SECTION_RE.sub("", text)
    return normalize_markers(text).strip()


def tidy_spacing(text: str) -> str:
    """Collapse whitespace left behind by removed markers."""
    text = re.sub(r"[ \t]+([.,;:!?])", r"\1", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    return text.strip()


def cited_ids(text: str) -> List[int]:
    """Marker ids in reading order, repeats included"""
    return [int(m) for m in MARKER_RE.findall(text)]


def renumber_citations(text: str, reference_map: ReferenceMap) -> RenumberedDraft:
    """
    Rewrite markers to first-appearance order.

    Markers pointing outside the map are removed and counted in
    ``dropped_markers``; validation treats them as ungrounded. The returned
    map holds only cited references, in their new order.
    """
    text = normalize_markers(text)
    old_to_new: Dict[int, int] = {}
    dropped = 0

    def _rewrite(match: re.Match) -> str:
        nonlocal dropped
        old = int(match.group(1))
        if old not in reference_map:
            dropped += 1
            return ""
        if old not in old_to_new:
            old_to_new[old] = len(old_to_new) + 1
        return f"[{old_to_new[old]}]"

    rewritten = MARKER_RE.sub(_rewrite, text)
    if dropped:
        rewritten = tidy_spacing(rewritten)

    new_map = ReferenceMap([reference_map[old] for old in old_to_new])
    return RenumberedDraft(
        text=rewritten,
        reference_map=new_map,
        old_to_new=old_to_new,
        dropped_markers=dropped,
    )
