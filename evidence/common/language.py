"""
Language Detection Service

Per-question language detection using langdetect + a German marker fallback.
Used to pick the answer language the synthesizer is instructed to write in.
"""

import re
import logging
from dataclasses import dataclass

from langdetect import DetectorFactory, LangDetectException, detect_langs

from .config import SUPPORTED_LANGUAGES

logger = logging.getLogger("evidence.common.language")

# Seed langdetect for deterministic results
DetectorFactory.seed = 0

_UMLAUT_RE = re.compile(r"[äöüÄÖÜß]")

_GERMAN_MARKERS = {
    "der", "die", "das", "und", "ist", "sind", "nicht", "mit", "für", "zum",
    "zur", "was", "wie", "wer", "warum", "welche", "welcher", "sagt", "gibt",
    "ein", "eine", "auf", "auch", "über", "bei", "wird", "werden",
}

_ENGLISH_MARKERS = {
    "the", "and", "is", "are", "what", "how", "who", "why", "which", "does",
    "about", "with", "for", "of", "say", "says", "there",
}


@dataclass(frozen=True)
class LanguageInfo:
    """Detected language information"""
    code: str           # ISO 639-1: "de", "en", ...
    confidence: float   # 0.0~1.0
    method: str         # "langdetect", "markers", "default"


def _detect_by_markers(text: str) -> LanguageInfo:
    """Count German vs English function words; umlauts tip the balance."""
    words = re.findall(r"\w+", text.lower())
    german = sum(1 for w in words if w in _GERMAN_MARKERS)
    english = sum(1 for w in words if w in _ENGLISH_MARKERS)
    if _UMLAUT_RE.search(text):
        german += 2

    if german == english:
        return LanguageInfo(code="", confidence=0.0, method="markers")
    if german > english:
        return LanguageInfo(code="de", confidence=0.6, method="markers")
    return LanguageInfo(code="en", confidence=0.6, method="markers")


def detect_language(text: str) -> LanguageInfo:
    """Detect language of input text.

    Uses the langdetect library for text of reasonable length and a
    function-word heuristic for short text, where langdetect is unreliable.

    Args:
        text: Input text to detect language for

    Returns:
        LanguageInfo with detected language code and confidence. The code is
        empty when nothing could be determined.
    """
    if not text or not text.strip():
        return LanguageInfo(code="", confidence=0.0, method="default")

    cleaned = text.strip()

    if len(cleaned) < 20:
        return _detect_by_markers(cleaned)

    try:
        results = detect_langs(cleaned)
    except LangDetectException as e:
        logger.debug("langdetect failed on %r: %s", cleaned[:40], e)
        return _detect_by_markers(cleaned)

    if not results:
        return _detect_by_markers(cleaned)

    top = results[0]
    return LanguageInfo(code=top.lang, confidence=round(top.prob, 4), method="langdetect")


def resolve_answer_language(text: str, default: str = "de") -> str:
    """Pick the language the answer is written in.

    Only supported languages are ever returned; anything else, and any
    low-confidence detection, falls back to ``default``.
    """
    info = detect_language(text)
    if info.code in SUPPORTED_LANGUAGES and info.confidence >= 0.5:
        return info.code
    return default
