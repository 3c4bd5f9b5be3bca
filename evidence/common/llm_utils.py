"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import logging
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger("evidence.common.llm_utils")

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_llm_json(raw: str) -> dict:
    """Parse JSON from an LLM response, handling code fences and preamble text.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Direct json.loads on the raw string
    3. Extract substring between first '{' and last '}', then json.loads
    4. Return empty dict
    """
    if not raw:
        return {}

    text = raw.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        text = "\n".join(lines)

    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else {}
    except json.JSONDecodeError:
        pass

    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            parsed = json.loads(raw[start:end])
            return parsed if isinstance(parsed, dict) else {}
        except json.JSONDecodeError:
            pass

    return {}


def parse_llm_model(raw: str, model: Type[ModelT]) -> Optional[ModelT]:
    """Parse an LLM response into a strict pydantic model.

    Fails closed: anything that is not valid JSON matching ``model``
    yields None instead of raising.
    """
    data = parse_llm_json(raw)
    if not data:
        return None
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning("LLM output rejected by %s schema: %d error(s)", model.__name__, e.error_count())
        return None
