"""
Retrieval Schemas

RawHit is a tagged union with one variant per source type. Variants are
built only at the adapter boundary and are frozen afterwards; everything
downstream reads them, nothing rewrites them.
"""

from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ============================================================================
# Enums
# ============================================================================

class SourceType(str, Enum):
    """Kinds of retrieval backends"""
    DOCUMENT = "document"
    WEB = "web"
    PRIOR_RESEARCH = "prior_research"


class Complexity(str, Enum):
    """Query complexity, drives recall depth"""
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"

    @property
    def recall_limit(self) -> int:
        return {"simple": 10, "moderate": 20, "complex": 30}[self.value]


# Content-type tags treated as biographical evidence by the template synthesizer
PERSON_CONTENT_TYPES = frozenset({"person", "biography", "profile"})


# ============================================================================
# Hits
# ============================================================================

class _HitBase(BaseModel):
    """Fields shared by every hit variant"""
    model_config = ConfigDict(frozen=True)

    source_id: str = Field(..., min_length=1, description="Adapter that produced the hit")
    title: str = ""
    snippet: str = ""
    url: Optional[str] = None
    score: Optional[float] = Field(default=None, description="Raw backend score")
    content_type: Optional[str] = None

    @property
    def is_person(self) -> bool:
        return (self.content_type or "").lower() in PERSON_CONTENT_TYPES

    @property
    def domain(self) -> str:
        """Host of the hit URL without a leading www., empty without URL"""
        if not self.url:
            return ""
        host = urlparse(self.url).netloc.lower()
        return host[4:] if host.startswith("www.") else host


class DocumentHit(_HitBase):
    """A chunk from an internal document collection"""
    source_type: Literal["document"] = "document"
    document_id: str = ""
    chunk_index: int = 0
    collection: str = ""


class WebHit(_HitBase):
    """A web search result"""
    source_type: Literal["web"] = "web"
    rank: int = Field(default=1, ge=1)
    engine: Optional[str] = None
    crawled: bool = False


class PriorResearchHit(_HitBase):
    """A finding from earlier research runs"""
    source_type: Literal["prior_research"] = "prior_research"
    research_id: str = ""


RawHit = Annotated[
    Union[DocumentHit, WebHit, PriorResearchHit],
    Field(discriminator="source_type"),
]


# ============================================================================
# Requests
# ============================================================================

class RetrievalRequest(BaseModel):
    """One (subquery, source) pair with its tuning, immutable once dispatched"""
    model_config = ConfigDict(frozen=True)

    query: str = Field(..., min_length=1)
    source_id: str = Field(..., min_length=1)
    vector_weight: float = Field(ge=0.0, le=1.0)
    text_weight: float = Field(ge=0.0, le=1.0)
    threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    limit: int = Field(default=20, gt=0)
    filters: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "RetrievalRequest":
        if abs(self.vector_weight + self.text_weight - 1.0) > 1e-6:
            raise ValueError(
                f"vector_weight + text_weight must equal 1, got "
                f"{self.vector_weight} + {self.text_weight}"
            )
        return self
