"""
Answer and Plan Schemas

Caller-facing response models plus the strict schemas LLM output must
satisfy before it is allowed to drive planning.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Depth(str, Enum):
    """Research depth"""
    QUICK = "quick"
    THOROUGH = "thorough"

    @property
    def max_steps(self) -> int:
        return 3 if self is Depth.QUICK else 5


class Tool(str, Enum):
    """Search tools a research plan can call"""
    DOCUMENT_SEARCH = "document_search"
    WEB_SEARCH = "web_search"
    PRIOR_RESEARCH = "prior_research"


class SynthesisStrategy(str, Enum):
    FACTUAL = "factual_synthesis"
    POLICY = "policy_overview"
    BIOGRAPHICAL = "biographical"


# ============================================================================
# Plans
# ============================================================================

class SearchStep(BaseModel):
    """A planned search, never mutated after planning"""
    model_config = ConfigDict(frozen=True)

    tool: Tool
    query: str = Field(..., min_length=1)
    priority: int = Field(default=2, ge=1, le=5)
    rationale: str = ""


class ResearchPlan(BaseModel):
    """Ordered search steps built once per research request"""
    model_config = ConfigDict(frozen=True)

    steps: Tuple[SearchStep, ...] = ()
    strategy: SynthesisStrategy = SynthesisStrategy.FACTUAL
    depth: Depth = Depth.QUICK


class LLMPlanStep(BaseModel):
    """Strict shape of one step in a model-proposed plan"""
    model_config = ConfigDict(extra="forbid")

    tool: Literal["document_search", "web_search", "prior_research"]
    query: str = Field(..., min_length=1, max_length=300)
    priority: int = Field(default=2, ge=1, le=5)
    rationale: str = Field(default="", max_length=300)


class LLMPlan(BaseModel):
    """Strict shape of a model-proposed research plan"""
    model_config = ConfigDict(extra="forbid")

    steps: List[LLMPlanStep] = Field(default_factory=list, max_length=5)
    strategy: Literal["factual_synthesis", "policy_overview", "biographical"] = "factual_synthesis"


class LLMDecomposition(BaseModel):
    """Strict shape of a model-proposed query decomposition"""
    model_config = ConfigDict(extra="forbid")

    subqueries: List[str] = Field(default_factory=list, max_length=4)
    complexity: Literal["simple", "moderate", "complex"] = "moderate"


# ============================================================================
# Responses
# ============================================================================

class Citation(BaseModel):
    """A reference the answer text points into with [id]"""
    id: int = Field(..., ge=1)
    title: str
    url: Optional[str] = None
    snippet: str = ""
    source_type: str = ""


class SearchStepResult(BaseModel):
    """Outcome of one dispatched retrieval request"""
    source_id: str
    query: str
    status: Literal["ok", "empty", "failed", "timeout"]
    hit_count: int = 0
    elapsed_ms: float = 0.0
    error: Optional[str] = None


class AnswerResponse(BaseModel):
    """What callers receive from answer() and research()"""
    text: str
    citations: List[Citation] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    confidence_label: Literal["high", "medium", "low"] = "low"
    search_steps: List[SearchStepResult] = Field(default_factory=list)
    follow_up_questions: List[str] = Field(default_factory=list)
    trace: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
