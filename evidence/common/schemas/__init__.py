"""
Evidence Schemas

Hit, request, plan and answer models shared by the retriever.
"""

from .hits import (
    RawHit,
    DocumentHit,
    WebHit,
    PriorResearchHit,
    RetrievalRequest,
    SourceType,
    Complexity,
    PERSON_CONTENT_TYPES,
)
from .answer import (
    AnswerResponse,
    Citation,
    SearchStep,
    SearchStepResult,
    ResearchPlan,
    LLMPlan,
    LLMPlanStep,
    LLMDecomposition,
    Depth,
    Tool,
    SynthesisStrategy,
)

__all__ = [
    "RawHit",
    "DocumentHit",
    "WebHit",
    "PriorResearchHit",
    "RetrievalRequest",
    "SourceType",
    "Complexity",
    "PERSON_CONTENT_TYPES",
    "AnswerResponse",
    "Citation",
    "SearchStep",
    "SearchStepResult",
    "ResearchPlan",
    "LLMPlan",
    "LLMPlanStep",
    "LLMDecomposition",
    "Depth",
    "Tool",
    "SynthesisStrategy",
]
