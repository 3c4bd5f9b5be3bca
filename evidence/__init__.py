"""
Evidence Agents

Retrieval-augmented answers with inline citations.

Philosophy:
- Every claim in an answer points at a numbered source
- Failing sources shrink the answer, they never fail the request
- Unsupported citations are removed; mostly unsupported drafts are replaced
- "No relevant results" is an answer, not an error

Usage:
    from evidence.common import load_config, LLMClient
    from evidence.retriever import EvidencePipeline, ResearchAgent, build_coordinator
"""

__version__ = "0.1.0"
