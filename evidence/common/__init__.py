"""
Evidence Agents Common Module

Shared infrastructure for the retriever: configuration, LLM access,
language detection and embedding similarity.
"""

from .config import EvidenceConfig, ConfigurationError, load_config
from .embedding_service import EmbeddingService
from .llm_client import LLMClient

__all__ = [
    "EvidenceConfig",
    "ConfigurationError",
    "load_config",
    "EmbeddingService",
    "LLMClient",
]
