"""
Embedding Service

Wraps an injected embedding function and provides the similarity math
used by the diversifier. The embedding model itself is external; this
module only sees vectors.
"""

import logging
from typing import Callable, List, Optional, Sequence

import numpy as np

logger = logging.getLogger("evidence.common.embedding_service")

EmbedFn = Callable[[List[str]], Sequence[Sequence[float]]]


class EmbeddingService:
    """
    Embedding helper for the retriever.

    Constructed explicitly with the embedding function it should use.
    Passing ``None`` gives an unavailable service; callers then fall back
    to lexical similarity.
    """

    def __init__(self, embed_fn: Optional[EmbedFn] = None):
        self._embed_fn = embed_fn

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._embed_fn is not None

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of L2-normalized embedding vectors
        """
        if not self._embed_fn:
            raise RuntimeError("Embedding function not configured")

        if not texts:
            return []

        matrix = np.asarray(self._embed_fn(list(texts)), dtype=float)
        if matrix.ndim != 2 or matrix.shape[0] != len(texts):
            raise ValueError(
                f"Embedding function returned shape {matrix.shape} for {len(texts)} texts"
            )

        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return (matrix / norms).tolist()

    def cosine_similarity(self, vec1: Sequence[float], vec2: Sequence[float]) -> float:
        """
        Compute cosine similarity between two vectors.

        Returns:
            Cosine similarity score clamped to 0.0 to 1.0
        """
        v1 = np.asarray(vec1, dtype=float)
        v2 = np.asarray(vec2, dtype=float)

        if v1.shape != v2.shape:
            raise ValueError(f"Vector dimension mismatch: {v1.shape} vs {v2.shape}")

        denom = float(np.linalg.norm(v1) * np.linalg.norm(v2))
        if denom == 0.0:
            return 0.0
        similarity = float(np.dot(v1, v2)) / denom

        # Clamp to valid range (numerical precision issues)
        return max(0.0, min(1.0, similarity))

    def similarity_matrix(self, texts: List[str]) -> Optional[np.ndarray]:
        """Pairwise cosine similarities for ``texts``, or None on failure."""
        if not self.is_available or not texts:
            return None
        try:
            matrix = np.asarray(self.embed(texts))
        except Exception as e:
            logger.warning("Embedding failed, falling back to lexical similarity: %s", e)
            return None
        return np.clip(matrix @ matrix.T, 0.0, 1.0)
