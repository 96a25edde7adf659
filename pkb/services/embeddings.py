"""
Embedding service using sentence-transformers.

Used to embed fact values for semantic dedup. Model is configured via
settings.embedding_model and cached at settings.embedding_cache_dir.

NOTE: sentence_transformers is imported lazily to avoid slow startup.
This allows tests to import this module without loading the ML library.
"""
from typing import TYPE_CHECKING, Any, Sequence

import numpy as np

from config.settings import settings

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer


class EmbeddingService:
    """Service for generating text embeddings."""

    def __init__(self, model_name: str = None, cache_dir: str = None):
        """
        Initialize embedding service.

        Args:
            model_name: Name of the sentence-transformers model to use.
            cache_dir: Directory to cache model files (defaults to settings).
        """
        self.model_name = model_name or settings.embedding_model
        self.cache_dir = cache_dir or settings.embedding_cache_dir
        self._model: Any = None

    @property
    def model(self) -> "SentenceTransformer":
        """Lazy-load the model."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(
                self.model_name,
                cache_folder=self.cache_dir,
            )
        return self._model

    def embed_text(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            List of floats representing the embedding vector
        """
        embedding = self.model.encode(text, convert_to_numpy=True)
        return embedding.tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Returns 0.0 when either vector has zero norm or the dimensions differ
    (e.g. embeddings stored by a previous model).
    """
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        return 0.0
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


# Singleton instance
_embedding_service: EmbeddingService | None = None


def get_embedding_service(model_name: str = None) -> EmbeddingService:
    """
    Get or create the embedding service singleton.

    Args:
        model_name: Model to use (only used on first call, defaults to settings)

    Returns:
        EmbeddingService instance
    """
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService(model_name)
    return _embedding_service


def reset_embedding_service() -> None:
    """
    Reset the embedding service singleton.

    For testing only - allows tests to start with fresh state.
    """
    global _embedding_service
    _embedding_service = None
