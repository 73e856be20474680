"""Message and topic embeddings."""

from .backfill import EmbeddingBackfill
from .provider import Embedder, EmbeddingProvider, build_embedding_text

__all__ = ["Embedder", "EmbeddingBackfill", "EmbeddingProvider", "build_embedding_text"]
