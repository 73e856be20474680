"""Embedding provider.

Turns a search topic or a message into a fixed-length vector via Ollama.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from email_triage.exceptions import EmbeddingError
from email_triage.models import Message
from email_triage.ollama import OllamaClient

logger = structlog.get_logger()


class Embedder(Protocol):
    """Anything that maps text to a vector of ``dimension`` floats."""

    dimension: int

    async def embed(self, text: str) -> list[float]: ...


def build_embedding_text(message: Message) -> str:
    """Return the text embedded for a message: subject, sender name, preview."""

    parts = [message.subject or "", message.sender_name or "", message.preview or ""]
    return "\n".join(parts).strip()


class EmbeddingProvider:
    """Ollama-backed :class:`Embedder` with dimension checking."""

    def __init__(self, client: OllamaClient, dimension: int, model: str | None = None) -> None:
        self._client = client
        self.dimension = dimension
        self._model = model

    async def embed(self, text: str) -> list[float]:
        """Embed ``text``.

        Raises:
            EmbeddingError: If ``text`` is blank or the model returns a vector of
                the wrong size.
            ProviderUnavailableError: If Ollama cannot be reached.
        """

        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")

        vector = await self._client.embed(text, model=self._model)
        if len(vector) != self.dimension:
            logger.error(
                "embedding_dimension_mismatch",
                expected=self.dimension,
                actual=len(vector),
            )
            raise EmbeddingError(
                f"Embedding model returned {len(vector)} dimensions, expected {self.dimension}"
            )
        return vector
