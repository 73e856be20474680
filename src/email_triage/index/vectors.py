"""Qdrant-backed nearest-neighbor index over message embeddings.

One point per embedded message. Point ids are deterministic (uuid5 of the
message id), so re-indexing a message overwrites its point instead of adding
a second one.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass

import structlog
from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    HasIdCondition,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from email_triage.config import Settings
from email_triage.exceptions import EmbeddingError, VectorIndexError

logger = structlog.get_logger()


@dataclass(frozen=True)
class VectorMatch:
    """A nearest-neighbor hit."""

    message_id: str
    similarity: float


def point_id_for_message(message_id: str) -> str:
    """Return the deterministic Qdrant point id for a message id."""

    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"email-triage:{message_id}"))


class MessageVectorIndex:
    """Cosine-similarity index scoped by user id."""

    def __init__(self, client: QdrantClient, collection_name: str, dimension: int) -> None:
        self._client = client
        self._collection = collection_name
        self._dimension = dimension
        self._ready = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "MessageVectorIndex":
        if settings.qdrant_host:
            client = QdrantClient(host=settings.qdrant_host, port=settings.qdrant_port)
        else:
            client = QdrantClient(path=str(settings.qdrant_path))
        return cls(client, settings.qdrant_collection, settings.embedding_dimension)

    @property
    def dimension(self) -> int:
        return self._dimension

    def ensure_collection(self) -> None:
        """Create the collection, or verify an existing one has the right size."""

        if self._ready:
            return

        try:
            if not self._client.collection_exists(self._collection):
                self._client.create_collection(
                    collection_name=self._collection,
                    vectors_config=VectorParams(size=self._dimension, distance=Distance.COSINE),
                )
                self._client.create_payload_index(
                    collection_name=self._collection,
                    field_name="user_id",
                    field_schema=PayloadSchemaType.KEYWORD,
                )
                logger.info(
                    "vector_collection_created",
                    collection=self._collection,
                    dimension=self._dimension,
                )
            else:
                info = self._client.get_collection(self._collection)
                size = getattr(info.config.params.vectors, "size", None)
                if size is not None and int(size) != self._dimension:
                    raise VectorIndexError(
                        f"Qdrant collection '{self._collection}' has vector size {size}, "
                        f"but {self._dimension} is configured. Recreate the collection or "
                        "use an embedding model with matching dimensions."
                    )
        except VectorIndexError:
            raise
        except Exception as exc:  # noqa: BLE001 - qdrant raises transport-specific errors
            raise VectorIndexError(f"Qdrant collection setup failed: {exc}") from exc

        self._ready = True

    def upsert(self, message_id: str, user_id: str, vector: Sequence[float]) -> None:
        if len(vector) != self._dimension:
            raise EmbeddingError(
                f"Embedding size mismatch: got {len(vector)}, expected {self._dimension}"
            )

        self.ensure_collection()
        try:
            self._client.upsert(
                collection_name=self._collection,
                points=[
                    PointStruct(
                        id=point_id_for_message(message_id),
                        vector=[float(x) for x in vector],
                        payload={"message_id": message_id, "user_id": user_id},
                    )
                ],
            )
        except Exception as exc:  # noqa: BLE001
            raise VectorIndexError(f"Qdrant upsert failed for {message_id}: {exc}") from exc

    def delete(self, message_id: str) -> None:
        self.ensure_collection()
        try:
            self._client.delete(
                collection_name=self._collection,
                points_selector=PointIdsList(points=[point_id_for_message(message_id)]),
            )
        except Exception as exc:  # noqa: BLE001
            raise VectorIndexError(f"Qdrant delete failed for {message_id}: {exc}") from exc

    def search(
        self,
        user_id: str,
        vector: Sequence[float],
        *,
        limit: int,
        message_ids: Sequence[str] | None = None,
    ) -> list[VectorMatch]:
        """Rank the user's embedded messages by cosine similarity to ``vector``.

        Args:
            user_id: Owner whose messages are searched.
            vector: Query embedding.
            limit: Maximum number of matches.
            message_ids: If given, only these messages are ranked.

        Returns:
            Matches ordered by similarity, highest first.
        """

        if message_ids is not None and not message_ids:
            return []

        must: list = [FieldCondition(key="user_id", match=MatchValue(value=user_id))]
        if message_ids is not None:
            must.append(HasIdCondition(has_id=[point_id_for_message(i) for i in message_ids]))

        self.ensure_collection()
        try:
            response = self._client.query_points(
                collection_name=self._collection,
                query=[float(x) for x in vector],
                query_filter=Filter(must=must),
                limit=limit,
                with_payload=True,
            )
        except Exception as exc:  # noqa: BLE001
            raise VectorIndexError(f"Qdrant query failed: {exc}") from exc

        return [
            VectorMatch(message_id=str(point.payload["message_id"]), similarity=float(point.score))
            for point in response.points
            if point.payload and "message_id" in point.payload
        ]
