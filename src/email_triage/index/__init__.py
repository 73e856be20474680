"""Message storage.

This package contains the relational message/bucket store and the vector index
used for nearest-neighbor queries over message embeddings.
"""

from .repository import DEFAULT_BUCKETS, MessageQuery, MessageRepository
from .vectors import MessageVectorIndex, VectorMatch, point_id_for_message

__all__ = [
    "DEFAULT_BUCKETS",
    "MessageQuery",
    "MessageRepository",
    "MessageVectorIndex",
    "VectorMatch",
    "point_id_for_message",
]
