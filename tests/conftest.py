"""Pytest configuration and shared fixtures."""

import sys
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path

import pytest
import structlog
from qdrant_client import QdrantClient

from email_triage.config import Settings
from email_triage.exceptions import EmbeddingError
from email_triage.index import MessageRepository, MessageVectorIndex
from email_triage.models import Message, ParsedFilter

DIMENSION = 4


class FakeEmbedder:
    """Embedder returning fixed vectors for texts containing known words."""

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        default: Sequence[float] = (0.0, 0.0, 0.0, 1.0),
        fail_on: str | None = None,
    ) -> None:
        self.dimension = DIMENSION
        self.vectors = vectors or {}
        self.default = list(default)
        self.fail_on = fail_on
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail_on is not None and self.fail_on in text:
            raise EmbeddingError(f"cannot embed {text!r}")
        lowered = text.lower()
        for word, vector in self.vectors.items():
            if word in lowered:
                return list(vector)
        return list(self.default)


class FakeParser:
    """Query parser returning canned filters, or raising a canned error."""

    def __init__(self, filters: ParsedFilter | None = None, error: Exception | None = None) -> None:
        self.filters = filters or ParsedFilter()
        self.error = error
        self.calls: list[tuple[str, datetime]] = []

    async def parse(self, query: str, now: datetime) -> ParsedFilter:
        self.calls.append((query, now))
        if self.error is not None:
            raise self.error
        return self.filters


@pytest.fixture(autouse=True)
def _structlog_to_stderr():
    """Keep log events off stdout, which CLI tests read as command output."""
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(file=sys.stderr))
    yield
    structlog.reset_defaults()


@pytest.fixture
def mock_settings(tmp_path: Path) -> Settings:
    """Provide settings pointing at temporary storage."""
    return Settings(
        ollama_host="http://test:11434",
        query_parser_model="test-model",
        embedding_model="test-embed",
        embedding_dimension=DIMENSION,
        max_retries=0,
        database_path=tmp_path / "triage.sqlite3",
        qdrant_path=tmp_path / "vectors",
        qdrant_collection="test_messages",
        result_page_size=10,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def repo(tmp_path: Path) -> MessageRepository:
    """Provide an initialized SQLite repository."""
    repository = MessageRepository(tmp_path / "triage.sqlite3")
    repository.initialize()
    return repository


@pytest.fixture
def vector_index() -> MessageVectorIndex:
    """Provide an in-memory Qdrant index."""
    index = MessageVectorIndex(QdrantClient(location=":memory:"), "test_messages", DIMENSION)
    index.ensure_collection()
    return index


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """Build messages with sensible defaults."""

    def _make(
        message_id: str,
        received_at: datetime,
        user_id: str = "user-1",
        subject: str = "Hello",
        sender_name: str | None = "Someone",
        sender_email: str | None = "someone@example.com",
        preview: str = "",
        body_snippet: str | None = None,
        bucket_id: str | None = None,
    ) -> Message:
        return Message(
            id=message_id,
            user_id=user_id,
            source_id=f"gmail-{message_id}",
            subject=subject,
            sender_name=sender_name,
            sender_email=sender_email,
            preview=preview,
            body_snippet=body_snippet,
            received_at=received_at,
            bucket_id=bucket_id,
        )

    return _make


@pytest.fixture
def store_embedding(
    repo: MessageRepository, vector_index: MessageVectorIndex
) -> Callable[[Message, Sequence[float]], None]:
    """Persist an embedding the way the backfill does."""

    def _store(message: Message, vector: Sequence[float]) -> None:
        vector_index.upsert(message.id, message.user_id, vector)
        assert repo.set_embedding(message.id, vector)

    return _store


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
