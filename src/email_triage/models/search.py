"""Search request and response models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from email_triage.models.message import Message

_NULL_WORDS = frozenset({"", "null", "none", "n/a"})


class SearchStrategy(str, Enum):
    """How a search was satisfied."""

    STRUCTURED = "structured"
    VECTOR = "vector"
    HYBRID = "hybrid"
    KEYWORD = "keyword"
    RECENT = "recent"


class Timeframe(BaseModel):
    """Received-time window; either bound may be open."""

    start: datetime | None = Field(default=None, description="Inclusive lower bound")
    end: datetime | None = Field(default=None, description="Inclusive upper bound")

    @field_validator("start", "end", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and v.strip().lower() in _NULL_WORDS:
            return None
        return v

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None


class ParsedFilter(BaseModel):
    """Structured reading of a free-text query.

    All fields may be None; an empty filter means nothing could be extracted.
    """

    model_config = ConfigDict(populate_by_name=True)

    topic: str | None = Field(default=None, description="Semantic subject of the query")
    timeframe: Timeframe | None = Field(default=None, description="Received-time window")
    sender: str | None = Field(default=None, description="Sender name or address fragment")
    bucket: str | None = Field(default=None, description="Bucket name")
    has_attachment: bool | None = Field(
        default=None,
        alias="hasAttachment",
        description="Whether the query asks for attachments",
    )

    @field_validator("topic", "sender", "bucket", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            if v.lower() in _NULL_WORDS:
                return None
        return v

    @field_validator("timeframe", mode="before")
    @classmethod
    def _drop_unstructured_timeframe(cls, v: Any) -> Any:
        # Models sometimes echo the phrase ("last week") instead of a window.
        if isinstance(v, str):
            return None
        return v

    @field_validator("timeframe")
    @classmethod
    def _drop_open_timeframe(cls, v: Timeframe | None) -> Timeframe | None:
        if v is not None and v.is_open:
            return None
        return v

    @property
    def has_structured(self) -> bool:
        return self.sender is not None or self.timeframe is not None or self.bucket is not None

    @property
    def has_topic(self) -> bool:
        return self.topic is not None


class SearchHit(BaseModel):
    """A message in a result set, with its similarity when vector ranked."""

    message: Message
    similarity: float | None = Field(default=None, description="Cosine similarity to the topic")


class SearchResult(BaseModel):
    """Ranked, bounded answer to a search."""

    emails: list[SearchHit] = Field(default_factory=list)
    total_count: int = Field(ge=0, description="Number of messages the retriever found")
    strategy: SearchStrategy
    query: str
    filters: ParsedFilter | None = Field(default=None, description="Filters the search ran with")


class BackfillReport(BaseModel):
    """Outcome of one embedding backfill run."""

    processed: int = Field(ge=0, description="Messages that received an embedding in this run")
    failed: int = Field(default=0, ge=0, description="Messages whose embedding failed")
    skipped: int = Field(default=0, ge=0, description="Messages with nothing to embed, excluded from later runs")
    remaining: int = Field(ge=0, description="Messages still waiting for an embedding")


class EmbeddingCoverage(BaseModel):
    """How much of a user's mailbox is searchable by similarity."""

    total: int = Field(ge=0, description="Messages stored for the user")
    with_embeddings: int = Field(ge=0, description="Messages that have an embedding")
    percentage: int = Field(ge=0, le=100, description="Rounded share of embedded messages")
    remaining: int = Field(ge=0, description="Messages without an embedding")
