"""Stored mailbox models.

A message's embedding is derived data: it is absent until the backfill computes
it and is never rewritten in place. Recomputing means clearing it and running
the backfill again.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator

PREVIEW_MAX_CHARS = 500
DEFAULT_BUCKET_COLOR = "#6B7280"


def _new_id() -> str:
    return uuid.uuid4().hex


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Bucket(BaseModel):
    """A user-defined or system default email category."""

    id: str = Field(default_factory=_new_id, description="Bucket ID")
    user_id: str = Field(description="Owning user ID")
    name: str = Field(min_length=1, description="Bucket name, unique per user")
    description: str | None = Field(
        default=None, description="Free text used as classification context"
    )
    color: str = Field(default=DEFAULT_BUCKET_COLOR, description="Display color tag")
    is_default: bool = Field(
        default=False, description="System buckets cannot be renamed or deleted"
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp",
    )


class Message(BaseModel):
    """One ingested email."""

    id: str = Field(default_factory=_new_id, description="Message ID")
    user_id: str = Field(description="Owning user ID")
    source_id: str = Field(description="External (Gmail) message ID, unique per user")

    subject: str = Field(default="", description="Subject header")
    sender_name: str | None = Field(default=None, description="Sender display name")
    sender_email: str | None = Field(default=None, description="Sender address")
    preview: str = Field(default="", description="Snippet used for display and embedding")
    body_snippet: str | None = Field(default=None, description="Leading part of the body")
    received_at: datetime = Field(description="Received timestamp")

    bucket_id: str | None = Field(default=None, description="Assigned bucket, None if unclassified")
    embedding: list[float] | None = Field(
        default=None,
        exclude=True,
        repr=False,
        description="Embedding vector, None until backfilled",
    )

    # Populated by repository reads; never persisted from here.
    bucket: Bucket | None = Field(default=None, description="Joined bucket")

    @field_validator("received_at")
    @classmethod
    def _normalize_received_at(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("preview", mode="before")
    @classmethod
    def _bound_preview(cls, v: object) -> str:
        if v is None:
            return ""
        return str(v)[:PREVIEW_MAX_CHARS]

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None
