"""Data models for Email Triage.

This module contains Pydantic models for data validation and serialization.
"""

from .message import DEFAULT_BUCKET_COLOR, PREVIEW_MAX_CHARS, Bucket, Message
from .search import (
    BackfillReport,
    EmbeddingCoverage,
    ParsedFilter,
    SearchHit,
    SearchResult,
    SearchStrategy,
    Timeframe,
)

__all__ = [
    "BackfillReport",
    "Bucket",
    "DEFAULT_BUCKET_COLOR",
    "EmbeddingCoverage",
    "Message",
    "PREVIEW_MAX_CHARS",
    "ParsedFilter",
    "SearchHit",
    "SearchResult",
    "SearchStrategy",
    "Timeframe",
]
