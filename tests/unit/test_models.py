"""Unit tests for data models."""

from datetime import datetime, timedelta, timezone

from email_triage.models import PREVIEW_MAX_CHARS, Message, ParsedFilter, SearchStrategy, Timeframe


class TestMessage:
    """Test suite for Message model."""

    def test_preview_is_bounded(self) -> None:
        """Test that long previews are truncated."""
        message = Message(
            user_id="u",
            source_id="s",
            preview="x" * (PREVIEW_MAX_CHARS + 100),
            received_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )

        assert len(message.preview) == PREVIEW_MAX_CHARS

    def test_received_at_is_normalized_to_utc(self) -> None:
        """Test that naive timestamps are read as UTC and aware ones converted."""
        naive = Message(user_id="u", source_id="a", received_at=datetime(2026, 1, 1, 12, 0))
        offset = Message(
            user_id="u",
            source_id="b",
            received_at=datetime(2026, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2))),
        )

        assert naive.received_at == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert offset.received_at.utcoffset() == timedelta(0)
        assert offset.received_at.hour == 12

    def test_embedding_is_optional_and_not_serialized(self) -> None:
        """Test that the embedding starts absent and stays out of dumps."""
        message = Message(user_id="u", source_id="s", received_at=datetime(2026, 1, 1))

        assert message.embedding is None
        assert message.has_embedding is False

        embedded = message.model_copy(update={"embedding": [0.1, 0.2]})
        assert embedded.has_embedding is True
        assert "embedding" not in embedded.model_dump()


class TestParsedFilter:
    """Test suite for ParsedFilter model."""

    def test_empty_filter_is_valid(self) -> None:
        """Test that an all-null filter is accepted."""
        filters = ParsedFilter()

        assert filters.has_structured is False
        assert filters.has_topic is False

    def test_null_words_become_none(self) -> None:
        """Test that model placeholders like 'null' are treated as absent."""
        filters = ParsedFilter.model_validate(
            {"topic": "null", "sender": "  ", "bucket": "None", "hasAttachment": None}
        )

        assert filters.topic is None
        assert filters.sender is None
        assert filters.bucket is None

    def test_has_attachment_alias(self) -> None:
        """Test that the camelCase key from the model is accepted."""
        filters = ParsedFilter.model_validate({"hasAttachment": True})

        assert filters.has_attachment is True
        assert filters.has_structured is False

    def test_phrase_timeframe_is_dropped(self) -> None:
        """Test that a timeframe echoed as text is ignored."""
        filters = ParsedFilter.model_validate({"timeframe": "last week"})

        assert filters.timeframe is None

    def test_open_timeframe_is_dropped(self) -> None:
        """Test that a timeframe without bounds counts as no timeframe."""
        filters = ParsedFilter.model_validate({"timeframe": {"start": None, "end": ""}})

        assert filters.timeframe is None
        assert filters.has_structured is False

    def test_timeframe_parses_iso_strings(self) -> None:
        """Test that ISO bounds are parsed and naive ones read as UTC."""
        filters = ParsedFilter.model_validate(
            {"timeframe": {"start": "2026-02-03T00:00:00", "end": "2026-02-10T12:00:00Z"}}
        )

        assert filters.timeframe == Timeframe(
            start=datetime(2026, 2, 3, tzinfo=timezone.utc),
            end=datetime(2026, 2, 10, 12, tzinfo=timezone.utc),
        )
        assert filters.has_structured is True

    def test_strategy_values(self) -> None:
        """Test the strategy labels exposed to callers."""
        assert [s.value for s in SearchStrategy] == [
            "structured",
            "vector",
            "hybrid",
            "keyword",
            "recent",
        ]
