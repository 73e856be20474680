"""Unit tests for the retrieval strategies."""

from __future__ import annotations

import threading

import pytest
from conftest import FakeEmbedder, utc

from email_triage.exceptions import ValidationError
from email_triage.index import MessageRepository, MessageVectorIndex
from email_triage.models import ParsedFilter, SearchStrategy, Timeframe
from email_triage.search import (
    FallbackChain,
    HybridRetriever,
    KeywordRetriever,
    RecentRetriever,
    StructuredRetriever,
    VectorRetriever,
)

BUDGET = [1.0, 0.0, 0.0, 0.0]
TRAVEL = [0.0, 1.0, 0.0, 0.0]
MOSTLY_BUDGET = [0.9, 0.3, 0.0, 0.0]


def _vector_chain(repo, vector_index, embedder, threshold: float = 0.3) -> FallbackChain:
    return FallbackChain(
        VectorRetriever(repo, vector_index, embedder, limit=50, similarity_threshold=threshold),
        KeywordRetriever(repo, limit=50),
    )


class TestStructuredRetriever:
    """Test suite for StructuredRetriever."""

    @pytest.mark.asyncio
    async def test_sender_and_timeframe(self, repo: MessageRepository, make_message) -> None:
        """Test that structured conditions are conjunctive and newest first."""
        repo.upsert_messages(
            [
                make_message("old", utc(2026, 1, 20), sender_name="Sarah Connor"),
                make_message("in-1", utc(2026, 2, 4), sender_email="SARAH@corp.com"),
                make_message("in-2", utc(2026, 2, 8), sender_name="Sarah Connor"),
                make_message("bob", utc(2026, 2, 6), sender_name="Bob", sender_email="bob@corp.com"),
            ]
        )
        filters = ParsedFilter(sender="sarah", timeframe=Timeframe(start=utc(2026, 2, 3), end=utc(2026, 2, 10)))

        result = await StructuredRetriever(repo, limit=50).retrieve("user-1", filters)

        assert result.strategy == SearchStrategy.STRUCTURED
        assert [h.message.id for h in result.hits] == ["in-2", "in-1"]
        assert result.total_count == 2

    @pytest.mark.asyncio
    async def test_bucket_name_resolves_case_insensitively(self, repo: MessageRepository, make_message) -> None:
        """Test that bucket names match regardless of case and join the bucket."""
        bucket = repo.create_bucket("user-1", "Receipts")
        repo.upsert_messages(
            [
                make_message("filed", utc(2026, 2, 1), bucket_id=bucket.id),
                make_message("loose", utc(2026, 2, 2)),
            ]
        )

        result = await StructuredRetriever(repo, limit=50).retrieve("user-1", ParsedFilter(bucket="receipts"))

        assert [h.message.id for h in result.hits] == ["filed"]
        assert result.hits[0].message.bucket is not None
        assert result.hits[0].message.bucket.name == "Receipts"

    @pytest.mark.asyncio
    async def test_unknown_bucket_adds_no_condition(self, repo: MessageRepository, make_message) -> None:
        """Test that an unresolvable bucket name neither errors nor excludes everything."""
        repo.upsert_messages([make_message("a", utc(2026, 2, 1)), make_message("b", utc(2026, 2, 2))])

        result = await StructuredRetriever(repo, limit=50).retrieve("user-1", ParsedFilter(bucket="Nope"))

        assert [h.message.id for h in result.hits] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_deleted_bucket_name_no_longer_filters(self, repo: MessageRepository, make_message) -> None:
        """Test searching by a deleted bucket's name after its messages were unassigned."""
        bucket = repo.create_bucket("user-1", "Travel")
        repo.upsert_messages(
            [
                make_message("trip", utc(2026, 2, 1), bucket_id=bucket.id),
                make_message("other", utc(2026, 2, 2)),
            ]
        )
        repo.delete_bucket("user-1", bucket.id)

        result = await StructuredRetriever(repo, limit=50).retrieve("user-1", ParsedFilter(bucket="Travel"))

        assert [h.message.id for h in result.hits] == ["other", "trip"]
        assert all(h.message.bucket_id is None for h in result.hits)

    @pytest.mark.asyncio
    async def test_limit(self, repo: MessageRepository, make_message) -> None:
        """Test that results are capped."""
        repo.upsert_messages([make_message(f"m{i}", utc(2026, 2, i), sender_name="Sarah") for i in range(1, 8)])

        result = await StructuredRetriever(repo, limit=3).retrieve("user-1", ParsedFilter(sender="sarah"))

        assert [h.message.id for h in result.hits] == ["m7", "m6", "m5"]


class TestVectorRetriever:
    """Test suite for VectorRetriever and its keyword fallback."""

    @pytest.mark.asyncio
    async def test_ranks_above_threshold(
        self, repo: MessageRepository, vector_index: MessageVectorIndex, make_message, store_embedding
    ) -> None:
        """Test that matches are ordered by similarity and carry their score."""
        messages = [
            make_message("budget", utc(2026, 2, 1), subject="Q3 budget"),
            make_message("mostly", utc(2026, 2, 2), subject="Budget trip"),
            make_message("travel", utc(2026, 2, 3), subject="Flights"),
        ]
        repo.upsert_messages(messages)
        store_embedding(messages[0], BUDGET)
        store_embedding(messages[1], MOSTLY_BUDGET)
        store_embedding(messages[2], TRAVEL)
        embedder = FakeEmbedder({"budget": BUDGET})

        result = await _vector_chain(repo, vector_index, embedder).retrieve("user-1", ParsedFilter(topic="budget"))

        assert result.strategy == SearchStrategy.VECTOR
        assert [h.message.id for h in result.hits] == ["budget", "mostly"]
        assert result.hits[0].similarity == pytest.approx(1.0, abs=1e-6)
        assert result.hits[1].similarity == pytest.approx(0.9487, abs=1e-3)
        assert embedder.calls == ["budget"]

    @pytest.mark.asyncio
    async def test_no_embeddings_falls_back_to_keyword(self, repo: MessageRepository, vector_index, make_message) -> None:
        """Test that an empty index is never queried and the keyword label propagates."""
        repo.upsert_messages(
            [
                make_message("hit", utc(2026, 2, 1), subject="Budget review"),
                make_message("miss", utc(2026, 2, 2), subject="Lunch"),
            ]
        )
        embedder = FakeEmbedder()

        result = await _vector_chain(repo, vector_index, embedder).retrieve("user-1", ParsedFilter(topic="budget"))

        assert result.strategy == SearchStrategy.KEYWORD
        assert [h.message.id for h in result.hits] == ["hit"]
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_no_embeddings_and_no_keyword_match(self, repo: MessageRepository, vector_index, make_message) -> None:
        """Test that the empty fallback result is still labeled keyword."""
        repo.upsert_messages([make_message("miss", utc(2026, 2, 2), subject="Lunch")])

        result = await _vector_chain(repo, vector_index, FakeEmbedder()).retrieve(
            "user-1", ParsedFilter(topic="budget")
        )

        assert result.strategy == SearchStrategy.KEYWORD
        assert result.hits == []

    @pytest.mark.asyncio
    async def test_all_below_threshold_falls_back_to_keyword(
        self, repo: MessageRepository, vector_index: MessageVectorIndex, make_message, store_embedding
    ) -> None:
        """Test that a strict floor does not end in an empty vector result."""
        messages = [
            make_message("lexical", utc(2026, 2, 1), preview="the budget spreadsheet"),
            make_message("other", utc(2026, 2, 2), subject="Flights"),
        ]
        repo.upsert_messages(messages)
        store_embedding(messages[0], TRAVEL)
        store_embedding(messages[1], TRAVEL)
        embedder = FakeEmbedder({"budget": BUDGET})

        result = await _vector_chain(repo, vector_index, embedder).retrieve("user-1", ParsedFilter(topic="budget"))

        assert result.strategy == SearchStrategy.KEYWORD
        assert [h.message.id for h in result.hits] == ["lexical"]
        assert result.hits[0].similarity is None

    @pytest.mark.asyncio
    async def test_threshold_is_strict(
        self, repo: MessageRepository, vector_index: MessageVectorIndex, make_message, store_embedding
    ) -> None:
        """Test that a score equal to the floor is excluded."""
        message = make_message("edge", utc(2026, 2, 1), subject="Flights")
        repo.upsert_messages([message])
        store_embedding(message, BUDGET)

        retriever = VectorRetriever(repo, vector_index, FakeEmbedder({"budget": BUDGET}), limit=50, similarity_threshold=1.0)
        result = await retriever.retrieve("user-1", ParsedFilter(topic="budget"))

        assert result.hits == []
        assert result.strategy == SearchStrategy.VECTOR

    @pytest.mark.asyncio
    async def test_other_users_embeddings_are_ignored(
        self, repo: MessageRepository, vector_index: MessageVectorIndex, make_message, store_embedding
    ) -> None:
        """Test that coverage is counted per user."""
        theirs = make_message("theirs", utc(2026, 2, 1), user_id="user-2", subject="budget")
        mine = make_message("mine", utc(2026, 2, 1), subject="budget notes")
        repo.upsert_messages([theirs, mine])
        store_embedding(theirs, BUDGET)
        embedder = FakeEmbedder({"budget": BUDGET})

        result = await _vector_chain(repo, vector_index, embedder).retrieve("user-1", ParsedFilter(topic="budget"))

        assert result.strategy == SearchStrategy.KEYWORD
        assert [h.message.id for h in result.hits] == ["mine"]
        assert embedder.calls == []


class TestHybridRetriever:
    """Test suite for HybridRetriever."""

    def _retriever(self, repo, vector_index, embedder, candidate_limit: int = 200) -> HybridRetriever:
        return HybridRetriever(repo, vector_index, embedder, limit=50, candidate_limit=candidate_limit)

    @pytest.mark.asyncio
    async def test_no_candidates_returns_empty_without_embedding(
        self, repo: MessageRepository, vector_index: MessageVectorIndex, make_message, store_embedding
    ) -> None:
        """Test that an empty structured pre-filter ends the search."""
        message = make_message("m1", utc(2026, 2, 1), sender_name="Bob", subject="budget")
        repo.upsert_messages([message])
        store_embedding(message, BUDGET)
        embedder = FakeEmbedder({"budget": BUDGET})

        result = await self._retriever(repo, vector_index, embedder).retrieve(
            "user-1", ParsedFilter(topic="budget", sender="sarah")
        )

        assert result.strategy == SearchStrategy.HYBRID
        assert result.hits == []
        assert result.total_count == 0
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_topic_is_required(self, repo: MessageRepository, vector_index: MessageVectorIndex) -> None:
        """Test that ranking without a topic is refused before touching the store."""
        embedder = FakeEmbedder()

        with pytest.raises(ValidationError):
            await self._retriever(repo, vector_index, embedder).retrieve("user-1", ParsedFilter(sender="sarah"))

        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_reranks_candidates_without_floor(
        self, repo: MessageRepository, vector_index: MessageVectorIndex, make_message, store_embedding
    ) -> None:
        """Test that only structured matches are ranked, including low scores."""
        messages = [
            make_message("sarah-travel", utc(2026, 2, 5), sender_name="Sarah", subject="Flights"),
            make_message("sarah-budget", utc(2026, 2, 4), sender_name="Sarah", subject="Budget"),
            make_message("bob-budget", utc(2026, 2, 6), sender_name="Bob", subject="Budget"),
            make_message("sarah-unembedded", utc(2026, 2, 7), sender_name="Sarah", subject="Budget"),
        ]
        repo.upsert_messages(messages)
        store_embedding(messages[0], TRAVEL)
        store_embedding(messages[1], BUDGET)
        store_embedding(messages[2], BUDGET)
        embedder = FakeEmbedder({"budget": BUDGET})

        result = await self._retriever(repo, vector_index, embedder).retrieve(
            "user-1", ParsedFilter(topic="budget", sender="sarah")
        )

        assert [h.message.id for h in result.hits] == ["sarah-budget", "sarah-travel"]
        assert result.hits[1].similarity == pytest.approx(0.0, abs=1e-6)
        assert result.strategy == SearchStrategy.HYBRID

    @pytest.mark.asyncio
    async def test_candidate_limit_prefers_recent(
        self, repo: MessageRepository, vector_index: MessageVectorIndex, make_message, store_embedding
    ) -> None:
        """Test that the pre-filter keeps the newest candidates."""
        old = make_message("old", utc(2026, 1, 1), sender_name="Sarah")
        new = make_message("new", utc(2026, 2, 1), sender_name="Sarah")
        repo.upsert_messages([old, new])
        store_embedding(old, BUDGET)
        store_embedding(new, TRAVEL)

        result = await self._retriever(repo, vector_index, FakeEmbedder({"budget": BUDGET}), candidate_limit=1).retrieve(
            "user-1", ParsedFilter(topic="budget", sender="sarah")
        )

        assert [h.message.id for h in result.hits] == ["new"]


class TestRecentRetriever:
    """Test suite for RecentRetriever."""

    @pytest.mark.asyncio
    async def test_latest_messages(self, repo: MessageRepository, make_message) -> None:
        """Test that the newest messages come back unranked."""
        repo.upsert_messages([make_message(f"m{i}", utc(2026, 2, i)) for i in range(1, 5)])

        result = await RecentRetriever(repo, limit=2).retrieve("user-1", ParsedFilter())

        assert result.strategy == SearchStrategy.RECENT
        assert [h.message.id for h in result.hits] == ["m4", "m3"]


class TestStorageRunsOffTheEventLoop:
    """Test that retrievers hand blocking store and index calls to worker threads."""

    @pytest.mark.asyncio
    async def test_vector_search_uses_worker_threads(
        self,
        repo: MessageRepository,
        vector_index: MessageVectorIndex,
        make_message,
        store_embedding,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that count, index search and hydration all run outside the loop thread."""
        message = make_message("m1", utc(2026, 2, 1), subject="Budget")
        repo.upsert_messages([message])
        store_embedding(message, BUDGET)

        loop_thread = threading.get_ident()
        seen: dict[str, int] = {}

        def record(name, fn):
            def wrapper(*args, **kwargs):
                seen[name] = threading.get_ident()
                return fn(*args, **kwargs)

            return wrapper

        monkeypatch.setattr(repo, "count_messages", record("count", repo.count_messages))
        monkeypatch.setattr(repo, "get_messages", record("hydrate", repo.get_messages))
        monkeypatch.setattr(vector_index, "search", record("search", vector_index.search))

        retriever = VectorRetriever(
            repo, vector_index, FakeEmbedder({"budget": BUDGET}), limit=50, similarity_threshold=0.3
        )
        result = await retriever.retrieve("user-1", ParsedFilter(topic="budget"))

        assert [h.message.id for h in result.hits] == ["m1"]
        assert set(seen) == {"count", "search", "hydrate"}
        assert loop_thread not in seen.values()
