"""Retrieval strategies.

Each retriever answers one :class:`SearchStrategy` for one user. They share no
per-request state, so a single instance serves concurrent searches. Store and
index calls run in worker threads so concurrent searches overlap.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from email_triage.embeddings import Embedder
from email_triage.exceptions import ValidationError
from email_triage.index import MessageQuery, MessageRepository, MessageVectorIndex, VectorMatch
from email_triage.models import ParsedFilter, SearchHit, SearchStrategy

logger = structlog.get_logger()


@dataclass
class RetrievalResult:
    """Everything a retriever found, best first."""

    strategy: SearchStrategy
    hits: list[SearchHit] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return len(self.hits)


class Retriever(Protocol):
    strategy: SearchStrategy

    async def retrieve(self, user_id: str, filters: ParsedFilter) -> RetrievalResult: ...


def build_structured_query(
    repository: MessageRepository,
    user_id: str,
    filters: ParsedFilter,
    embedded: bool | None = None,
) -> MessageQuery:
    """Translate the structured part of ``filters`` into a repository query.

    A bucket name that matches none of the user's buckets adds no condition.
    """

    bucket_id = None
    if filters.bucket:
        bucket = repository.find_bucket_by_name(user_id, filters.bucket)
        if bucket is not None:
            bucket_id = bucket.id
        else:
            logger.info("bucket_not_resolved", user_id=user_id, bucket=filters.bucket)

    timeframe = filters.timeframe
    return MessageQuery(
        user_id=user_id,
        received_from=timeframe.start if timeframe else None,
        received_to=timeframe.end if timeframe else None,
        sender=filters.sender,
        bucket_id=bucket_id,
        embedded=embedded,
    )


def _hydrate(
    repository: MessageRepository,
    user_id: str,
    matches: Sequence[VectorMatch],
) -> list[SearchHit]:
    similarity = {m.message_id: m.similarity for m in matches}
    messages = repository.get_messages(user_id, [m.message_id for m in matches])
    return [
        SearchHit(message=message, similarity=similarity[message.id])
        for message in messages
        if message.has_embedding
    ]


def _log_similarity(event: str, user_id: str, matches: Sequence[VectorMatch], **kw: object) -> None:
    scores = [m.similarity for m in matches]
    logger.info(
        event,
        user_id=user_id,
        matches=len(scores),
        max_similarity=round(max(scores), 4) if scores else None,
        min_similarity=round(min(scores), 4) if scores else None,
        avg_similarity=round(sum(scores) / len(scores), 4) if scores else None,
        **kw,
    )


class StructuredRetriever:
    """Exact filtering on timeframe, sender and bucket, newest first."""

    strategy = SearchStrategy.STRUCTURED

    def __init__(self, repository: MessageRepository, limit: int) -> None:
        self.repository = repository
        self.limit = limit

    async def retrieve(self, user_id: str, filters: ParsedFilter) -> RetrievalResult:
        query = await asyncio.to_thread(build_structured_query, self.repository, user_id, filters)
        messages = await asyncio.to_thread(self.repository.find_messages, query, limit=self.limit)
        logger.info("structured_search_completed", user_id=user_id, results=len(messages))
        return RetrievalResult(self.strategy, [SearchHit(message=m) for m in messages])


class KeywordRetriever:
    """Substring match of the topic across subject, preview, body and sender."""

    strategy = SearchStrategy.KEYWORD

    def __init__(self, repository: MessageRepository, limit: int) -> None:
        self.repository = repository
        self.limit = limit

    async def retrieve(self, user_id: str, filters: ParsedFilter) -> RetrievalResult:
        if not filters.topic:
            return RetrievalResult(self.strategy)

        messages = await asyncio.to_thread(
            self.repository.find_messages,
            MessageQuery(user_id=user_id, keyword=filters.topic),
            limit=self.limit,
        )
        logger.info(
            "keyword_search_completed",
            user_id=user_id,
            keyword=filters.topic,
            results=len(messages),
        )
        return RetrievalResult(self.strategy, [SearchHit(message=m) for m in messages])


class RecentRetriever:
    """The user's latest messages, unranked."""

    strategy = SearchStrategy.RECENT

    def __init__(self, repository: MessageRepository, limit: int) -> None:
        self.repository = repository
        self.limit = limit

    async def retrieve(self, user_id: str, filters: ParsedFilter) -> RetrievalResult:
        messages = await asyncio.to_thread(
            self.repository.find_messages, MessageQuery(user_id=user_id), limit=self.limit
        )
        return RetrievalResult(self.strategy, [SearchHit(message=m) for m in messages])


class VectorRetriever:
    """Nearest neighbors of the topic above a similarity floor.

    Returns an empty result, without calling the embedder, when the user has no
    embedded messages. Pair it with a :class:`FallbackChain` to fall back on
    keyword search.
    """

    strategy = SearchStrategy.VECTOR

    def __init__(
        self,
        repository: MessageRepository,
        vector_index: MessageVectorIndex,
        embedder: Embedder,
        limit: int,
        similarity_threshold: float,
    ) -> None:
        self.repository = repository
        self.vector_index = vector_index
        self.embedder = embedder
        self.limit = limit
        self.similarity_threshold = similarity_threshold

    async def retrieve(self, user_id: str, filters: ParsedFilter) -> RetrievalResult:
        if not filters.topic:
            return RetrievalResult(self.strategy)

        embedded = await asyncio.to_thread(
            self.repository.count_messages, MessageQuery(user_id=user_id, embedded=True)
        )
        if embedded == 0:
            logger.info("vector_search_skipped_no_embeddings", user_id=user_id)
            return RetrievalResult(self.strategy)

        vector = await self.embedder.embed(filters.topic)
        matches = await asyncio.to_thread(self.vector_index.search, user_id, vector, limit=self.limit)
        kept = [m for m in matches if m.similarity > self.similarity_threshold]

        _log_similarity(
            "vector_search_completed",
            user_id,
            matches,
            embedded_messages=embedded,
            above_threshold=len(kept),
            threshold=self.similarity_threshold,
        )
        hits = await asyncio.to_thread(_hydrate, self.repository, user_id, kept)
        return RetrievalResult(self.strategy, hits)


class HybridRetriever:
    """Structured pre-filter, then similarity re-ranking of the candidates.

    Needs a topic. No similarity floor applies; an empty candidate set ends the
    search without embedding the topic.
    """

    strategy = SearchStrategy.HYBRID

    def __init__(
        self,
        repository: MessageRepository,
        vector_index: MessageVectorIndex,
        embedder: Embedder,
        limit: int,
        candidate_limit: int,
    ) -> None:
        self.repository = repository
        self.vector_index = vector_index
        self.embedder = embedder
        self.limit = limit
        self.candidate_limit = candidate_limit

    async def retrieve(self, user_id: str, filters: ParsedFilter) -> RetrievalResult:
        if not filters.topic:
            raise ValidationError("Hybrid search needs a topic to rank by")

        query = await asyncio.to_thread(build_structured_query, self.repository, user_id, filters, True)
        candidate_ids = await asyncio.to_thread(
            self.repository.find_message_ids, query, limit=self.candidate_limit
        )
        if not candidate_ids:
            logger.info("hybrid_search_no_candidates", user_id=user_id)
            return RetrievalResult(self.strategy)

        vector = await self.embedder.embed(filters.topic)
        matches = await asyncio.to_thread(
            self.vector_index.search,
            user_id,
            vector,
            limit=self.limit,
            message_ids=candidate_ids,
        )
        _log_similarity("hybrid_search_completed", user_id, matches, candidates=len(candidate_ids))
        hits = await asyncio.to_thread(_hydrate, self.repository, user_id, matches)
        return RetrievalResult(self.strategy, hits)


class FallbackChain:
    """Try retrievers in order until one finds something.

    The result keeps the strategy of the retriever that produced it. If every
    tier comes up empty, the last tier's (empty) result is returned.
    """

    def __init__(self, *tiers: Retriever) -> None:
        if not tiers:
            raise ValueError("FallbackChain needs at least one retriever")
        self.tiers = tiers
        self.strategy = tiers[0].strategy

    async def retrieve(self, user_id: str, filters: ParsedFilter) -> RetrievalResult:
        result = await self.tiers[0].retrieve(user_id, filters)
        for previous, tier in zip(self.tiers, self.tiers[1:]):
            if result.hits:
                break
            logger.info(
                "search_fallback",
                user_id=user_id,
                from_strategy=previous.strategy.value,
                to_strategy=tier.strategy.value,
            )
            result = await tier.retrieve(user_id, filters)
        return result
