"""Search orchestration.

This module provides the service that turns a free-text query into a ranked,
bounded result set: parse, choose a strategy, retrieve, page.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog

from email_triage.config import Settings
from email_triage.embeddings import Embedder, EmbeddingBackfill, EmbeddingProvider
from email_triage.exceptions import EmailTriageError, ValidationError
from email_triage.index import MessageQuery, MessageRepository, MessageVectorIndex
from email_triage.models import BackfillReport, EmbeddingCoverage, ParsedFilter, SearchResult, SearchStrategy
from email_triage.ollama import OllamaClient
from email_triage.search.query_parser import FilterParser, QueryParser, parse_timeframe
from email_triage.search.retrievers import (
    FallbackChain,
    HybridRetriever,
    KeywordRetriever,
    RecentRetriever,
    RetrievalResult,
    Retriever,
    StructuredRetriever,
    VectorRetriever,
)
from email_triage.search.strategy import select_strategy

logger = structlog.get_logger()


class SearchService:
    """Smart search over one store, for any user.

    Every operation takes the user id explicitly; the service holds no
    per-user state.
    """

    def __init__(
        self,
        repository: MessageRepository,
        vector_index: MessageVectorIndex,
        embedder: Embedder,
        query_parser: FilterParser,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the search service.

        Args:
            repository: Message and bucket store.
            vector_index: Nearest-neighbor index over message embeddings.
            embedder: Embeds search topics and messages.
            query_parser: Turns free text into filters.
            settings: Application settings. If None, uses default settings.
        """
        from email_triage.config import get_settings

        self.settings = settings or get_settings()
        self.repository = repository
        self.query_parser = query_parser
        self.backfill = EmbeddingBackfill(repository, vector_index, embedder)

        limit = self.settings.candidate_limit
        self.keyword_retriever = KeywordRetriever(repository, limit)
        self.retrievers: dict[SearchStrategy, Retriever] = {
            SearchStrategy.STRUCTURED: StructuredRetriever(repository, limit),
            SearchStrategy.VECTOR: FallbackChain(
                VectorRetriever(
                    repository,
                    vector_index,
                    embedder,
                    limit=limit,
                    similarity_threshold=self.settings.similarity_threshold,
                ),
                self.keyword_retriever,
            ),
            SearchStrategy.HYBRID: HybridRetriever(
                repository,
                vector_index,
                embedder,
                limit=limit,
                candidate_limit=self.settings.hybrid_candidate_limit,
            ),
            SearchStrategy.RECENT: RecentRetriever(repository, limit),
        }
        logger.info("search_service_initialized")

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        ollama_client: OllamaClient | None = None,
    ) -> "SearchService":
        """Wire the SQLite store, the Qdrant index and Ollama from settings."""
        from email_triage.config import get_settings

        settings = settings or get_settings()
        repository = MessageRepository(settings.database_path)
        repository.initialize()

        client = ollama_client or OllamaClient(settings)
        return cls(
            repository=repository,
            vector_index=MessageVectorIndex.from_settings(settings),
            embedder=EmbeddingProvider(
                client,
                dimension=settings.embedding_dimension,
                model=settings.embedding_model,
            ),
            query_parser=QueryParser(
                client,
                model=settings.query_parser_model,
                temperature=settings.query_parser_temperature,
            ),
            settings=settings,
        )

    async def smart_search(
        self,
        user_id: str,
        query: str,
        now: datetime | None = None,
    ) -> SearchResult:
        """Answer a natural-language query.

        Args:
            user_id: Whose messages to search.
            query: Free-text query, at most ``max_query_length`` characters.
            now: Reference time for relative dates. Defaults to the current time.

        Returns:
            The first ``result_page_size`` hits, the number of hits the chosen
            retriever found, the strategy that produced them and the filters used.

        Raises:
            ValidationError: If the query is empty or too long.
            QueryParseError: If the query cannot be parsed. Never replaced by
                an empty filter.
            ProviderUnavailableError: If a model provider is unreachable.
        """
        query = self._validate_query(query)
        now = now or datetime.now(timezone.utc)

        try:
            filters = await self.query_parser.parse(query, now)

            if filters.timeframe is None:
                fallback = parse_timeframe(query, now)
                if fallback is not None:
                    filters = filters.model_copy(update={"timeframe": fallback})
                    logger.info(
                        "timeframe_fallback_applied",
                        start=fallback.start.isoformat() if fallback.start else None,
                        end=fallback.end.isoformat() if fallback.end else None,
                    )

            strategy = select_strategy(filters)
            logger.info(
                "smart_search_started",
                user_id=user_id,
                strategy=strategy.value,
                filters=filters.model_dump(mode="json", exclude_none=True),
            )
            result = await self.retrievers[strategy].retrieve(user_id, filters)
        except EmailTriageError as e:
            logger.error(
                "smart_search_failed",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        return self._to_response(result, query, filters)

    async def keyword_search(self, user_id: str, keyword: str) -> SearchResult:
        """Substring search without query parsing.

        Raises:
            ValidationError: If the keyword is empty.
        """
        keyword = (keyword or "").strip()
        if not keyword:
            raise ValidationError("Keyword is required")

        result = await self.keyword_retriever.retrieve(user_id, ParsedFilter(topic=keyword))
        return self._to_response(result, keyword, None)

    async def generate_embeddings(self, user_id: str, batch_size: int | None = None) -> BackfillReport:
        """Run one embedding backfill batch for the user."""
        return await self.backfill.generate_missing_embeddings(
            user_id, batch_size or self.settings.embedding_batch_size
        )

    async def embedding_coverage(self, user_id: str) -> EmbeddingCoverage:
        """Report how many of the user's messages have an embedding.

        The percentage is rounded half up and is 0 for an empty mailbox.
        """
        total = await asyncio.to_thread(self.repository.count_messages, MessageQuery(user_id=user_id))
        with_embeddings = await asyncio.to_thread(
            self.repository.count_messages, MessageQuery(user_id=user_id, embedded=True)
        )
        percentage = (200 * with_embeddings + total) // (2 * total) if total else 0
        return EmbeddingCoverage(
            total=total,
            with_embeddings=with_embeddings,
            percentage=percentage,
            remaining=total - with_embeddings,
        )

    def _validate_query(self, query: str) -> str:
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query is required")
        if len(query) > self.settings.max_query_length:
            raise ValidationError(
                f"Search query is too long ({len(query)} > {self.settings.max_query_length} characters)"
            )
        return query

    def _to_response(
        self,
        result: RetrievalResult,
        query: str,
        filters: ParsedFilter | None,
    ) -> SearchResult:
        logger.info(
            "search_completed",
            strategy=result.strategy.value,
            total_count=result.total_count,
        )
        return SearchResult(
            emails=result.hits[: self.settings.result_page_size],
            total_count=result.total_count,
            strategy=result.strategy,
            query=query,
            filters=filters,
        )
