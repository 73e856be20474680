"""Smart search: query parsing, strategy selection and retrieval."""

from .query_parser import FilterParser, QueryParser, build_parse_prompt, parse_filter_response, parse_timeframe
from .retrievers import (
    FallbackChain,
    HybridRetriever,
    KeywordRetriever,
    RecentRetriever,
    RetrievalResult,
    Retriever,
    StructuredRetriever,
    VectorRetriever,
    build_structured_query,
)
from .service import SearchService
from .strategy import select_strategy

__all__ = [
    "FallbackChain",
    "FilterParser",
    "HybridRetriever",
    "KeywordRetriever",
    "QueryParser",
    "RecentRetriever",
    "RetrievalResult",
    "Retriever",
    "SearchService",
    "StructuredRetriever",
    "VectorRetriever",
    "build_parse_prompt",
    "build_structured_query",
    "parse_filter_response",
    "parse_timeframe",
    "select_strategy",
]
