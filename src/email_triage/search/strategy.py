"""Search strategy selection."""

from __future__ import annotations

from email_triage.models import ParsedFilter, SearchStrategy


def select_strategy(filters: ParsedFilter) -> SearchStrategy:
    """Choose how to satisfy a parsed query.

    ============  ==========  ==========
    structured    topic       strategy
    ============  ==========  ==========
    yes           no          structured
    no            yes         vector
    yes           yes         hybrid
    no            no          recent
    ============  ==========  ==========

    ``has_attachment`` plays no part in the choice.
    """

    if filters.has_structured and filters.has_topic:
        return SearchStrategy.HYBRID
    if filters.has_structured:
        return SearchStrategy.STRUCTURED
    if filters.has_topic:
        return SearchStrategy.VECTOR
    return SearchStrategy.RECENT
