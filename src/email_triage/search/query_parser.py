"""Natural-language query parsing.

A query such as ``"budget emails from sarah last week"`` is turned into a
:class:`ParsedFilter` by prompting an Ollama model with the current date, so
relative phrases resolve against the caller's ``now``. :func:`parse_timeframe`
is the deterministic fallback for common relative-time phrases.
"""

from __future__ import annotations

import calendar
import json
import re
from datetime import datetime, timedelta, timezone
from typing import Protocol

import structlog
from pydantic import ValidationError as PydanticValidationError

from email_triage.exceptions import (
    OllamaInferenceError,
    ProviderUnavailableError,
    QueryParseError,
    QueryParserUnavailableError,
)
from email_triage.models import ParsedFilter, Timeframe
from email_triage.ollama import OllamaClient

logger = structlog.get_logger()

SYSTEM_PROMPT = (
    "You are a search query parser that converts natural language into structured JSON. "
    "Always respond with valid JSON only, no additional text."
)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class FilterParser(Protocol):
    async def parse(self, query: str, now: datetime) -> ParsedFilter: ...


def build_parse_prompt(query: str, now: datetime) -> str:
    """Build the extraction prompt, anchored on ``now``."""

    now = _as_utc(now)
    today = now.date().isoformat()
    week_ago = (_midnight(now) - timedelta(days=7)).strftime("%Y-%m-%dT%H:%M:%SZ")
    now_iso = now.strftime("%Y-%m-%dT%H:%M:%SZ")

    return f"""IMPORTANT: Today's date is {today} ({now.isoformat()})

Parse this email search query into structured filters.

Query: {json.dumps(query)}

Extract the following information:
- topic: main subject/keywords to search for (if the query is just a keyword or phrase with no other context, use that as the topic)
- timeframe: absolute date range for relative phrases, resolved against today's date (e.g. "last week" -> 7 days ago until now)
- sender: person name or email domain if mentioned
- bucket: category/bucket name if mentioned
- hasAttachment: true if query mentions attachments

Return JSON only in this exact format:
{{
  "topic": "string or null",
  "timeframe": {{ "start": "ISO date string", "end": "ISO date string" }} or null,
  "sender": "string or null",
  "bucket": "string or null",
  "hasAttachment": boolean or null
}}

Examples:
- "instagram" -> {{"topic": "instagram", "timeframe": null, "sender": null, "bucket": null, "hasAttachment": null}}
- "emails from John last week" -> {{"topic": null, "timeframe": {{"start": "{week_ago}", "end": "{now_iso}"}}, "sender": "John", "bucket": null, "hasAttachment": null}}
- "important emails about budget" -> {{"topic": "budget", "timeframe": null, "sender": null, "bucket": "Important", "hasAttachment": null}}

Return ONLY the JSON object, no additional text."""


def parse_filter_response(raw: str) -> ParsedFilter:
    """Validate a model response into a :class:`ParsedFilter`.

    Raises:
        QueryParseError: If the response holds no valid filter object.
    """

    match = _JSON_OBJECT.search(raw or "")
    if match is None:
        raise QueryParseError("Query parser returned no JSON object")

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise QueryParseError(f"Query parser returned invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise QueryParseError("Query parser returned a non-object JSON value")

    try:
        return ParsedFilter.model_validate(data)
    except PydanticValidationError as e:
        raise QueryParseError(f"Query parser returned invalid filters: {e}") from e


class QueryParser:
    """Ollama-backed query parser."""

    def __init__(
        self,
        client: OllamaClient,
        model: str | None = None,
        temperature: float | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature

    async def parse(self, query: str, now: datetime) -> ParsedFilter:
        """Extract filters from ``query``.

        Raises:
            QueryParserUnavailableError: If the model provider cannot be reached.
            QueryParseError: If the model output is not a valid filter.
        """

        prompt = build_parse_prompt(query, now)
        try:
            raw = await self._client.generate(
                prompt,
                model=self._model,
                system=SYSTEM_PROMPT,
                format="json",
                temperature=self._temperature,
            )
        except ProviderUnavailableError as e:
            raise QueryParserUnavailableError(f"Query parser unavailable: {e}") from e
        except OllamaInferenceError as e:
            raise QueryParseError(f"Query parser failed: {e}") from e

        filters = parse_filter_response(raw)
        logger.debug("query_parsed", filters=filters.model_dump(mode="json", exclude_none=True))
        return filters


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _midnight(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _month_back(value: datetime) -> datetime:
    year, month = (value.year, value.month - 1) if value.month > 1 else (value.year - 1, 12)
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _phrase(pattern: str) -> re.Pattern[str]:
    return re.compile(rf"\b{pattern}\b", re.IGNORECASE)


_TODAY = _phrase("today")
_YESTERDAY = _phrase("yesterday")
_LAST_WEEK = _phrase(r"(?:last|past)\s+week")
_LAST_MONTH = _phrase(r"(?:last|past)\s+month")
_THIS_WEEK = _phrase(r"this\s+week")
_THIS_MONTH = _phrase(r"this\s+month")


def parse_timeframe(query: str, now: datetime) -> Timeframe | None:
    """Resolve a relative-time phrase in ``query`` against ``now``.

    Recognized phrases, first match wins: today, yesterday, last/past week,
    last/past month, this week (from Sunday), this month.

    Returns:
        The window, or None if no phrase matches.
    """

    now = _as_utc(now)
    midnight = _midnight(now)

    if _TODAY.search(query):
        return Timeframe(start=midnight, end=now)
    if _YESTERDAY.search(query):
        return Timeframe(
            start=midnight - timedelta(days=1),
            end=midnight - timedelta(microseconds=1),
        )
    if _LAST_WEEK.search(query):
        return Timeframe(start=midnight - timedelta(days=7), end=now)
    if _LAST_MONTH.search(query):
        return Timeframe(start=_month_back(midnight), end=now)
    if _THIS_WEEK.search(query):
        days_since_sunday = (now.weekday() + 1) % 7
        return Timeframe(start=midnight - timedelta(days=days_since_sunday), end=now)
    if _THIS_MONTH.search(query):
        return Timeframe(start=midnight.replace(day=1), end=now)
    return None
