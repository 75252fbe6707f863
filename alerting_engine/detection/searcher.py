"""
Cursor-paginated search over one time window.

The searcher streams every document matching a query within a time tuple
by sorting on the timestamp plus a tiebreaker and passing the last hit's
sort values as the cursor of the next request. Pages are fetched strictly
one after another; the caller stops early by leaving the async iteration.

Before paging, check_timestamp_fields verifies that the target indices map
the timestamp field, so searches only go to indices that can match.

Example:
    >>> searcher = PaginatedSearcher(backend, page_size=100)
    >>> async for page in searcher.iter_pages(indices, query, time_tuple, "@timestamp"):
    ...     handle(page.hits)
"""

import asyncio
import math
import time
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from alerting_engine.dates import to_iso
from alerting_engine.errors import RunCancelled
from alerting_engine.interfaces.search_backend import SearchBackend
from alerting_engine.models.backend import SearchResponse, ShardFailure
from alerting_engine.models.matches import RawMatch, TimeTuple
from alerting_engine.models.results import TimestampCheckResult, TimestampCheckStatus

logger = structlog.get_logger(__name__)


DEFAULT_PAGE_SIZE = 100
DEFAULT_TIEBREAKER_FIELD = "_doc"


class SearchPage(BaseModel):
    """One page of hits."""

    model_config = {"frozen": True, "extra": "forbid"}

    hits: List[RawMatch] = Field(default_factory=list)
    search_duration_ms: float = 0.0
    errors: List[str] = Field(default_factory=list)
    last_seen_timestamp: Optional[datetime] = None


def create_errors_from_shard(failures: List[ShardFailure]) -> List[str]:
    """Convert shard failures to error strings."""
    return [failure.message() for failure in failures]


def last_valid_date(hits: List[RawMatch], timestamp_field: str) -> Optional[datetime]:
    """Timestamp of the last hit that carries one."""
    for hit in reversed(hits):
        timestamp = hit.get_timestamp(timestamp_field)
        if timestamp is not None:
            return timestamp
    return None


def build_query_clause(query: Any) -> Dict[str, Any]:
    """
    Convert a rule query to a query DSL clause.

    Strings are query_string queries, except "*" and "" which match all.
    """
    if isinstance(query, dict):
        return query
    text = (query or "").strip()
    if text in ("", "*", "*:*"):
        return {"match_all": {}}
    return {"query_string": {"query": text}}


def build_range_filter(time_tuple: TimeTuple, timestamp_field: str) -> Dict[str, Any]:
    """Range clause restricting the timestamp field to the tuple."""
    return {
        "range": {
            timestamp_field: {
                "gte": to_iso(time_tuple.from_),
                "lte": to_iso(time_tuple.to),
                "format": "strict_date_optional_time",
            }
        }
    }


def build_event_query(
    query: Any,
    filters: List[Dict[str, Any]],
    time_tuple: Optional[TimeTuple],
    timestamp_field: str,
    extra_filters: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """
    Build the bool query sent for a tuple.

    Args:
        query: Rule query (string or DSL).
        filters: Rule filters.
        time_tuple: Window to restrict to, or None for no time range.
        timestamp_field: Field used for the range clause.
        extra_filters: Executor-specific clauses.

    Returns:
        Dict[str, Any]: Query DSL.
    """
    clauses: List[Dict[str, Any]] = []
    if time_tuple is not None:
        clauses.append(build_range_filter(time_tuple, timestamp_field))
    clauses.append(build_query_clause(query))
    clauses.extend(filters)
    clauses.extend(extra_filters or [])
    return {"bool": {"filter": clauses}}


async def check_timestamp_fields(
    backend: SearchBackend,
    index_patterns: List[str],
    timestamp_field: str,
) -> TimestampCheckResult:
    """
    Verify the timestamp field exists across the target indices.

    Args:
        backend: Search backend.
        index_patterns: Rule index patterns.
        timestamp_field: Field used for range queries.

    Returns:
        TimestampCheckResult: success when every index maps the field,
        partial failure when some do, error when none do.
    """
    resolved = await backend.resolve_indices(index_patterns)
    empty_patterns = [pattern for pattern in index_patterns if not resolved.get(pattern)]
    concrete = sorted({index for indices in resolved.values() for index in indices})

    if not concrete:
        return TimestampCheckResult(
            status=TimestampCheckStatus.ERROR,
            field=timestamp_field,
            messages=[
                "This rule is attempting to query data from indices listed in its "
                f"index patterns, however no index matching: {index_patterns} was found. "
                "This warning will continue to appear until a matching index is created "
                "or this rule is disabled."
            ],
        )

    mappings = await backend.get_field_mappings(concrete, [timestamp_field])
    with_field = [index for index in concrete if timestamp_field in mappings.get(index, set())]
    without_field = [index for index in concrete if index not in with_field]

    messages: List[str] = []
    if empty_patterns:
        messages.append(
            f"The following index patterns did not match any indices: {empty_patterns}"
        )
    if without_field:
        failing_patterns = [
            pattern
            for pattern in index_patterns
            if any(index in without_field for index in resolved.get(pattern, []))
        ]
        messages.append(
            f'The following indices are missing the timestamp field "{timestamp_field}": '
            f"{failing_patterns} ({without_field})"
        )

    if not with_field:
        status = TimestampCheckStatus.ERROR
    elif messages:
        status = TimestampCheckStatus.PARTIAL_FAILURE
    else:
        status = TimestampCheckStatus.SUCCESS

    logger.debug(
        "timestamp_fields_checked",
        field=timestamp_field,
        status=status.value,
        success_indices=len(with_field),
        failing_indices=len(without_field),
    )

    return TimestampCheckResult(
        status=status,
        field=timestamp_field,
        success_indices=with_field,
        failing_indices=without_field,
        messages=messages,
    )


class PaginatedSearcher:
    """
    Streams all hits for a tuple page by page using search_after.

    Attributes:
        backend: Search backend.
        page_size: Configured maximum page size.
        tiebreaker_field: Secondary sort field making the order total.
        timeout_seconds: Timeout of each search request.

    Example:
        >>> searcher = PaginatedSearcher(backend, page_size=500)
        >>> pages = [p async for p in searcher.iter_pages(["logs-1"], q, t, "@timestamp")]
    """

    def __init__(
        self,
        backend: SearchBackend,
        page_size: int = DEFAULT_PAGE_SIZE,
        tiebreaker_field: str = DEFAULT_TIEBREAKER_FIELD,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.backend = backend
        self.page_size = page_size
        self.tiebreaker_field = tiebreaker_field
        self.timeout_seconds = timeout_seconds

    def page_size_for(self, max_matches: float) -> int:
        """Per-request size: min(ceil(max_matches), configured page size)."""
        return max(1, min(math.ceil(max_matches), self.page_size))

    def build_sort(self, timestamp_field: str) -> List[Dict[str, Any]]:
        """Sort on the timestamp, then the tiebreaker."""
        return [
            {timestamp_field: {"order": "asc", "unmapped_type": "date"}},
            {self.tiebreaker_field: {"order": "asc"}},
        ]

    async def search_page(
        self,
        indices: List[str],
        query: Dict[str, Any],
        timestamp_field: str,
        size: int,
        search_after: Optional[List[Any]] = None,
    ) -> SearchResponse:
        """Issue a single sorted search request."""
        return await self.backend.search(
            indices=indices,
            query=query,
            sort=self.build_sort(timestamp_field),
            search_after=search_after,
            size=size,
            timeout_seconds=self.timeout_seconds,
        )

    async def iter_pages(
        self,
        indices: List[str],
        query: Dict[str, Any],
        time_tuple: TimeTuple,
        timestamp_field: str,
        cancel_event: Optional[asyncio.Event] = None,
        page_size: Optional[int] = None,
    ) -> AsyncIterator[SearchPage]:
        """
        Yield every page of hits for the query.

        Stops after an empty page, a short page or a hit without sort
        values. Cancellation is checked before each request.

        Args:
            indices: Indices to search.
            query: Complete query DSL (time range included).
            time_tuple: Window being searched; sizes the pages.
            timestamp_field: Primary sort field.
            cancel_event: Set to stop before the next request.
            page_size: Override for the per-request size.

        Yields:
            SearchPage: Hits with duration and shard errors.

        Raises:
            RunCancelled: If cancel_event is set.
            BackendQueryError: If a request fails.
        """
        size = page_size or self.page_size_for(time_tuple.max_matches)
        search_after: Optional[List[Any]] = None
        page_number = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelled("Rule run cancelled before next search")

            start = time.monotonic()
            response = await self.search_page(
                indices, query, timestamp_field, size, search_after
            )
            elapsed_ms = (time.monotonic() - start) * 1000
            page_number += 1

            hits = response.hits
            logger.debug(
                "search_page_fetched",
                page=page_number,
                hits=len(hits),
                size=size,
                elapsed_ms=round(elapsed_ms, 2),
            )

            if not hits:
                if response.shard_failures:
                    yield SearchPage(
                        search_duration_ms=elapsed_ms,
                        errors=create_errors_from_shard(response.shard_failures),
                    )
                return

            yield SearchPage(
                hits=hits,
                search_duration_ms=elapsed_ms,
                errors=create_errors_from_shard(response.shard_failures),
                last_seen_timestamp=last_valid_date(hits, timestamp_field),
            )

            search_after = hits[-1].sort
            if len(hits) < size or not search_after:
                return
