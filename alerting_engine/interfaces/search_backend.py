"""
Abstract base class for the search and storage backend.

The engine reaches the backend only through this narrow interface: cursor
paginated search, bulk writes, aggregations, EQL and the mapping lookups
needed for the timestamp field check. Implementations translate their
client errors into BackendQueryError.

Example:
    >>> class InMemoryBackend(SearchBackend):
    ...     async def search(self, indices, query, sort, search_after=None, ...):
    ...         ...
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

from alerting_engine.models.alerts import AlertWriteOperation
from alerting_engine.models.backend import (
    AggregationResponse,
    BulkResponse,
    SearchResponse,
)


class SearchBackend(ABC):
    """
    Abstract search backend.

    All methods accept an explicit timeout in seconds. A timeout or a
    transport failure is raised as BackendQueryError so the orchestrator can
    treat it as a recoverable tuple-level error.
    """

    @abstractmethod
    async def search(
        self,
        indices: List[str],
        query: Dict[str, Any],
        sort: List[Dict[str, Any]],
        search_after: Optional[List[Any]] = None,
        size: int = 100,
        timeout_seconds: float = 30.0,
        seq_no_primary_term: bool = False,
    ) -> SearchResponse:
        """
        Run one page of a sorted search.

        Args:
            indices: Concrete indices or patterns to search.
            query: Query DSL object.
            sort: Sort specification; the last hit's sort values are the cursor.
            search_after: Sort values of the last hit of the previous page.
            size: Maximum hits to return.
            timeout_seconds: Request timeout.
            seq_no_primary_term: Return concurrency tokens with each hit.

        Returns:
            SearchResponse: Hits in sort order, with shard failures if any.

        Raises:
            BackendQueryError: On timeout, connection or query errors.
        """
        pass

    @abstractmethod
    async def bulk(
        self,
        operations: List[AlertWriteOperation],
        timeout_seconds: float = 30.0,
    ) -> BulkResponse:
        """
        Execute create and update operations in one request.

        Item failures are reported per item and never raised.

        Raises:
            BulkWriteError: If the request as a whole fails.
        """
        pass

    @abstractmethod
    async def aggregate(
        self,
        indices: List[str],
        query: Dict[str, Any],
        aggregations: Dict[str, Any],
        timeout_seconds: float = 30.0,
    ) -> AggregationResponse:
        """
        Run an aggregation-only search (no hits returned).

        Raises:
            BackendQueryError: On timeout, connection or query errors.
        """
        pass

    @abstractmethod
    async def eql_search(
        self,
        indices: List[str],
        query: str,
        filter_query: Dict[str, Any],
        size: int,
        timestamp_field: str,
        timeout_seconds: float = 30.0,
    ) -> SearchResponse:
        """
        Run an EQL query.

        Event queries fill `hits`; sequence queries fill `sequences`.

        Raises:
            BackendQueryError: On timeout, connection or query errors.
        """
        pass

    @abstractmethod
    async def resolve_indices(self, patterns: List[str]) -> Dict[str, List[str]]:
        """
        Resolve index patterns to concrete indices.

        Returns:
            Dict[str, List[str]]: Concrete indices keyed by pattern; patterns
            that match nothing map to an empty list.
        """
        pass

    @abstractmethod
    async def get_field_mappings(
        self,
        indices: List[str],
        fields: List[str],
    ) -> Dict[str, Set[str]]:
        """
        Find which of the given fields each index maps.

        Returns:
            Dict[str, Set[str]]: Mapped fields keyed by concrete index.
        """
        pass
