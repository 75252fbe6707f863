"""
Async Elasticsearch implementation of the search backend.

This module adapts AsyncElasticsearch to the SearchBackend interface used
by the executors and the alert persistence layer. Client payloads are
parsed into the backend response models and client errors are translated
into the engine's error taxonomy.

Error mapping:
    - ConnectionTimeout: BackendQueryError(timed_out=True)
    - ConnectionError: BackendQueryError
    - ApiError: BackendQueryError carrying the HTTP status
    - Any failure of a whole bulk request: BulkWriteError

Example:
    >>> from alerting_engine.config.models import ElasticsearchConnectionConfig
    >>> from alerting_engine.storage.elasticsearch_client import ElasticsearchClient
    >>>
    >>> client = ElasticsearchClient(ElasticsearchConnectionConfig(url="http://es:9200"))
    >>> await client.connect()
    >>> response = await client.search(["logs-*"], {"match_all": {}}, [{"@timestamp": "asc"}])
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import structlog
from elasticsearch import (
    ApiError,
    AsyncElasticsearch,
    ConnectionError as ESConnectionError,
    ConnectionTimeout,
    NotFoundError,
)

from alerting_engine.config.models import ElasticsearchConnectionConfig
from alerting_engine.errors import BackendQueryError, BulkWriteError
from alerting_engine.interfaces.search_backend import SearchBackend
from alerting_engine.models.alerts import AlertWriteOperation, WriteAction
from alerting_engine.models.backend import (
    AggregationResponse,
    BulkResponse,
    BulkResponseItem,
    SearchResponse,
    ShardFailure,
)
from alerting_engine.models.matches import RawMatch

logger = structlog.get_logger(__name__)


class ElasticsearchClientError(Exception):
    """Base exception for Elasticsearch client errors."""

    pass


class ElasticsearchConnectionException(ElasticsearchClientError):
    """Raised when Elasticsearch connection fails."""

    pass


# =============================================================================
# RESPONSE PARSING
# =============================================================================


def parse_hit(hit: Dict[str, Any]) -> RawMatch:
    """Convert a raw search or EQL hit to a RawMatch."""
    return RawMatch(
        id=hit["_id"],
        index=hit.get("_index", ""),
        version=hit.get("_version"),
        sort=hit.get("sort", []),
        source=hit.get("_source", {}),
        fields=hit.get("fields", {}),
        seq_no=hit.get("_seq_no"),
        primary_term=hit.get("_primary_term"),
    )


def parse_shard_failures(body: Dict[str, Any]) -> List[ShardFailure]:
    """Extract per-shard failures from a search response body."""
    failures: List[ShardFailure] = []
    for failure in body.get("_shards", {}).get("failures", []) or []:
        reason = failure.get("reason") or {}
        caused_by = reason.get("caused_by") or {}
        failures.append(
            ShardFailure(
                index=failure.get("index"),
                shard=failure.get("shard"),
                reason_type=reason.get("type"),
                reason=reason.get("reason"),
                caused_by_type=caused_by.get("type"),
                caused_by_reason=caused_by.get("reason"),
            )
        )
    return failures


def parse_total(hits: Dict[str, Any]) -> Optional[int]:
    """Total hit count, which is an object or a plain number depending on the request."""
    total = hits.get("total")
    if isinstance(total, dict):
        return total.get("value")
    return total


def parse_bulk_item(entry: Dict[str, Any]) -> BulkResponseItem:
    """Convert one bulk response entry ({action: result}) to a BulkResponseItem."""
    action, result = next(iter(entry.items()))
    error = result.get("error") or {}
    if isinstance(error, str):
        error = {"reason": error}
    return BulkResponseItem(
        action=action,
        doc_id=result.get("_id", ""),
        status=int(result.get("status", 500)),
        error_type=error.get("type"),
        error_reason=error.get("reason") if error else None,
        seq_no=result.get("_seq_no"),
        primary_term=result.get("_primary_term"),
    )


def build_bulk_body(operations: List[AlertWriteOperation]) -> List[Dict[str, Any]]:
    """
    Build the action/document line pairs of a bulk request.

    Updates carry their concurrency tokens so a stale update is rejected
    with a version conflict instead of overwriting a newer document.
    """
    body: List[Dict[str, Any]] = []
    for operation in operations:
        if operation.action == WriteAction.CREATE:
            body.append({"create": {"_index": operation.index, "_id": operation.doc_id}})
            body.append(operation.document)
            continue

        header: Dict[str, Any] = {"_index": operation.index, "_id": operation.doc_id}
        if operation.if_seq_no is not None and operation.if_primary_term is not None:
            header["if_seq_no"] = operation.if_seq_no
            header["if_primary_term"] = operation.if_primary_term
        body.append({"update": header})
        body.append({"doc": operation.document})
    return body


class ElasticsearchClient(SearchBackend):
    """
    Async Elasticsearch search backend.

    Attributes:
        config: Elasticsearch connection configuration.
        _client: AsyncElasticsearch instance.
        _connected: Whether the client is connected.

    Example:
        >>> client = ElasticsearchClient(config)
        >>> await client.connect()
        >>> try:
        ...     resolved = await client.resolve_indices(["logs-*"])
        ... finally:
        ...     await client.disconnect()
    """

    def __init__(self, config: ElasticsearchConnectionConfig) -> None:
        """
        Initialize the Elasticsearch client.

        Args:
            config: Elasticsearch connection configuration.
        """
        self.config = config
        self._client: Optional[AsyncElasticsearch] = None
        self._connected: bool = False

        logger.info(
            "elasticsearch_client_initialized",
            url=config.url,
            request_timeout=config.request_timeout,
        )

    @property
    def is_connected(self) -> bool:
        """
        Check if the client is connected to Elasticsearch.

        Returns:
            bool: True if connected, False otherwise.
        """
        return self._connected and self._client is not None

    async def connect(self) -> None:
        """
        Create the client and verify the cluster is reachable.

        Raises:
            ElasticsearchConnectionException: If the cluster does not respond.
        """
        if self._connected:
            logger.warning("elasticsearch_already_connected")
            return

        kwargs: Dict[str, Any] = {
            "hosts": [self.config.url],
            "verify_certs": self.config.verify_certs,
            "request_timeout": self.config.request_timeout,
            "max_retries": self.config.max_retries,
            "retry_on_timeout": True,
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key

        self._client = AsyncElasticsearch(**kwargs)

        try:
            reachable = await self._client.ping()
        except (ESConnectionError, ConnectionTimeout, ApiError) as e:
            await self._close_client()
            logger.error("elasticsearch_connection_failed", url=self.config.url, error=str(e))
            raise ElasticsearchConnectionException(
                f"Failed to connect to Elasticsearch at {self.config.url}: {e}"
            ) from e

        if not reachable:
            await self._close_client()
            logger.error("elasticsearch_connection_failed", url=self.config.url)
            raise ElasticsearchConnectionException(
                f"Elasticsearch at {self.config.url} did not respond to ping"
            )

        self._connected = True
        logger.info("elasticsearch_connected", url=self.config.url)

    async def _close_client(self) -> None:
        if self._client is not None:
            try:
                await self._client.close()
            except (ESConnectionError, OSError) as e:
                logger.warning("elasticsearch_close_error", error=str(e))
            finally:
                self._client = None

    async def disconnect(self) -> None:
        """
        Close the client and release resources.

        Safe to call multiple times.
        """
        await self._close_client()
        self._connected = False
        logger.info("elasticsearch_disconnected")

    async def ping(self) -> bool:
        """
        Check Elasticsearch connection health.

        Returns:
            bool: True if the cluster responds, False otherwise.
        """
        if not self._client:
            return False

        try:
            return bool(await self._client.ping())
        except (ESConnectionError, ConnectionTimeout, ApiError) as e:
            logger.warning("elasticsearch_ping_failed", error=str(e))
            return False

    def _require_connection(self, timeout_seconds: float) -> AsyncElasticsearch:
        """
        Ensure client is connected and return it bound to a request timeout.

        Raises:
            BackendQueryError: If not connected.
        """
        if not self._connected or self._client is None:
            raise BackendQueryError("Elasticsearch client is not connected")
        return self._client.options(request_timeout=timeout_seconds)

    @asynccontextmanager
    async def _translate_errors(self, operation: str) -> AsyncIterator[None]:
        """
        Translate client errors raised inside the block to BackendQueryError.

        Args:
            operation: Name of the operation for logging.
        """
        try:
            yield
        except ConnectionTimeout as e:
            logger.warning("elasticsearch_request_timeout", operation=operation, error=str(e))
            raise BackendQueryError(
                f"{operation} timed out: {e}",
                timed_out=True,
            ) from e
        except ESConnectionError as e:
            logger.warning("elasticsearch_connection_error", operation=operation, error=str(e))
            raise BackendQueryError(f"{operation} failed: {e}") from e
        except ApiError as e:
            logger.warning(
                "elasticsearch_request_failed",
                operation=operation,
                status=e.status_code,
                error=str(e),
            )
            raise BackendQueryError(
                f"{operation} failed: {e}",
                status_code=e.status_code,
            ) from e

    # =========================================================================
    # SEARCH
    # =========================================================================

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
        client = self._require_connection(timeout_seconds)
        params: Dict[str, Any] = {
            "index": indices,
            "query": query,
            "sort": sort,
            "size": size,
            "track_total_hits": False,
            "allow_no_indices": True,
            "ignore_unavailable": True,
            "timeout": f"{int(timeout_seconds * 1000)}ms",
        }
        if search_after:
            params["search_after"] = search_after
        if seq_no_primary_term:
            params["seq_no_primary_term"] = True

        async with self._translate_errors("search"):
            response = await client.search(**params)

        body = response.body
        hits = body.get("hits", {})
        return SearchResponse(
            hits=[parse_hit(hit) for hit in hits.get("hits", [])],
            total=parse_total(hits),
            took_ms=float(body.get("took", 0)),
            timed_out=bool(body.get("timed_out", False)),
            shard_failures=parse_shard_failures(body),
        )

    async def aggregate(
        self,
        indices: List[str],
        query: Dict[str, Any],
        aggregations: Dict[str, Any],
        timeout_seconds: float = 30.0,
    ) -> AggregationResponse:
        client = self._require_connection(timeout_seconds)

        async with self._translate_errors("aggregate"):
            response = await client.search(
                index=indices,
                query=query,
                aggregations=aggregations,
                size=0,
                track_total_hits=False,
                allow_no_indices=True,
                ignore_unavailable=True,
            )

        body = response.body
        return AggregationResponse(
            aggregations=body.get("aggregations", {}),
            took_ms=float(body.get("took", 0)),
            shard_failures=parse_shard_failures(body),
        )

    async def eql_search(
        self,
        indices: List[str],
        query: str,
        filter_query: Dict[str, Any],
        size: int,
        timestamp_field: str,
        timeout_seconds: float = 30.0,
    ) -> SearchResponse:
        client = self._require_connection(timeout_seconds)

        async with self._translate_errors("eql_search"):
            response = await client.eql.search(
                index=indices,
                query=query,
                filter=filter_query,
                size=size,
                timestamp_field=timestamp_field,
                allow_no_indices=True,
                ignore_unavailable=True,
            )

        body = response.body
        hits = body.get("hits", {})
        return SearchResponse(
            hits=[parse_hit(event) for event in hits.get("events", []) or []],
            sequences=[
                [parse_hit(event) for event in sequence.get("events", [])]
                for sequence in hits.get("sequences", []) or []
            ],
            total=parse_total(hits),
            took_ms=float(body.get("took", 0)),
            timed_out=bool(body.get("timed_out", False)),
            shard_failures=parse_shard_failures(body),
        )

    # =========================================================================
    # BULK
    # =========================================================================

    async def bulk(
        self,
        operations: List[AlertWriteOperation],
        timeout_seconds: float = 30.0,
    ) -> BulkResponse:
        if not operations:
            return BulkResponse()

        if not self._connected or self._client is None:
            raise BulkWriteError("Elasticsearch client is not connected")
        client = self._client.options(request_timeout=timeout_seconds)

        start_time = time.monotonic()
        try:
            response = await client.bulk(operations=build_bulk_body(operations))
        except ConnectionTimeout as e:
            logger.error("bulk_request_timeout", operations=len(operations), error=str(e))
            raise BulkWriteError(f"Bulk request timed out: {e}") from e
        except ESConnectionError as e:
            logger.error("bulk_request_failed", operations=len(operations), error=str(e))
            raise BulkWriteError(f"Bulk request failed: {e}") from e
        except ApiError as e:
            logger.error(
                "bulk_request_failed",
                operations=len(operations),
                status=e.status_code,
                error=str(e),
            )
            raise BulkWriteError(f"Bulk request failed: {e}", status_code=e.status_code) from e

        body = response.body
        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.debug(
            "bulk_request_completed",
            operations=len(operations),
            errors=bool(body.get("errors", False)),
            elapsed_ms=round(elapsed_ms, 2),
        )

        return BulkResponse(
            items=[parse_bulk_item(entry) for entry in body.get("items", [])],
            took_ms=float(body.get("took", elapsed_ms)),
            errors=bool(body.get("errors", False)),
        )

    # =========================================================================
    # INDICES AND MAPPINGS
    # =========================================================================

    async def resolve_indices(self, patterns: List[str]) -> Dict[str, List[str]]:
        client = self._require_connection(self.config.request_timeout)
        resolved: Dict[str, List[str]] = {}

        for pattern in patterns:
            try:
                async with self._translate_errors("resolve_indices"):
                    response = await client.indices.resolve_index(
                        name=pattern,
                        expand_wildcards="open",
                    )
            except BackendQueryError as e:
                if e.status_code != 404:
                    raise
                resolved[pattern] = []
                continue

            body = response.body
            names = {index["name"] for index in body.get("indices", [])}
            for data_stream in body.get("data_streams", []):
                names.update(data_stream.get("backing_indices", []))
            resolved[pattern] = sorted(names)

        return resolved

    async def get_field_mappings(
        self,
        indices: List[str],
        fields: List[str],
    ) -> Dict[str, Set[str]]:
        if not indices:
            return {}
        client = self._require_connection(self.config.request_timeout)

        try:
            async with self._translate_errors("get_field_mappings"):
                response = await client.indices.get_field_mapping(
                    index=indices,
                    fields=fields,
                    allow_no_indices=True,
                    ignore_unavailable=True,
                )
        except BackendQueryError as e:
            if isinstance(e.__cause__, NotFoundError):
                return {index: set() for index in indices}
            raise

        mapped: Dict[str, Set[str]] = {index: set() for index in indices}
        for index, entry in response.body.items():
            mapped[index] = set((entry.get("mappings") or {}).keys())
        return mapped
