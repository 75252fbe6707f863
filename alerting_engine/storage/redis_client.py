"""
Async Redis client for value lists and exception items.

This module stores the large value lists referenced by "is in list"
exception entries and the exception items themselves. It implements the
ListLookup and ExceptionItemSource collaborators used during rule runs.

Key Patterns:
    - Value lists: `valuelist:{type}:{list_id}` (set of string values)
    - Exception items: `exceptions:{namespace}:{list_id}` (hash of item_id -> JSON)

Example:
    >>> from alerting_engine.config.models import RedisConnectionConfig
    >>> from alerting_engine.storage.redis_client import RedisListClient
    >>>
    >>> client = RedisListClient(RedisConnectionConfig(url="redis://localhost:6379"))
    >>> await client.connect()
    >>> await client.add_list_values("blocked-ips", "ip", ["10.0.0.1"])
    >>> await client.are_members("blocked-ips", "ip", ["10.0.0.1", "10.0.0.2"])
    {'10.0.0.1'}
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set

import structlog
from pydantic import ValidationError
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from alerting_engine.config.models import RedisConnectionConfig
from alerting_engine.errors import ExceptionListError
from alerting_engine.interfaces.collaborators import ExceptionItemSource, ListLookup
from alerting_engine.models.exceptions import ExceptionItem, ExceptionListRef

logger = structlog.get_logger(__name__)


class RedisClientError(Exception):
    """Base exception for Redis client errors."""

    pass


class RedisConnectionException(RedisClientError):
    """Raised when Redis connection fails."""

    pass


class RedisOperationError(RedisClientError):
    """Raised when a Redis operation fails."""

    pass


class RedisListClient(ListLookup, ExceptionItemSource):
    """
    Async Redis client for value lists and exception items.

    Attributes:
        config: Redis connection configuration.
        _pool: Connection pool for efficient connection reuse.
        _client: Redis client instance.
        _connected: Whether the client is connected.

    Example:
        >>> client = RedisListClient(config)
        >>> await client.connect()
        >>> try:
        ...     items = await client.get_items(rule.exception_list_refs)
        ... finally:
        ...     await client.disconnect()
    """

    # Key prefixes
    KEY_VALUE_LIST = "valuelist"
    KEY_EXCEPTIONS = "exceptions"

    def __init__(self, config: RedisConnectionConfig) -> None:
        """
        Initialize the Redis client.

        Args:
            config: Redis connection configuration containing URL, db, and pool settings.
        """
        self.config = config
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None  # type: ignore[type-arg]
        self._connected: bool = False

        logger.info(
            "redis_client_initialized",
            url=config.url,
            db=config.db,
            max_connections=config.max_connections,
        )

    @property
    def is_connected(self) -> bool:
        """
        Check if the client is connected to Redis.

        Returns:
            bool: True if connected, False otherwise.
        """
        return self._connected and self._client is not None

    async def connect(self) -> None:
        """
        Establish connection to Redis.

        Raises:
            RedisConnectionException: If connection fails.
        """
        if self._connected:
            logger.warning("redis_already_connected")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.config.url,
                db=self.config.db,
                max_connections=self.config.max_connections,
                socket_timeout=self.config.socket_timeout,
                socket_connect_timeout=self.config.socket_timeout,
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            self._connected = True

            logger.info(
                "redis_connected",
                url=self.config.url,
                db=self.config.db,
            )

        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            self._connected = False
            logger.error(
                "redis_connection_failed",
                url=self.config.url,
                error=str(e),
            )
            raise RedisConnectionException(
                f"Failed to connect to Redis at {self.config.url}: {e}"
            ) from e

    async def disconnect(self) -> None:
        """
        Close Redis connection and release resources.

        Safe to call multiple times.
        """
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning("redis_close_error", error=str(e))
            finally:
                self._client = None

        if self._pool is not None:
            try:
                await self._pool.aclose()
            except RedisError as e:
                logger.warning("redis_pool_close_error", error=str(e))
            finally:
                self._pool = None

        self._connected = False
        logger.info("redis_disconnected")

    async def ping(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            bool: True if Redis responds to PING, False otherwise.
        """
        if not self._client:
            return False

        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False

    def _require_connection(self) -> Redis:  # type: ignore[type-arg]
        """
        Ensure client is connected and return the Redis instance.

        Raises:
            RedisConnectionException: If not connected.
        """
        if not self._connected or self._client is None:
            raise RedisConnectionException("Redis client is not connected")
        return self._client

    # =========================================================================
    # VALUE LISTS
    # =========================================================================

    def _value_list_key(self, list_id: str, value_type: str) -> str:
        """Redis key in format `valuelist:{type}:{list_id}`."""
        return f"{self.KEY_VALUE_LIST}:{value_type}:{list_id}"

    async def add_list_values(
        self,
        list_id: str,
        value_type: str,
        values: Iterable[str],
    ) -> int:
        """
        Add values to a value list.

        Returns:
            int: Number of values that were not already present.

        Raises:
            RedisConnectionException: If not connected.
            RedisOperationError: If the operation fails.
        """
        client = self._require_connection()
        members = [str(value) for value in values]
        if not members:
            return 0

        try:
            added = await client.sadd(self._value_list_key(list_id, value_type), *members)
            logger.debug("value_list_updated", list_id=list_id, type=value_type, added=added)
            return int(added)
        except RedisError as e:
            logger.error("value_list_update_failed", list_id=list_id, error=str(e))
            raise RedisOperationError(f"Failed to update value list {list_id}: {e}") from e

    async def is_member(self, list_id: str, value_type: str, value: str) -> bool:
        """
        Check if a single value is in a value list.

        Raises:
            RedisConnectionException: If not connected.
            RedisOperationError: If the operation fails.
        """
        client = self._require_connection()
        try:
            return bool(
                await client.sismember(self._value_list_key(list_id, value_type), value)
            )
        except RedisError as e:
            logger.error("value_list_lookup_failed", list_id=list_id, error=str(e))
            raise RedisOperationError(f"Failed to look up value list {list_id}: {e}") from e

    async def are_members(
        self,
        list_id: str,
        value_type: str,
        values: List[str],
    ) -> Set[str]:
        """
        Batched membership check with a single SMISMEMBER call.

        Returns:
            Set[str]: The subset of values present in the list.

        Raises:
            RedisConnectionException: If not connected.
            RedisOperationError: If the operation fails.
        """
        if not values:
            return set()
        client = self._require_connection()
        try:
            flags = await client.smismember(self._value_list_key(list_id, value_type), values)
        except RedisError as e:
            logger.error(
                "value_list_lookup_failed",
                list_id=list_id,
                values=len(values),
                error=str(e),
            )
            raise RedisOperationError(f"Failed to look up value list {list_id}: {e}") from e
        return {value for value, flag in zip(values, flags) if flag}

    # =========================================================================
    # EXCEPTION ITEMS
    # =========================================================================

    def _exceptions_key(self, ref: ExceptionListRef) -> str:
        """Redis key in format `exceptions:{namespace}:{list_id}`."""
        return f"{self.KEY_EXCEPTIONS}:{ref.namespace_type.value}:{ref.list_id}"

    async def put_exception_item(self, ref: ExceptionListRef, item: ExceptionItem) -> None:
        """
        Store or replace an exception item.

        Raises:
            RedisConnectionException: If not connected.
            RedisOperationError: If the operation fails.
        """
        client = self._require_connection()
        try:
            await client.hset(
                self._exceptions_key(ref),
                item.item_id,
                item.model_dump_json(by_alias=True),
            )
            logger.debug("exception_item_stored", list_id=ref.list_id, item_id=item.item_id)
        except RedisError as e:
            logger.error("exception_item_store_failed", item_id=item.item_id, error=str(e))
            raise RedisOperationError(f"Failed to store exception item {item.item_id}: {e}") from e

    async def get_items(self, refs: List[ExceptionListRef]) -> List[ExceptionItem]:
        """
        Load every item of the referenced exception lists.

        Unreadable items are skipped with a warning so one bad item does
        not disable a whole list.

        Raises:
            ExceptionListError: If Redis cannot be reached or queried.
        """
        try:
            client = self._require_connection()
            raw: Dict[str, Dict[str, str]] = {}
            async with client.pipeline(transaction=False) as pipe:
                for ref in refs:
                    pipe.hgetall(self._exceptions_key(ref))
                results = await pipe.execute()
            for ref, entries in zip(refs, results):
                raw[ref.list_id] = entries or {}
        except (RedisClientError, RedisError) as e:
            logger.error("exception_items_fetch_failed", lists=len(refs), error=str(e))
            raise ExceptionListError(str(e)) from e

        items: List[ExceptionItem] = []
        for list_id, entries in raw.items():
            for item_id in sorted(entries):
                try:
                    items.append(ExceptionItem.model_validate_json(entries[item_id]))
                except ValidationError as e:
                    logger.warning(
                        "exception_item_invalid",
                        list_id=list_id,
                        item_id=item_id,
                        error=str(e),
                    )
        return items
