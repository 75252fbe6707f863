"""
Async PostgreSQL client for rule execution history.

This module persists the status of every rule run and the start time of
the latest run per rule, which the planner needs to detect gaps between
runs. It implements the ExecutionStatusSink collaborator.

Key Tables:
    - rule_run_state: Latest run start per rule (one row per rule)
    - rule_execution_status: Status history, one row per finished run

Example:
    >>> from alerting_engine.config.models import PostgresConnectionConfig
    >>> from alerting_engine.storage.postgres_client import PostgresClient
    >>>
    >>> client = PostgresClient(PostgresConnectionConfig(url="postgresql://..."))
    >>> await client.connect()
    >>> await client.ensure_schema()
    >>> previous = await client.get_previous_started_at("failed-logins")
"""

from __future__ import annotations

import asyncio
import json
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg
import structlog
from asyncpg import Connection, Pool
from asyncpg.exceptions import (
    ConnectionDoesNotExistError,
    InterfaceError,
    PostgresError,
    TooManyConnectionsError,
)

from alerting_engine.config.models import PostgresConnectionConfig
from alerting_engine.interfaces.collaborators import ExecutionStatusSink

logger = structlog.get_logger(__name__)


class PostgresClientError(Exception):
    """Base exception for PostgreSQL client errors."""

    pass


class PostgresConnectionException(PostgresClientError):
    """Raised when PostgreSQL connection fails."""

    pass


class PostgresOperationError(PostgresClientError):
    """Raised when a PostgreSQL operation fails."""

    pass


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS rule_run_state (
        rule_id TEXT PRIMARY KEY,
        last_started_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rule_execution_status (
        id BIGSERIAL PRIMARY KEY,
        rule_id TEXT NOT NULL,
        status TEXT NOT NULL,
        message TEXT NOT NULL DEFAULT '',
        metrics JSONB NOT NULL DEFAULT '{}',
        reported_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_rule_execution_status_rule
        ON rule_execution_status (rule_id, reported_at DESC)
    """,
)


class PostgresClient(ExecutionStatusSink):
    """
    Async PostgreSQL client for rule run state and status history.

    Attributes:
        config: PostgreSQL connection configuration.
        _pool: Connection pool for efficient connection reuse.
        _connected: Whether the client is connected.

    Example:
        >>> client = PostgresClient(config)
        >>> await client.connect()
        >>> try:
        ...     await client.report_status("r1", "succeeded", "", {"created_count": 3})
        ... finally:
        ...     await client.disconnect()
    """

    # Maximum retries for transient errors
    MAX_RETRIES = 3

    # Retry delay in seconds
    RETRY_DELAY = 0.5

    def __init__(self, config: PostgresConnectionConfig) -> None:
        """
        Initialize the PostgreSQL client.

        Args:
            config: PostgreSQL connection configuration containing URL and pool settings.
        """
        self.config = config
        self._pool: Optional[Pool] = None
        self._connected: bool = False

        logger.info(
            "postgres_client_initialized",
            url=self._sanitize_url(config.url),
            pool_size=config.pool_size,
        )

    def _sanitize_url(self, url: str) -> str:
        """Sanitize URL for logging (remove password)."""
        if "@" in url:
            parts = url.split("@")
            if ":" in parts[0]:
                user_part = parts[0].rsplit(":", 1)[0]
                return f"{user_part}:***@{parts[1]}"
        return url

    @property
    def is_connected(self) -> bool:
        """
        Check if the client is connected to PostgreSQL.

        Returns:
            bool: True if connected, False otherwise.
        """
        return self._connected and self._pool is not None

    async def connect(self) -> None:
        """
        Establish connection pool to PostgreSQL.

        Raises:
            PostgresConnectionException: If connection fails.
        """
        if self._connected:
            logger.warning("postgres_already_connected")
            return

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.config.url,
                min_size=1,
                max_size=self.config.pool_size + self.config.max_overflow,
                command_timeout=self.config.pool_timeout,
                init=self._init_connection,
            )

            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")

            self._connected = True

            logger.info(
                "postgres_connected",
                url=self._sanitize_url(self.config.url),
            )

        except (PostgresError, OSError, asyncio.TimeoutError) as e:
            self._connected = False
            logger.error(
                "postgres_connection_failed",
                url=self._sanitize_url(self.config.url),
                error=str(e),
            )
            raise PostgresConnectionException(
                f"Failed to connect to PostgreSQL: {e}"
            ) from e

    async def _init_connection(self, conn: Connection) -> None:
        """Set the session timezone to UTC."""
        await conn.execute("SET timezone = 'UTC'")

    async def disconnect(self) -> None:
        """
        Close PostgreSQL connection pool and release resources.

        Safe to call multiple times.
        """
        if self._pool is not None:
            try:
                await self._pool.close()
            except (PostgresError, OSError) as e:
                logger.warning("postgres_close_error", error=str(e))
            finally:
                self._pool = None

        self._connected = False
        logger.info("postgres_disconnected")

    async def ping(self) -> bool:
        """
        Check PostgreSQL connection health.

        Returns:
            bool: True if PostgreSQL responds, False otherwise.
        """
        if not self._pool:
            return False

        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (PostgresError, InterfaceError, OSError) as e:
            logger.warning("postgres_ping_failed", error=str(e))
            return False

    @asynccontextmanager
    async def _acquire_connection(self) -> AsyncIterator[Connection]:
        """
        Acquire a connection from the pool with error handling.

        Yields:
            Connection: asyncpg connection from the pool.

        Raises:
            PostgresConnectionException: If not connected or pool exhausted.
        """
        if not self._connected or self._pool is None:
            raise PostgresConnectionException("PostgreSQL client is not connected")

        try:
            async with self._pool.acquire() as conn:
                yield conn
        except TooManyConnectionsError as e:
            logger.error("postgres_pool_exhausted", error=str(e))
            raise PostgresConnectionException(
                f"Connection pool exhausted: {e}"
            ) from e
        except (ConnectionDoesNotExistError, InterfaceError) as e:
            logger.error("postgres_connection_lost", error=str(e))
            self._connected = False
            raise PostgresConnectionException(
                f"Connection lost: {e}"
            ) from e

    async def _execute_with_retry(
        self,
        operation: str,
        func: Any,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute a database operation with retry logic for transient errors.

        Args:
            operation: Name of the operation for logging.
            func: Async function to execute.

        Returns:
            Any: Result of the function call.

        Raises:
            PostgresOperationError: If all retries fail.
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.MAX_RETRIES):
            try:
                return await func(*args, **kwargs)
            except (PostgresError, ConnectionDoesNotExistError, InterfaceError) as e:
                last_error = e
                if attempt < self.MAX_RETRIES - 1:
                    logger.warning(
                        "postgres_operation_retry",
                        operation=operation,
                        attempt=attempt + 1,
                        max_retries=self.MAX_RETRIES,
                        error=str(e),
                    )
                    await asyncio.sleep(self.RETRY_DELAY * (attempt + 1))
                else:
                    logger.error(
                        "postgres_operation_failed",
                        operation=operation,
                        error=str(e),
                    )

        raise PostgresOperationError(
            f"Operation '{operation}' failed after {self.MAX_RETRIES} attempts: {last_error}"
        )

    # =========================================================================
    # SCHEMA
    # =========================================================================

    async def ensure_schema(self) -> None:
        """
        Create the tables used by the engine if they do not exist.

        Raises:
            PostgresConnectionException: If not connected.
            PostgresOperationError: If the operation fails.
        """

        async def _create() -> None:
            async with self._acquire_connection() as conn:
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)

        await self._execute_with_retry("ensure_schema", _create)
        logger.info("postgres_schema_ready")

    # =========================================================================
    # RUN STATE
    # =========================================================================

    async def record_run_started(self, rule_id: str, started_at: datetime) -> None:
        """
        Record the start time of a rule run.

        Raises:
            PostgresConnectionException: If not connected.
            PostgresOperationError: If the operation fails.
        """

        async def _upsert() -> None:
            async with self._acquire_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO rule_run_state (rule_id, last_started_at)
                    VALUES ($1, $2)
                    ON CONFLICT (rule_id) DO UPDATE SET
                        last_started_at = EXCLUDED.last_started_at,
                        updated_at = NOW()
                    """,
                    rule_id,
                    started_at,
                )

        await self._execute_with_retry("record_run_started", _upsert)
        logger.debug("rule_run_start_recorded", rule_id=rule_id)

    async def get_previous_started_at(self, rule_id: str) -> Optional[datetime]:
        """
        Get the start time of the latest recorded run of a rule.

        Returns:
            Optional[datetime]: Start time, or None if the rule never ran.

        Raises:
            PostgresConnectionException: If not connected.
            PostgresOperationError: If the operation fails.
        """

        async def _query() -> Optional[datetime]:
            async with self._acquire_connection() as conn:
                return await conn.fetchval(
                    "SELECT last_started_at FROM rule_run_state WHERE rule_id = $1",
                    rule_id,
                )

        return await self._execute_with_retry("get_previous_started_at", _query)

    # =========================================================================
    # STATUS HISTORY
    # =========================================================================

    async def report_status(
        self,
        rule_id: str,
        status: str,
        message: str,
        metrics: Dict[str, Any],
    ) -> None:
        """
        Append a run status to the history.

        Raises:
            PostgresConnectionException: If not connected.
            PostgresOperationError: If the operation fails.
        """
        start_time = time.monotonic()

        async def _insert() -> None:
            async with self._acquire_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO rule_execution_status (rule_id, status, message, metrics)
                    VALUES ($1, $2, $3, $4::jsonb)
                    """,
                    rule_id,
                    status,
                    message,
                    json.dumps(metrics, default=str),
                )

        await self._execute_with_retry("report_status", _insert)

        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "rule_status_reported",
            rule_id=rule_id,
            status=status,
            elapsed_ms=round(elapsed_ms, 2),
        )

    async def query_status_history(self, rule_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """
        Get the most recent statuses of a rule, newest first.

        Raises:
            PostgresConnectionException: If not connected.
            PostgresOperationError: If the operation fails.
        """

        async def _query() -> List[Dict[str, Any]]:
            async with self._acquire_connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT rule_id, status, message, metrics, reported_at
                    FROM rule_execution_status
                    WHERE rule_id = $1
                    ORDER BY reported_at DESC
                    LIMIT $2
                    """,
                    rule_id,
                    limit,
                )
            return [
                {
                    "rule_id": row["rule_id"],
                    "status": row["status"],
                    "message": row["message"],
                    "metrics": json.loads(row["metrics"]) if row["metrics"] else {},
                    "reported_at": row["reported_at"],
                }
                for row in rows
            ]

        return await self._execute_with_retry("query_status_history", _query)
