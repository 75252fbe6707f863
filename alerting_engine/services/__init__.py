"""
Service infrastructure shared by the engine's long-running processes.

Components:
    setup_logging: structlog configuration with stdlib integration
    ServiceRunner: Lifecycle base (config, clients, signals, shutdown)

A service subclasses ServiceRunner and implements `service_name`,
`_initialize`, `_run` and `_cleanup`. The base class loads configuration,
connects the backend clients before `_initialize` and disconnects them
after `_cleanup`, whatever way `_run` ends.

Example:
    >>> class MyService(ServiceRunner):
    ...     @property
    ...     def service_name(self) -> str:
    ...         return "my-service"
    ...     async def _initialize(self) -> None: ...
    ...     async def _run(self) -> None:
    ...         await self.shutdown_event.wait()
    ...     async def _cleanup(self) -> None: ...
    >>> await MyService("config").run()
"""

from __future__ import annotations

import asyncio
import logging
import signal
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Union

import structlog

from alerting_engine.config.loader import load_config
from alerting_engine.config.models import EngineConfig, LogFormat, LogLevel
from alerting_engine.storage.elasticsearch_client import ElasticsearchClient
from alerting_engine.storage.postgres_client import PostgresClient
from alerting_engine.storage.redis_client import RedisListClient


def setup_logging(
    log_format: Union[LogFormat, str] = LogFormat.JSON,
    level: Union[LogLevel, str] = LogLevel.INFO,
) -> None:
    """
    Configure structured logging.

    Args:
        log_format: "json" for one JSON object per line, "text" for console output.
        level: Minimum log level.
    """
    log_format = LogFormat(log_format)
    level_name = LogLevel(level).value

    renderer: Any
    if log_format == LogFormat.JSON:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level_name),
        force=True,
    )

    # Transport logs are noisy at INFO
    logging.getLogger("elastic_transport").setLevel(logging.WARNING)


class ServiceRunner(ABC):
    """
    Base class for engine services.

    Attributes:
        config_path: Configuration directory.
        config: Loaded configuration (set by run()).
        elasticsearch_client: Search backend client.
        redis_client: Value list and exception item client.
        postgres_client: Run state and status history client.
        shutdown_event: Set on SIGINT/SIGTERM or by request_shutdown().
        logger: Logger bound to the service name.
    """

    def __init__(self, config_path: str = "config") -> None:
        self.config_path = config_path
        self.config: Optional[EngineConfig] = None
        self.elasticsearch_client: Optional[ElasticsearchClient] = None
        self.redis_client: Optional[RedisListClient] = None
        self.postgres_client: Optional[PostgresClient] = None
        self.shutdown_event = asyncio.Event()
        self.logger = structlog.get_logger(self.service_name)

    @property
    @abstractmethod
    def service_name(self) -> str:
        """Service name used in logs."""
        pass

    @abstractmethod
    async def _initialize(self) -> None:
        """Build service components once clients are connected."""
        pass

    @abstractmethod
    async def _run(self) -> None:
        """Main loop; returns once shutdown_event is set."""
        pass

    @abstractmethod
    async def _cleanup(self) -> None:
        """Service-specific cleanup before clients are disconnected."""
        pass

    def request_shutdown(self) -> None:
        """Ask the main loop to stop."""
        if not self.shutdown_event.is_set():
            self.logger.info("shutdown_requested", service=self.service_name)
            self.shutdown_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                # Not supported on this platform's event loop
                self.logger.debug("signal_handler_unavailable", signal=sig.name)

    async def _connect_clients(self) -> None:
        """Create and connect the Elasticsearch, Redis and PostgreSQL clients."""
        if self.config is None:
            raise RuntimeError("Configuration not loaded")

        self.elasticsearch_client = ElasticsearchClient(self.config.elasticsearch)
        await self.elasticsearch_client.connect()

        self.redis_client = RedisListClient(self.config.redis)
        await self.redis_client.connect()

        self.postgres_client = PostgresClient(self.config.postgres)
        await self.postgres_client.connect()
        await self.postgres_client.ensure_schema()

    async def _disconnect_clients(self) -> None:
        clients: List[Any] = [
            self.postgres_client,
            self.redis_client,
            self.elasticsearch_client,
        ]
        for client in clients:
            if client is not None:
                await client.disconnect()

    async def run(self) -> None:
        """
        Run the service until shutdown.

        Raises:
            ConfigLoadError: If configuration cannot be loaded.
            Exception: Client connection failures and errors from _run.
        """
        self._install_signal_handlers()

        self.config = load_config(self.config_path)
        setup_logging(self.config.logging.format, self.config.log_level)

        self.logger.info(
            "service_starting",
            service=self.service_name,
            config_path=self.config_path,
            rules=len(self.config.rules),
        )

        try:
            await self._connect_clients()
            await self._initialize()
            self.logger.info("service_started", service=self.service_name)
            await self._run()
        finally:
            try:
                await self._cleanup()
            finally:
                await self._disconnect_clients()
            self.logger.info("service_stopped", service=self.service_name)


__all__ = [
    "ServiceRunner",
    "setup_logging",
]
