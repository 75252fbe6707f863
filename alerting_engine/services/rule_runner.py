"""
Rule Runner Service entry point.

This service is responsible for:
- Scheduling every enabled rule on its interval
- Tracking the start of each rule's previous run for gap detection
- Running rules concurrently, bounded by max_concurrent_runs
- Cancelling runs that exceed run_timeout_seconds

Usage:
    alerting-engine
    python -m alerting_engine.services.rule_runner

Environment Variables:
    CONFIG_PATH: Path to config directory (default: config)
    ELASTICSEARCH_URL: Elasticsearch URL
    REDIS_URL: Redis connection URL (default: redis://localhost:6379)
    DATABASE_URL: PostgreSQL connection URL
    LOG_LEVEL: Logging level (default: INFO)
"""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from alerting_engine.dates import parse_interval, utc_now
from alerting_engine.detection.orchestrator import ExecutionOrchestrator, create_orchestrator
from alerting_engine.detection.registry import create_default_registry
from alerting_engine.errors import ConfigurationError
from alerting_engine.interfaces.collaborators import ConsumerAuthorizer
from alerting_engine.models.results import ExecutionOutcome
from alerting_engine.models.rules import RuleDefinition
from alerting_engine.services import ServiceRunner, setup_logging
from alerting_engine.storage.postgres_client import PostgresClientError

logger = structlog.get_logger(__name__)


# Extra time given to a cancelled run to report its status
RUN_CANCEL_GRACE_SECONDS = 10.0


class RuleRunnerService(ServiceRunner):
    """
    Periodic rule execution service.

    Attributes:
        orchestrator: Executes individual rule runs.
        run_semaphore: Bounds the number of concurrent runs.
    """

    def __init__(self, config_path: str = "config") -> None:
        """Initialize the rule runner service."""
        super().__init__(config_path)
        self.orchestrator: Optional[ExecutionOrchestrator] = None
        self.run_semaphore: Optional[asyncio.Semaphore] = None
        self._last_started: Dict[str, datetime] = {}
        self._schedule_tasks: List[asyncio.Task] = []

    @property
    def service_name(self) -> str:
        """Return service name."""
        return "rule-runner"

    async def _initialize(self) -> None:
        """Build the orchestrator from the connected clients."""
        if (
            self.config is None
            or self.elasticsearch_client is None
            or self.redis_client is None
            or self.postgres_client is None
        ):
            raise RuntimeError("Service not properly initialized")

        self.orchestrator = create_orchestrator(
            backend=self.elasticsearch_client,
            registry=create_default_registry(),
            list_lookup=self.redis_client,
            exception_source=self.redis_client,
            authorizer=ConsumerAuthorizer(self.config.authorization.allowed_consumers),
            status_sink=self.postgres_client,
            settings=self.config.execution,
        )
        self.run_semaphore = asyncio.Semaphore(self.config.execution.max_concurrent_runs)

        self.logger.info(
            "rule_runner_initialized",
            enabled_rules=[rule.rule_id for rule in self.config.get_enabled_rules()],
            max_concurrent_runs=self.config.execution.max_concurrent_runs,
        )

    async def _run(self) -> None:
        """Schedule every enabled rule and wait for shutdown."""
        if self.config is None:
            raise RuntimeError("Service not properly initialized")

        for rule in self.config.get_enabled_rules():
            task = asyncio.create_task(self._schedule_rule(rule))
            self._schedule_tasks.append(task)

        await self.shutdown_event.wait()

        for task in self._schedule_tasks:
            task.cancel()
        await asyncio.gather(*self._schedule_tasks, return_exceptions=True)

    async def _schedule_rule(self, rule: RuleDefinition) -> None:
        """
        Run a rule every interval until shutdown.

        The next run starts one interval after the previous one started;
        a run that overruns its interval delays the next one.
        """
        try:
            interval = parse_interval(rule.interval)
        except ConfigurationError as e:
            self.logger.error("rule_schedule_invalid", rule_id=rule.rule_id, error=str(e))
            return

        loop = asyncio.get_running_loop()
        try:
            while not self.shutdown_event.is_set():
                started = loop.time()
                await self.run_rule(rule)

                delay = max(0.0, interval.total_seconds() - (loop.time() - started))
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    continue
        except asyncio.CancelledError:
            self.logger.debug("rule_schedule_cancelled", rule_id=rule.rule_id)

    async def _get_previous_started_at(self, rule: RuleDefinition) -> Optional[datetime]:
        """Start of the rule's previous run, from memory or PostgreSQL."""
        previous = self._last_started.get(rule.rule_id)
        if previous is not None or self.postgres_client is None:
            return previous

        try:
            return await self.postgres_client.get_previous_started_at(rule.rule_id)
        except PostgresClientError as e:
            self.logger.warning(
                "previous_run_lookup_failed",
                rule_id=rule.rule_id,
                error=str(e),
            )
            return None

    async def _record_run_started(self, rule: RuleDefinition, started_at: datetime) -> None:
        self._last_started[rule.rule_id] = started_at
        if self.postgres_client is None:
            return

        try:
            await self.postgres_client.record_run_started(rule.rule_id, started_at)
        except PostgresClientError as e:
            self.logger.warning(
                "run_start_record_failed",
                rule_id=rule.rule_id,
                error=str(e),
            )

    async def run_rule(self, rule: RuleDefinition) -> Optional[ExecutionOutcome]:
        """
        Execute one run of a rule under the concurrency limit.

        The run is cancelled cooperatively once run_timeout_seconds elapse;
        a run that ignores cancellation is abandoned after a grace period.

        Returns:
            Optional[ExecutionOutcome]: The run outcome, or None if the run
            crashed or was abandoned.
        """
        if self.orchestrator is None or self.run_semaphore is None or self.config is None:
            raise RuntimeError("Service not properly initialized")

        run_timeout = self.config.execution.run_timeout_seconds

        async with self.run_semaphore:
            previous_started_at = await self._get_previous_started_at(rule)
            started_at = utc_now()
            await self._record_run_started(rule, started_at)

            cancel_event = asyncio.Event()
            timeout_handle = asyncio.get_running_loop().call_later(
                run_timeout, cancel_event.set
            )
            try:
                outcome = await asyncio.wait_for(
                    self.orchestrator.run(
                        rule,
                        previous_started_at=previous_started_at,
                        now=started_at,
                        cancel_event=cancel_event,
                    ),
                    timeout=run_timeout + RUN_CANCEL_GRACE_SECONDS,
                )
            except asyncio.TimeoutError:
                self.logger.error(
                    "rule_run_abandoned",
                    rule_id=rule.rule_id,
                    run_timeout_seconds=run_timeout,
                )
                return None
            except Exception as e:
                # Status was already reported as "error" by the orchestrator
                self.logger.error(
                    "rule_run_error",
                    rule_id=rule.rule_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return None
            finally:
                timeout_handle.cancel()

        if cancel_event.is_set():
            self.logger.warning(
                "rule_run_timed_out",
                rule_id=rule.rule_id,
                run_timeout_seconds=run_timeout,
            )

        return outcome

    async def _cleanup(self) -> None:
        """Service-specific cleanup."""
        self.logger.info(
            "cleanup_state",
            rules_run=len(self._last_started),
        )


async def main() -> None:
    """Main entry point."""
    # Set up initial logging
    setup_logging()

    config_path = os.getenv("CONFIG_PATH", "config")

    logger.info(
        "rule_runner_service_starting",
        version="0.1.0",
        config_path=config_path,
    )

    service = RuleRunnerService(config_path=config_path)

    try:
        await service.run()
    except Exception as e:
        logger.error("service_failed", error=str(e))
        sys.exit(1)


def cli() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
