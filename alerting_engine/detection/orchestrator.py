"""
Rule run orchestration.

ExecutionOrchestrator drives one rule run end to end:

    Pending -> Running -> Succeeded | PartialFailure | Failed

    1. authorize the rule type for the rule's consumer
    2. plan the time tuples, recording a warning for uncovered gaps
    3. check the timestamp field and keep the indices that map it
    4. load exception items once
    5. for each tuple, in order: search, filter, suppress, write
    6. merge every tuple's RunResult and report the final status

Backend errors fail only their tuple. Configuration errors, authorization
denials, a timestamp field missing everywhere and cancellation end the run
as failed. Anything unexpected is reported as "error" and re-raised.

Example:
    >>> orchestrator = ExecutionOrchestrator(
    ...     backend=backend,
    ...     registry=create_default_registry(),
    ...     list_lookup=lists,
    ...     exception_source=lists,
    ...     authorizer=ConsumerAuthorizer(),
    ...     status_sink=postgres,
    ... )
    >>> outcome = await orchestrator.run(rule, previous_started_at=last_start)
    >>> outcome.status
    <RunStatus.SUCCEEDED: 'succeeded'>
"""

import asyncio
from contextlib import aclosing
from datetime import datetime
from typing import List, Optional, Tuple

import structlog

from alerting_engine.config.models import ExecutionSettings
from alerting_engine.dates import utc_now
from alerting_engine.detection.alert_writer import build_alert_operations
from alerting_engine.detection.exception_filter import ExceptionFilter
from alerting_engine.detection.executors import ExecutionContext, RuleExecutor
from alerting_engine.detection.planner import plan_time_windows
from alerting_engine.detection.registry import RuleTypeRegistry
from alerting_engine.detection.searcher import PaginatedSearcher, check_timestamp_fields
from alerting_engine.detection.storage import AlertStorage
from alerting_engine.detection.suppression import SuppressionEngine
from alerting_engine.errors import (
    AuthorizationError,
    BackendQueryError,
    ConfigurationError,
    ExceptionListError,
    MappingError,
    RunCancelled,
)
from alerting_engine.interfaces.collaborators import (
    Authorizer,
    ExceptionItemSource,
    ExecutionStatusSink,
    ListLookup,
)
from alerting_engine.interfaces.search_backend import SearchBackend
from alerting_engine.models.exceptions import ExceptionItem
from alerting_engine.models.matches import TimeTuple
from alerting_engine.models.results import (
    ExecutionOutcome,
    RunResult,
    RunStatus,
    TimestampCheckStatus,
    merge_run_results,
)
from alerting_engine.models.rules import RuleDefinition

logger = structlog.get_logger(__name__)


MAX_ALERTS_WARNING = (
    "This rule reached the maximum alert limit for the rule execution. "
    "Some alerts were not created."
)
EXECUTE_OPERATION = "execute"
UNEXPECTED_ERROR_STATUS = "error"


class ExecutionOrchestrator:
    """
    Runs rules against the backend and reports their status.

    The orchestrator holds no per-run state; every run builds its own
    suppression engine and result accumulator, so runs of different rules
    may execute concurrently on one instance.

    Attributes:
        backend: Search backend.
        registry: Rule type registry.
        exception_filter: Exception filter bound to the list lookup.
        exception_source: Loads exception items.
        authorizer: Authorization boundary.
        status_sink: Receives the final status of every run.
        settings: Execution settings.
    """

    def __init__(
        self,
        backend: SearchBackend,
        registry: RuleTypeRegistry,
        list_lookup: ListLookup,
        exception_source: ExceptionItemSource,
        authorizer: Authorizer,
        status_sink: ExecutionStatusSink,
        settings: Optional[ExecutionSettings] = None,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.exception_filter = ExceptionFilter(list_lookup)
        self.exception_source = exception_source
        self.authorizer = authorizer
        self.status_sink = status_sink
        self.settings = settings or ExecutionSettings()
        self.searcher = PaginatedSearcher(
            backend,
            page_size=self.settings.page_size,
            tiebreaker_field=self.settings.tiebreaker_field,
            timeout_seconds=self.settings.search_timeout_seconds,
        )
        self.storage = AlertStorage(
            backend,
            alerts_index=self.settings.alerts_index,
            batch_size=self.settings.bulk_batch_size,
            timeout_seconds=self.settings.bulk_timeout_seconds,
            ignore_status_codes=self.settings.ignore_status_codes,
        )

    # =========================================================================
    # Run setup
    # =========================================================================

    async def _resolve_indices(
        self,
        rule: RuleDefinition,
        executor: RuleExecutor,
    ) -> Tuple[List[str], List[str]]:
        """
        Keep the indices that map the timestamp field.

        Returns:
            Tuple of (searchable indices, warnings).

        Raises:
            MappingError: If no index maps the field.
            BackendQueryError: If the check itself fails.
        """
        timestamp_field = executor.timestamp_field(rule)
        check = await check_timestamp_fields(
            self.backend, rule.source_indices, timestamp_field
        )
        if check.status == TimestampCheckStatus.ERROR:
            raise MappingError(
                " ".join(check.messages)
                or f'No index maps the timestamp field "{timestamp_field}"',
                field=timestamp_field,
                index_patterns=rule.source_indices,
            )
        return check.success_indices, list(check.messages)

    async def _load_exception_items(self, rule: RuleDefinition) -> List[ExceptionItem]:
        """
        Fetch the rule's exception items once per run.

        Raises:
            ExceptionListError: If the items cannot be loaded.
        """
        if not rule.exception_list_refs:
            return []
        items = await self.exception_source.get_items(rule.exception_list_refs)
        logger.debug(
            "exception_items_loaded",
            rule_id=rule.rule_id,
            lists=len(rule.exception_list_refs),
            items=len(items),
        )
        return items

    async def _create_suppression_engine(
        self,
        rule: RuleDefinition,
        now: datetime,
    ) -> Optional[SuppressionEngine]:
        """Build the run's suppression engine, seeded for time-window mode."""
        if rule.suppression is None:
            return None
        engine = SuppressionEngine(
            rule,
            rule.suppression,
            now,
            alerts_index=self.settings.alerts_index,
            budget_multiplier=self.settings.suppression_budget_multiplier,
        )
        window_start = engine.window_start
        if window_start is not None:
            engine.seed(
                await self.storage.find_open_instances(rule.rule_id, rule.space_id, window_start)
            )
        return engine

    # =========================================================================
    # Tuple processing
    # =========================================================================

    async def _run_tuple(
        self,
        time_tuple: TimeTuple,
        executor: RuleExecutor,
        context: ExecutionContext,
        items: List[ExceptionItem],
        suppression: Optional[SuppressionEngine],
        created_so_far: int,
    ) -> RunResult:
        """
        Search one tuple and persist its alerts.

        The tuple budget is the smaller of the tuple's own budget and what
        is left of the rule's budget. Iteration stops once it is spent.

        Raises:
            BackendQueryError: If a search fails.
            RunCancelled: If cancellation is requested between pages.
        """
        rule = context.rule
        budget = min(time_tuple.max_matches, rule.max_matches - created_so_far)
        result = RunResult()
        created = 0
        if budget <= 0:
            return result

        async with aclosing(executor.execute(time_tuple, context)) as batches:
            async for batch in batches:
                result = merge_run_results(
                    result,
                    RunResult(
                        success=not batch.errors,
                        search_durations_ms=batch.search_durations_ms,
                        errors=batch.errors,
                        warnings=batch.warnings,
                        last_seen_timestamp=batch.last_seen_timestamp,
                    ),
                )
                if batch.is_empty:
                    continue

                filtered = await self.exception_filter.filter(
                    batch.matches,
                    items,
                    allow_value_lists=executor.supports_value_list_exceptions,
                    sequences=batch.sequences,
                )
                remaining = budget - created
                suppressed = 0
                truncated = False
                if suppression is not None:
                    outcome = suppression.merge(filtered.kept, remaining)
                    sequence_outcome = suppression.merge_sequences(
                        filtered.kept_sequences, remaining - outcome.created
                    )
                    operations = outcome.operations + sequence_outcome.operations
                    suppressed = outcome.suppressed + sequence_outcome.suppressed
                    truncated = outcome.truncated or sequence_outcome.truncated
                else:
                    operations = build_alert_operations(
                        filtered.kept,
                        filtered.kept_sequences,
                        rule,
                        context.now,
                        self.settings.alerts_index,
                    )

                written = await self.storage.write(operations, remaining)
                if suppression is not None:
                    suppression.record_outcomes(written.outcomes)
                created += written.created_counted

                result = merge_run_results(
                    result,
                    RunResult(
                        success=written.success,
                        created_count=written.created_counted,
                        suppressed_count=suppressed,
                        bulk_durations_ms=written.duration_ms,
                        errors=written.errors,
                        warnings=filtered.warnings,
                    ),
                )
                if created >= budget:
                    break
                if truncated and suppression.total_processed >= suppression.max_total:
                    logger.info(
                        "suppression_cap_reached",
                        rule_id=rule.rule_id,
                        max_total=suppression.max_total,
                    )
                    break

        logger.debug(
            "tuple_processed",
            rule_id=rule.rule_id,
            tuple_from=time_tuple.from_.isoformat(),
            tuple_to=time_tuple.to.isoformat(),
            budget=budget,
            created=result.created_count,
            suppressed=result.suppressed_count,
        )
        return result

    # =========================================================================
    # Run
    # =========================================================================

    async def _report(
        self,
        rule: RuleDefinition,
        status: str,
        message: str,
        result: RunResult,
        tuples_planned: int,
        tuples_processed: int,
        tuples_failed: int,
    ) -> None:
        metrics = result.metrics()
        metrics.update(
            {
                "tuples_planned": tuples_planned,
                "tuples_processed": tuples_processed,
                "tuples_failed": tuples_failed,
            }
        )
        await self.status_sink.report_status(rule.rule_id, status, message, metrics)

    async def run(
        self,
        rule: RuleDefinition,
        previous_started_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionOutcome:
        """
        Execute one run of a rule.

        Args:
            rule: Rule to execute.
            previous_started_at: Start of the previous run, None on first run.
            now: Start of this run (default: current time).
            cancel_event: Set to cancel at the next tuple or page boundary.

        Returns:
            ExecutionOutcome: Final status, merged result and tuple counts.

        Raises:
            Exception: Unexpected errors, after reporting status "error".
        """
        now = now or utc_now()
        log = logger.bind(rule_id=rule.rule_id, rule_type=rule.rule_type.value)
        result = RunResult()
        tuples_planned = 0
        tuples_processed = 0
        tuples_failed = 0
        fatal = False

        log.info("rule_run_started", space_id=rule.space_id, status=RunStatus.RUNNING.value)

        try:
            await self.authorizer.ensure_authorized(
                rule.rule_type.value, rule.consumer, EXECUTE_OPERATION
            )
            executor = self.registry.get(rule.rule_type).executor

            plan = plan_time_windows(
                rule.from_,
                rule.to,
                rule.interval,
                rule.max_matches,
                previous_started_at,
                now,
            )
            tuples_planned = len(plan.tuples)
            gap_warning = plan.gap_warning()
            if gap_warning:
                result = result.with_warning(gap_warning)

            indices, index_warnings = await self._resolve_indices(rule, executor)
            for warning in index_warnings:
                result = result.with_warning(warning)

            items = await self._load_exception_items(rule)
            suppression = await self._create_suppression_engine(rule, now)
            context = ExecutionContext(
                rule=rule,
                backend=self.backend,
                searcher=self.searcher,
                indices=indices,
                now=now,
                timeout_seconds=self.settings.search_timeout_seconds,
                cancel_event=cancel_event,
            )

            for position, time_tuple in enumerate(plan.tuples):
                context.check_cancelled()
                if result.created_count >= rule.max_matches:
                    result = result.with_warning(MAX_ALERTS_WARNING)
                    log.info(
                        "rule_run_budget_exhausted",
                        created=result.created_count,
                        skipped_tuples=len(plan.tuples) - position,
                    )
                    break
                try:
                    tuple_result = await self._run_tuple(
                        time_tuple,
                        executor,
                        context,
                        items,
                        suppression,
                        result.created_count,
                    )
                except BackendQueryError as e:
                    tuples_failed += 1
                    log.warning(
                        "tuple_search_failed",
                        tuple_from=time_tuple.from_.isoformat(),
                        tuple_to=time_tuple.to.isoformat(),
                        error=str(e),
                        timed_out=e.timed_out,
                    )
                    tuple_result = RunResult(success=False, errors=[str(e)])
                tuples_processed += 1
                result = merge_run_results(result, tuple_result)

            if (
                result.created_count >= rule.max_matches
                and tuples_processed == len(plan.tuples)
                and MAX_ALERTS_WARNING not in result.warnings
            ):
                result = result.with_warning(MAX_ALERTS_WARNING)

        except RunCancelled as e:
            fatal = True
            result = result.with_error(str(e))
            log.warning("rule_run_cancelled", tuples_processed=tuples_processed)
        except (ConfigurationError, AuthorizationError, MappingError) as e:
            fatal = True
            result = result.with_error(str(e))
            log.error("rule_run_failed", error=str(e), error_type=type(e).__name__)
        except ExceptionListError as e:
            fatal = True
            result = result.with_error(f"unable to fetch exception list items: {e}")
            log.error("exception_items_unavailable", error=str(e))
        except BackendQueryError as e:
            fatal = True
            result = result.with_error(str(e))
            log.error("rule_run_setup_failed", error=str(e))
        except Exception as e:
            log.exception("rule_run_crashed", error=str(e))
            result = result.with_error(str(e))
            await self._report(
                rule,
                UNEXPECTED_ERROR_STATUS,
                str(e),
                result,
                tuples_planned,
                tuples_processed,
                tuples_failed,
            )
            raise

        if fatal or (tuples_processed > 0 and tuples_failed == tuples_processed):
            status = RunStatus.FAILED
        elif result.errors or result.warnings or not result.success:
            status = RunStatus.PARTIAL_FAILURE
        else:
            status = RunStatus.SUCCEEDED

        message = "; ".join(result.errors + result.warnings)
        await self._report(
            rule,
            status.reported_value,
            message,
            result,
            tuples_planned,
            tuples_processed,
            tuples_failed,
        )
        log.info(
            "rule_run_completed",
            status=status.value,
            created=result.created_count,
            suppressed=result.suppressed_count,
            tuples_processed=tuples_processed,
            tuples_failed=tuples_failed,
        )

        return ExecutionOutcome(
            rule_id=rule.rule_id,
            status=status,
            result=result,
            message=message,
            tuples_planned=tuples_planned,
            tuples_processed=tuples_processed,
            tuples_failed=tuples_failed,
            started_at=now,
            finished_at=utc_now(),
        )


def create_orchestrator(
    backend: SearchBackend,
    registry: RuleTypeRegistry,
    list_lookup: ListLookup,
    exception_source: ExceptionItemSource,
    authorizer: Authorizer,
    status_sink: ExecutionStatusSink,
    settings: Optional[ExecutionSettings] = None,
) -> ExecutionOrchestrator:
    """
    Factory function to create an ExecutionOrchestrator.

    Returns:
        ExecutionOrchestrator: Configured orchestrator.
    """
    return ExecutionOrchestrator(
        backend=backend,
        registry=registry,
        list_lookup=list_lookup,
        exception_source=exception_source,
        authorizer=authorizer,
        status_sink=status_sink,
        settings=settings,
    )
