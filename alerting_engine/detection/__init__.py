"""
Rule execution pipeline.

Components:
    planner: Time tuples for a run, including gap catch-up
    searcher: search_after pagination and the timestamp field check
    executors: Per rule type search strategies
    registry: Rule type registry passed into the orchestrator
    exception_filter: Removes matches covered by exception items
    suppression: Merges matches sharing grouping field values
    alert_writer: Deterministic alert and suppression ids
    storage: Bulk persistence with budget truncation and error aggregation
    orchestrator: Drives a run and reports its status

Example:
    >>> from alerting_engine.detection import ExecutionOrchestrator, create_default_registry
    >>> orchestrator = ExecutionOrchestrator(backend, create_default_registry(), ...)
    >>> outcome = await orchestrator.run(rule, previous_started_at=None)
"""

from alerting_engine.detection.alert_writer import (
    build_alert,
    build_alert_operations,
    build_instance_id,
    build_sequence_alerts,
    generate_alert_id,
    generate_building_block_ids,
)
from alerting_engine.detection.exception_filter import (
    ExceptionFilter,
    FilterResult,
    sort_exception_items,
)
from alerting_engine.detection.executors import (
    EqlExecutor,
    ExecutionContext,
    MachineLearningExecutor,
    NewTermsExecutor,
    QueryExecutor,
    RuleExecutor,
    ThreatMatchExecutor,
    ThresholdExecutor,
    build_threshold_match,
)
from alerting_engine.detection.orchestrator import ExecutionOrchestrator, create_orchestrator
from alerting_engine.detection.planner import (
    MAX_CATCHUP_RATIO,
    TimeWindowPlan,
    get_time_tuples,
    plan_time_windows,
)
from alerting_engine.detection.registry import (
    RuleTypeDefinition,
    RuleTypeRegistry,
    create_default_registry,
)
from alerting_engine.detection.searcher import (
    PaginatedSearcher,
    SearchPage,
    check_timestamp_fields,
)
from alerting_engine.detection.storage import AlertStorage
from alerting_engine.detection.suppression import (
    SuppressionEngine,
    SuppressionOutcome,
    get_suppression_terms,
    partition_missing_fields,
)

__all__ = [
    # Planner
    "MAX_CATCHUP_RATIO",
    "TimeWindowPlan",
    "get_time_tuples",
    "plan_time_windows",
    # Searcher
    "PaginatedSearcher",
    "SearchPage",
    "check_timestamp_fields",
    # Executors
    "ExecutionContext",
    "RuleExecutor",
    "QueryExecutor",
    "ThresholdExecutor",
    "EqlExecutor",
    "NewTermsExecutor",
    "ThreatMatchExecutor",
    "MachineLearningExecutor",
    "build_threshold_match",
    # Registry
    "RuleTypeDefinition",
    "RuleTypeRegistry",
    "create_default_registry",
    # Exceptions
    "ExceptionFilter",
    "FilterResult",
    "sort_exception_items",
    # Suppression
    "SuppressionEngine",
    "SuppressionOutcome",
    "get_suppression_terms",
    "partition_missing_fields",
    # Alert writer
    "build_alert",
    "build_alert_operations",
    "build_instance_id",
    "build_sequence_alerts",
    "generate_alert_id",
    "generate_building_block_ids",
    # Storage
    "AlertStorage",
    # Orchestrator
    "ExecutionOrchestrator",
    "create_orchestrator",
]
