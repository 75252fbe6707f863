"""
Data models for the rule execution engine.

All models are Pydantic v2 models, frozen once created.
"""

from alerting_engine.models.alerts import (
    AlertDocument,
    AlertStatus,
    AlertSuppressionFields,
    AlertWriteOperation,
    Ancestor,
    SuppressedAlertInstance,
    SuppressionTerm,
    WriteAction,
)
from alerting_engine.models.backend import (
    AggregationResponse,
    BulkResponse,
    BulkResponseItem,
    SearchResponse,
    ShardFailure,
)
from alerting_engine.models.exceptions import (
    EntryOperator,
    EntryType,
    ExceptionEntry,
    ExceptionItem,
    ExceptionListRef,
    NamespaceType,
    ValueListRef,
)
from alerting_engine.models.matches import EqlSequence, MatchBatch, RawMatch, TimeTuple
from alerting_engine.models.results import (
    BulkErrorAggregate,
    BulkItemOutcome,
    BulkItemResult,
    BulkWriteResult,
    ExecutionOutcome,
    RunResult,
    RunStatus,
    TimestampCheckResult,
    TimestampCheckStatus,
    merge_run_results,
)
from alerting_engine.models.rules import (
    DurationUnit,
    MachineLearningParams,
    MissingFieldsStrategy,
    NewTermsParams,
    PerExecutionSuppression,
    RuleDefinition,
    RuleType,
    SuppressionConfig,
    SuppressionDuration,
    ThreatMapping,
    ThreatMatchParams,
    ThresholdParams,
    TimeWindowSuppression,
)

__all__ = [
    # Rules
    "RuleType",
    "RuleDefinition",
    "SuppressionConfig",
    "SuppressionDuration",
    "DurationUnit",
    "PerExecutionSuppression",
    "TimeWindowSuppression",
    "MissingFieldsStrategy",
    "ThresholdParams",
    "NewTermsParams",
    "ThreatMapping",
    "ThreatMatchParams",
    "MachineLearningParams",
    # Exceptions
    "ExceptionListRef",
    "ExceptionItem",
    "ExceptionEntry",
    "EntryType",
    "EntryOperator",
    "NamespaceType",
    "ValueListRef",
    # Matches
    "TimeTuple",
    "RawMatch",
    "EqlSequence",
    "MatchBatch",
    # Alerts
    "AlertDocument",
    "AlertStatus",
    "AlertSuppressionFields",
    "AlertWriteOperation",
    "Ancestor",
    "SuppressedAlertInstance",
    "SuppressionTerm",
    "WriteAction",
    # Backend responses
    "SearchResponse",
    "BulkResponse",
    "BulkResponseItem",
    "AggregationResponse",
    "ShardFailure",
    # Results
    "RunStatus",
    "RunResult",
    "merge_run_results",
    "TimestampCheckResult",
    "TimestampCheckStatus",
    "BulkItemOutcome",
    "BulkItemResult",
    "BulkErrorAggregate",
    "BulkWriteResult",
    "ExecutionOutcome",
]
