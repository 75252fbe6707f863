"""
Run result models.

Models:
    RunStatus: Execution state machine states
    RunResult: Accumulator merged tuple by tuple during a run
    TimestampCheckResult: Outcome of the timestamp field mapping check
    BulkItemOutcome: Per-document result of a bulk write
    BulkErrorAggregate: Bulk item errors grouped by reason and status code
    BulkWriteResult: Result of writing a list of operations
    ExecutionOutcome: Final status and result of a run

Functions:
    merge_run_results: Pure, associative merge of two RunResults
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """
    Rule run states.

    A run moves Pending -> Running -> one of the terminal states.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if the run has finished."""
        return self in (RunStatus.SUCCEEDED, RunStatus.PARTIAL_FAILURE, RunStatus.FAILED)

    @property
    def reported_value(self) -> str:
        """Status string reported to the execution status sink."""
        return {
            RunStatus.SUCCEEDED: "succeeded",
            RunStatus.PARTIAL_FAILURE: "partialFailure",
            RunStatus.FAILED: "failed",
        }.get(self, self.value)


class RunResult(BaseModel):
    """
    Accumulated outcome of a rule run.

    Attributes:
        success: False once any tuple or bulk request failed.
        created_count: Alerts created (suppressed heads included).
        suppressed_count: Matches merged into existing suppressed alerts.
        search_durations_ms: Duration of every search request.
        bulk_durations_ms: Duration of every bulk request.
        errors: De-duplicated error messages.
        warnings: De-duplicated warning messages.
        last_seen_timestamp: Newest event timestamp seen.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    success: bool = True
    created_count: int = Field(default=0, ge=0)
    suppressed_count: int = Field(default=0, ge=0)
    search_durations_ms: List[float] = Field(default_factory=list)
    bulk_durations_ms: List[float] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    last_seen_timestamp: Optional[datetime] = None

    def with_error(self, message: str) -> "RunResult":
        """Return a copy marked unsuccessful with an extra error."""
        return merge_run_results(self, RunResult(success=False, errors=[message]))

    def with_warning(self, message: str) -> "RunResult":
        """Return a copy with an extra warning."""
        return merge_run_results(self, RunResult(warnings=[message]))

    def metrics(self) -> Dict[str, Any]:
        """Execution metrics reported with the run status."""
        return {
            "created_count": self.created_count,
            "suppressed_count": self.suppressed_count,
            "total_search_duration_ms": round(sum(self.search_durations_ms), 2),
            "total_bulk_duration_ms": round(sum(self.bulk_durations_ms), 2),
            "search_count": len(self.search_durations_ms),
            "bulk_count": len(self.bulk_durations_ms),
            "last_seen_timestamp": (
                self.last_seen_timestamp.isoformat() if self.last_seen_timestamp else None
            ),
        }


def _union(first: List[str], second: List[str]) -> List[str]:
    seen = dict.fromkeys(first)
    seen.update(dict.fromkeys(second))
    return list(seen)


def merge_run_results(first: RunResult, second: RunResult) -> RunResult:
    """
    Merge two run results.

    Counts are summed, duration series concatenated, messages unioned in
    first-seen order, success AND-ed, and the newer non-null timestamp kept.
    The function is pure and associative; RunResult() is its identity.

    Args:
        first: Earlier result.
        second: Later result.

    Returns:
        RunResult: Merged result.

    Example:
        >>> merged = merge_run_results(RunResult(created_count=2), RunResult(created_count=3))
        >>> merged.created_count
        5
    """
    if first.last_seen_timestamp is None:
        last_seen = second.last_seen_timestamp
    elif second.last_seen_timestamp is None:
        last_seen = first.last_seen_timestamp
    else:
        last_seen = max(first.last_seen_timestamp, second.last_seen_timestamp)

    return RunResult(
        success=first.success and second.success,
        created_count=first.created_count + second.created_count,
        suppressed_count=first.suppressed_count + second.suppressed_count,
        search_durations_ms=first.search_durations_ms + second.search_durations_ms,
        bulk_durations_ms=first.bulk_durations_ms + second.bulk_durations_ms,
        errors=_union(first.errors, second.errors),
        warnings=_union(first.warnings, second.warnings),
        last_seen_timestamp=last_seen,
    )


class TimestampCheckStatus(str, Enum):
    """Result of the timestamp field check."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial failure"
    ERROR = "error"


class TimestampCheckResult(BaseModel):
    """
    Outcome of checking the timestamp field across target indices.

    Attributes:
        status: success, partial failure or error.
        field: Timestamp field that was checked.
        success_indices: Concrete indices mapping the field.
        failing_indices: Concrete indices missing the field.
        messages: Human-readable diagnostics.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    status: TimestampCheckStatus
    field: str
    success_indices: List[str] = Field(default_factory=list)
    failing_indices: List[str] = Field(default_factory=list)
    messages: List[str] = Field(default_factory=list)


class BulkItemResult(str, Enum):
    """Outcome of one bulk item."""

    CREATED = "created"
    UPDATED = "updated"
    ERROR = "error"


class BulkItemOutcome(BaseModel):
    """Outcome of one document in a bulk write."""

    model_config = {"frozen": True, "extra": "forbid"}

    doc_id: str
    action: str
    result: BulkItemResult
    status: int
    error_type: Optional[str] = None
    error_reason: Optional[str] = None
    seq_no: Optional[int] = None
    primary_term: Optional[int] = None


class BulkErrorAggregate(BaseModel):
    """Bulk item errors sharing a reason and status code."""

    model_config = {"frozen": True, "extra": "forbid"}

    reason: str
    status_code: int
    count: int = Field(..., ge=1)

    def message(self) -> str:
        """Aggregated error message."""
        return f"{self.reason} (status code: {self.status_code}, count: {self.count})"


class BulkWriteResult(BaseModel):
    """
    Result of writing a list of alert operations.

    Attributes:
        created: Documents created (budget-counted and building blocks).
        created_counted: Created documents that count toward the budget.
        updated: Documents updated.
        truncated: Create operations dropped to respect the budget.
        duplicates: Create operations dropped because the alert already exists.
        outcomes: Per-document outcomes in request order.
        error_aggregation: Item errors grouped by (reason, status code).
        errors: Aggregated error messages.
        duration_ms: Duration of each bulk request.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    created: int = 0
    created_counted: int = 0
    updated: int = 0
    truncated: int = 0
    duplicates: int = 0
    outcomes: List[BulkItemOutcome] = Field(default_factory=list)
    error_aggregation: List[BulkErrorAggregate] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    duration_ms: List[float] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        """Check if every item succeeded or was ignored."""
        return not self.errors


class ExecutionOutcome(BaseModel):
    """Final state of a rule run."""

    model_config = {"frozen": True, "extra": "forbid"}

    rule_id: str
    status: RunStatus
    result: RunResult
    message: str = ""
    tuples_planned: int = 0
    tuples_processed: int = 0
    tuples_failed: int = 0
    started_at: datetime
    finished_at: datetime
