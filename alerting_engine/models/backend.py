"""
Backend response models.

The search backend interface returns these instead of raw client payloads
so executors and the persistence layer stay independent of the client.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from alerting_engine.models.matches import RawMatch


class ShardFailure(BaseModel):
    """Failure reported by one shard during a search."""

    model_config = {"frozen": True, "extra": "forbid"}

    index: Optional[str] = None
    shard: Optional[int] = None
    reason_type: Optional[str] = None
    reason: Optional[str] = None
    caused_by_type: Optional[str] = None
    caused_by_reason: Optional[str] = None

    def message(self) -> str:
        """Format the failure as a single error string."""
        parts = [
            f"index: \"{self.index}\"",
            f"reason: \"{self.reason}\"",
            f"type: \"{self.reason_type}\"",
        ]
        if self.caused_by_type or self.caused_by_reason:
            parts.append(
                f"caused by reason: \"{self.caused_by_reason}\" "
                f"caused by type: \"{self.caused_by_type}\""
            )
        return " ".join(parts)


class SearchResponse(BaseModel):
    """
    Search or EQL response.

    Attributes:
        hits: Matching documents in sort order.
        sequences: EQL sequence matches (events per sequence).
        total: Total hits, when tracked.
        took_ms: Backend-reported duration.
        timed_out: True if the backend hit its search timeout.
        shard_failures: Per-shard failures.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    hits: List[RawMatch] = Field(default_factory=list)
    sequences: List[List[RawMatch]] = Field(default_factory=list)
    total: Optional[int] = None
    took_ms: float = 0.0
    timed_out: bool = False
    shard_failures: List[ShardFailure] = Field(default_factory=list)


class BulkResponseItem(BaseModel):
    """Result of one bulk action as reported by the backend."""

    model_config = {"frozen": True, "extra": "forbid"}

    action: str
    doc_id: str
    status: int
    error_type: Optional[str] = None
    error_reason: Optional[str] = None
    seq_no: Optional[int] = None
    primary_term: Optional[int] = None

    @property
    def failed(self) -> bool:
        """Check if the item was rejected."""
        return self.error_reason is not None or self.status >= 300


class BulkResponse(BaseModel):
    """Bulk response."""

    model_config = {"frozen": True, "extra": "forbid"}

    items: List[BulkResponseItem] = Field(default_factory=list)
    took_ms: float = 0.0
    errors: bool = False


class AggregationResponse(BaseModel):
    """Aggregation-only search response."""

    model_config = {"frozen": True, "extra": "forbid"}

    aggregations: Dict[str, Any] = Field(default_factory=dict)
    took_ms: float = 0.0
    shard_failures: List[ShardFailure] = Field(default_factory=list)
