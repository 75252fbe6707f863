"""
Search-side data models.

Models:
    TimeTuple: One time window to search, with its alert budget
    RawMatch: A search hit (source event, anomaly record or synthetic bucket)
    EqlSequence: Ordered events forming one correlated sequence
    MatchBatch: One unit of executor output consumed by the orchestrator
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from alerting_engine.dates import parse_timestamp


def _lookup_source(source: Dict[str, Any], field: str) -> Any:
    """Resolve a dotted field path against a nested source document."""
    if field in source:
        return source[field]
    current: Any = source
    parts = field.split(".")
    for i, part in enumerate(parts):
        if not isinstance(current, dict):
            return None
        if part in current:
            current = current[part]
            continue
        # Remaining path may be stored flattened ("host.name" under "host")
        rest = ".".join(parts[i:])
        return current.get(rest)
    return current


def _as_values(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return [v for v in value if v is not None]
    return [value]


class TimeTuple(BaseModel):
    """
    One time window searched by a rule run.

    Attributes:
        from_: Window start (inclusive).
        to: Window end (inclusive).
        max_matches: Alert budget for this window.
    """

    model_config = {"frozen": True, "extra": "forbid", "populate_by_name": True}

    from_: datetime = Field(..., alias="from", description="Window start")
    to: datetime = Field(..., description="Window end")
    max_matches: int = Field(..., description="Alert budget for this window", ge=0)


class RawMatch(BaseModel):
    """
    A single search hit.

    Attributes:
        id: Document id.
        index: Index the document was read from.
        version: Document version, when requested.
        sort: Sort values used as the pagination cursor.
        source: Document source.
        fields: Flattened field values returned by the backend.
        seq_no: Sequence number for optimistic concurrency.
        primary_term: Primary term for optimistic concurrency.
        enrichments: Indicator or threshold data attached by executors.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    id: str = Field(..., description="Document id")
    index: str = Field(..., description="Source index")
    version: Optional[int] = Field(default=None, description="Document version")
    sort: List[Any] = Field(default_factory=list, description="Sort values")
    source: Dict[str, Any] = Field(default_factory=dict, description="Document source")
    fields: Dict[str, List[Any]] = Field(default_factory=dict, description="Field values")
    seq_no: Optional[int] = None
    primary_term: Optional[int] = None
    enrichments: List[Dict[str, Any]] = Field(default_factory=list)

    def get_values(self, field: str) -> List[Any]:
        """
        Get all non-null values of a field.

        Flattened "fields" take precedence over the source document.

        Args:
            field: Dotted field name.

        Returns:
            List[Any]: Values, empty when the field is absent.
        """
        if field in self.fields:
            return _as_values(self.fields[field])
        return _as_values(_lookup_source(self.source, field))

    def has_field(self, field: str) -> bool:
        """Check if the field has at least one value."""
        return len(self.get_values(field)) > 0

    def get_timestamp(self, *fields: str) -> Optional[datetime]:
        """
        Get the first parseable timestamp among the given fields.

        Args:
            *fields: Candidate timestamp fields in priority order.

        Returns:
            Optional[datetime]: Parsed UTC timestamp, or None.
        """
        for field in fields:
            for value in self.get_values(field):
                parsed = parse_timestamp(value)
                if parsed is not None:
                    return parsed
        return None


class EqlSequence(BaseModel):
    """Ordered events that matched an EQL sequence query."""

    model_config = {"frozen": True, "extra": "forbid"}

    events: List[RawMatch] = Field(..., min_length=1)


class MatchBatch(BaseModel):
    """
    One page of executor output.

    Attributes:
        matches: Single-event matches.
        sequences: Sequence matches (EQL only).
        search_durations_ms: Durations of the searches behind this batch.
        errors: Non-fatal search errors (shard failures).
        warnings: Warnings raised while producing the batch.
        last_seen_timestamp: Newest event timestamp in the batch.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    matches: List[RawMatch] = Field(default_factory=list)
    sequences: List[EqlSequence] = Field(default_factory=list)
    search_durations_ms: List[float] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    last_seen_timestamp: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        """Check if the batch has nothing to alert on."""
        return not self.matches and not self.sequences
