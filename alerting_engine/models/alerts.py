"""
Alert data models.

This module defines the persisted alert document, the suppression state
kept while a rule run merges matches, and the write operations handed to
the bulk persistence layer.

Models:
    AlertStatus: Workflow status (open, acknowledged, closed)
    Ancestor: Source document an alert was derived from
    SuppressionTerm: One (field, values) pair of a suppression key
    AlertSuppressionFields: Suppression data stored on an alert
    AlertDocument: Persisted alert
    SuppressedAlertInstance: Run-scoped state of one suppression key
    WriteAction: Bulk action (create, update)
    AlertWriteOperation: One bulk write intent
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AlertStatus(str, Enum):
    """
    Alert workflow status.

    New alerts are always open; later transitions are user actions.
    """

    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    CLOSED = "closed"


class Ancestor(BaseModel):
    """Source document an alert was built from."""

    model_config = {"frozen": True, "extra": "forbid"}

    id: str = Field(..., description="Source document id")
    index: str = Field(..., description="Source index")
    type: str = Field(default="event", description="event or alert")
    depth: int = Field(default=0, ge=0)


class SuppressionTerm(BaseModel):
    """
    One component of a suppression key.

    Multi-valued fields are stored sorted; absent fields have value None.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    field: str = Field(..., description="Grouping field")
    value: Optional[List[Any]] = Field(default=None, description="Sorted values or None")


class AlertSuppressionFields(BaseModel):
    """Suppression data carried by a suppressed alert."""

    model_config = {"frozen": True, "extra": "forbid"}

    instance_id: str = Field(..., description="Deterministic suppression key hash")
    terms: List[SuppressionTerm] = Field(..., description="Suppression key")
    start: datetime = Field(..., description="Earliest suppressed event time")
    end: datetime = Field(..., description="Latest suppressed event time")
    docs_count: int = Field(..., description="Matches merged into this alert", ge=1)


class AlertDocument(BaseModel):
    """
    Persisted alert.

    For single-event alerts, alert_id is derived from the source index, id
    and version plus the rule and space, so reprocessing the same event
    always yields the same id.

    Example:
        >>> alert = AlertDocument(
        ...     alert_id="3f1c...",
        ...     rule_id="r1",
        ...     rule_name="Failed logins",
        ...     rule_type="query",
        ...     space_id="default",
        ...     timestamp=datetime.now(timezone.utc),
        ... )
    """

    model_config = {"frozen": True, "extra": "forbid", "populate_by_name": True}

    alert_id: str = Field(..., description="Deterministic alert id")
    rule_id: str = Field(..., description="Rule that produced the alert")
    rule_name: str = Field(..., description="Rule name at creation time")
    rule_type: str = Field(..., description="Rule type")
    space_id: str = Field(..., description="Space identifier")
    status: AlertStatus = Field(default=AlertStatus.OPEN)
    timestamp: datetime = Field(..., alias="@timestamp", description="Alert creation time")
    original_time: Optional[datetime] = Field(default=None, description="Source event time")
    ancestors: List[Ancestor] = Field(default_factory=list)
    source: Dict[str, Any] = Field(default_factory=dict, description="Source event copy")
    reason: str = Field(default="", description="Human-readable reason")
    building_block_type: Optional[str] = Field(default=None)
    group_id: Optional[str] = Field(default=None, description="Sequence group id")
    group_index: Optional[int] = Field(default=None, description="Position in sequence")
    suppression: Optional[AlertSuppressionFields] = Field(default=None)
    enrichments: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def is_building_block(self) -> bool:
        """Check if this alert is a constituent of a sequence."""
        return self.building_block_type is not None

    def to_index_document(self) -> Dict[str, Any]:
        """Serialize to the JSON document stored in the alerts index."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SuppressedAlertInstance(BaseModel):
    """
    Run-scoped state of one suppression key.

    Attributes:
        instance_id: Hash of the suppression terms, rule id and space id.
        alert: Head alert written for the instance.
        terms: Suppression key.
        suppression_start: Earliest merged event time.
        suppression_end: Latest merged event time.
        doc_count: Number of matches merged, including the first.
        created_at: When the alert was first created.
        persisted: True once the alert exists in the backend.
        seq_no: Last known sequence number of the persisted alert.
        primary_term: Last known primary term of the persisted alert.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    instance_id: str
    alert: AlertDocument
    terms: List[SuppressionTerm]
    suppression_start: datetime
    suppression_end: datetime
    doc_count: int = Field(default=1, ge=1)
    created_at: datetime
    persisted: bool = False
    seq_no: Optional[int] = None
    primary_term: Optional[int] = None

    @property
    def alert_id(self) -> str:
        """Document id of the head alert."""
        return self.alert.alert_id

    def merge(self, event_time: datetime) -> "SuppressedAlertInstance":
        """
        Return a copy with one more merged match.

        Args:
            event_time: Timestamp of the merged match.
        """
        return self.model_copy(
            update={
                "doc_count": self.doc_count + 1,
                "suppression_start": min(self.suppression_start, event_time),
                "suppression_end": max(self.suppression_end, event_time),
            }
        )

    def suppression_fields(self) -> AlertSuppressionFields:
        """Build the suppression block stored on the alert."""
        return AlertSuppressionFields(
            instance_id=self.instance_id,
            terms=self.terms,
            start=self.suppression_start,
            end=self.suppression_end,
            docs_count=self.doc_count,
        )

    def to_alert(self) -> AlertDocument:
        """Head alert with current suppression counters."""
        return self.alert.model_copy(update={"suppression": self.suppression_fields()})


class WriteAction(str, Enum):
    """Bulk write actions."""

    CREATE = "create"
    UPDATE = "update"


class AlertWriteOperation(BaseModel):
    """
    One bulk write intent.

    Create operations carry the full alert; update operations carry a
    partial document and the concurrency tokens of the last read.

    Attributes:
        action: create or update.
        index: Target alerts index.
        doc_id: Alert id.
        document: Full document (create) or partial document (update).
        if_seq_no: Expected sequence number for updates.
        if_primary_term: Expected primary term for updates.
        counts_toward_budget: False for building blocks.
        group_id: Sequence group for building blocks and their head.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    action: WriteAction
    index: str
    doc_id: str
    document: Dict[str, Any]
    if_seq_no: Optional[int] = None
    if_primary_term: Optional[int] = None
    counts_toward_budget: bool = True
    group_id: Optional[str] = None

    @classmethod
    def create(
        cls,
        alert: AlertDocument,
        index: str,
        counts_toward_budget: bool = True,
    ) -> "AlertWriteOperation":
        """Create operation for a full alert."""
        return cls(
            action=WriteAction.CREATE,
            index=index,
            doc_id=alert.alert_id,
            document=alert.to_index_document(),
            counts_toward_budget=counts_toward_budget,
            group_id=alert.group_id,
        )

    @classmethod
    def update_suppression(
        cls,
        instance: SuppressedAlertInstance,
        index: str,
    ) -> "AlertWriteOperation":
        """Update operation extending an existing suppressed alert."""
        return cls(
            action=WriteAction.UPDATE,
            index=index,
            doc_id=instance.alert_id,
            document={
                "suppression": instance.suppression_fields().model_dump(mode="json"),
            },
            if_seq_no=instance.seq_no,
            if_primary_term=instance.primary_term,
            counts_toward_budget=False,
        )
