"""
Rule definition models.

A rule definition is immutable for the duration of an execution. It carries
the query, the look-back window, the schedule interval, the alert budget and
the optional suppression configuration.

Models:
    RuleType: Supported rule types
    SuppressionConfig: Grouping fields, mode and missing-fields strategy
    PerExecutionSuppression / TimeWindowSuppression: Suppression modes
    ThresholdParams, NewTermsParams, ThreatMatchParams, MachineLearningParams:
        Type-specific parameters
    RuleDefinition: Complete rule definition
"""

from datetime import timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from alerting_engine.models.exceptions import ExceptionListRef


class RuleType(str, Enum):
    """
    Rule types understood by the engine.

    Each type maps to one executor strategy in the rule type registry.
    """

    QUERY = "query"
    THRESHOLD = "threshold"
    EQL = "eql"
    NEW_TERMS = "new_terms"
    THREAT_MATCH = "threat_match"
    MACHINE_LEARNING = "machine_learning"


class MissingFieldsStrategy(str, Enum):
    """
    How matches missing a grouping field are handled.

    Attributes:
        SUPPRESS: Missing fields are treated as null and suppressed together.
        DO_NOT_SUPPRESS: Matches missing any grouping field become normal alerts.
    """

    SUPPRESS = "suppress"
    DO_NOT_SUPPRESS = "doNotSuppress"


class DurationUnit(str, Enum):
    """Units allowed for a suppression duration."""

    SECONDS = "s"
    MINUTES = "m"
    HOURS = "h"


class SuppressionDuration(BaseModel):
    """Length of a suppression window."""

    model_config = {"frozen": True, "extra": "forbid"}

    value: int = Field(..., description="Number of units", ge=1)
    unit: DurationUnit = Field(..., description="Duration unit")

    def to_timedelta(self) -> timedelta:
        """Convert the duration to a timedelta."""
        if self.unit == DurationUnit.SECONDS:
            return timedelta(seconds=self.value)
        if self.unit == DurationUnit.MINUTES:
            return timedelta(minutes=self.value)
        return timedelta(hours=self.value)


class PerExecutionSuppression(BaseModel):
    """Every execution starts fresh; matches never merge across runs."""

    model_config = {"frozen": True, "extra": "forbid"}

    kind: Literal["per_execution"] = "per_execution"


class TimeWindowSuppression(BaseModel):
    """Matches merge into an open alert created within the duration."""

    model_config = {"frozen": True, "extra": "forbid"}

    kind: Literal["time_window"] = "time_window"
    duration: SuppressionDuration = Field(
        ...,
        description="How long a suppressed alert keeps absorbing matches",
    )


SuppressionMode = Annotated[
    Union[PerExecutionSuppression, TimeWindowSuppression],
    Field(discriminator="kind"),
]


class SuppressionConfig(BaseModel):
    """
    Alert suppression configuration.

    Example:
        >>> config = SuppressionConfig(
        ...     group_by=["host.name", "user.name"],
        ...     mode=TimeWindowSuppression(
        ...         duration=SuppressionDuration(value=1, unit="h"),
        ...     ),
        ... )
    """

    model_config = {"frozen": True, "extra": "forbid"}

    group_by: List[str] = Field(
        ...,
        description="Fields whose values form the suppression key",
        min_length=1,
        max_length=3,
    )
    mode: SuppressionMode = Field(
        default_factory=PerExecutionSuppression,
        description="Per-execution or time-window suppression",
    )
    missing_fields_strategy: MissingFieldsStrategy = Field(
        default=MissingFieldsStrategy.SUPPRESS,
        description="Handling of matches missing a grouping field",
    )

    @property
    def is_time_window(self) -> bool:
        """Check if suppression spans executions."""
        return isinstance(self.mode, TimeWindowSuppression)


# =============================================================================
# TYPE-SPECIFIC PARAMETERS
# =============================================================================


class ThresholdParams(BaseModel):
    """Parameters for threshold (aggregation) rules."""

    model_config = {"frozen": True, "extra": "forbid"}

    field: List[str] = Field(
        default_factory=list,
        description="Fields to group by; empty means all matching events",
        max_length=5,
    )
    value: int = Field(..., description="Minimum event count per group", ge=1)


class NewTermsParams(BaseModel):
    """Parameters for new terms rules."""

    model_config = {"frozen": True, "extra": "forbid"}

    fields: List[str] = Field(
        ...,
        description="Fields whose value combinations must be new",
        min_length=1,
        max_length=3,
    )
    history_window_start: str = Field(
        ...,
        description="Date math for the start of the history window (e.g. now-7d)",
    )


class ThreatMapping(BaseModel):
    """Maps an event field to an indicator field."""

    model_config = {"frozen": True, "extra": "forbid"}

    field: str = Field(..., description="Event field")
    value: str = Field(..., description="Indicator field")


class ThreatMatchParams(BaseModel):
    """Parameters for indicator match rules."""

    model_config = {"frozen": True, "extra": "forbid"}

    threat_index: List[str] = Field(..., description="Indicator index patterns", min_length=1)
    threat_query: Union[str, Dict[str, Any]] = Field(
        default="*",
        description="Query selecting indicators",
    )
    threat_mapping: List[ThreatMapping] = Field(
        ...,
        description="Field mappings; all entries must match",
        min_length=1,
    )
    items_per_search: int = Field(
        default=500,
        description="Indicators combined into one event query",
        ge=1,
    )
    max_indicators: int = Field(
        default=10000,
        description="Maximum indicators loaded per tuple",
        ge=1,
    )


class MachineLearningParams(BaseModel):
    """Parameters for anomaly rules reading precomputed anomaly records."""

    model_config = {"frozen": True, "extra": "forbid"}

    job_ids: List[str] = Field(..., description="Anomaly job identifiers", min_length=1)
    anomaly_threshold: int = Field(
        ...,
        description="Minimum record score",
        ge=0,
        le=100,
    )
    anomaly_index: str = Field(
        default=".ml-anomalies-*",
        description="Index pattern holding anomaly records",
    )


# =============================================================================
# RULE DEFINITION
# =============================================================================


class RuleDefinition(BaseModel):
    """
    Complete detection rule definition.

    Attributes:
        rule_id: Unique rule identifier.
        name: Human-readable name.
        rule_type: Executor strategy to use.
        space_id: Space the rule belongs to; scopes alert ids.
        consumer: Consumer the rule runs on behalf of (authorization).
        index: Source index patterns.
        query: Query string or query DSL object.
        filters: Additional query DSL filters.
        from_: Look-back start as date math (alias "from").
        to: Look-back end as date math.
        interval: Schedule period (e.g. "5m").
        max_matches: Alert budget per run.
        timestamp_field: Event timestamp field.
        timestamp_override: Field used instead of timestamp_field when set.
        suppression: Optional suppression configuration.
        exception_list_refs: Exception lists applied to matches.

    Example:
        >>> rule = RuleDefinition.model_validate({
        ...     "rule_id": "r1",
        ...     "name": "Failed logins",
        ...     "rule_type": "query",
        ...     "index": ["logs-*"],
        ...     "query": {"term": {"event.outcome": "failure"}},
        ...     "from": "now-6m",
        ...     "interval": "5m",
        ... })
    """

    model_config = {"frozen": True, "extra": "forbid", "populate_by_name": True}

    rule_id: str = Field(..., description="Unique rule identifier", min_length=1)
    name: str = Field(..., description="Human-readable rule name")
    rule_type: RuleType = Field(..., description="Rule type")
    space_id: str = Field(default="default", description="Space identifier")
    consumer: str = Field(default="siem", description="Consumer for authorization")
    enabled: bool = Field(default=True, description="Whether the rule is scheduled")
    index: List[str] = Field(default_factory=list, description="Source index patterns")
    query: Union[str, Dict[str, Any]] = Field(
        default="*",
        description="Query string, EQL query or query DSL object",
    )
    filters: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Additional query DSL filters",
    )
    from_: str = Field(default="now-6m", alias="from", description="Look-back start")
    to: str = Field(default="now", description="Look-back end")
    interval: str = Field(default="5m", description="Schedule interval")
    max_matches: int = Field(default=100, description="Alert budget per run", ge=1)
    timestamp_field: str = Field(default="@timestamp", description="Event timestamp field")
    timestamp_override: Optional[str] = Field(
        default=None,
        description="Field used for range queries instead of timestamp_field",
    )
    suppression: Optional[SuppressionConfig] = Field(
        default=None,
        description="Alert suppression configuration",
    )
    exception_list_refs: List[ExceptionListRef] = Field(
        default_factory=list,
        description="Exception lists applied to matches",
    )
    threshold: Optional[ThresholdParams] = None
    new_terms: Optional[NewTermsParams] = None
    threat: Optional[ThreatMatchParams] = None
    machine_learning: Optional[MachineLearningParams] = None

    @model_validator(mode="after")
    def validate_type_params(self) -> "RuleDefinition":
        """Ensure type-specific parameters are present for the rule type."""
        required = {
            RuleType.THRESHOLD: ("threshold", self.threshold),
            RuleType.NEW_TERMS: ("new_terms", self.new_terms),
            RuleType.THREAT_MATCH: ("threat", self.threat),
            RuleType.MACHINE_LEARNING: ("machine_learning", self.machine_learning),
        }
        if self.rule_type in required:
            name, value = required[self.rule_type]
            if value is None:
                raise ValueError(f"{self.rule_type.value} rules require '{name}' parameters")
        if self.rule_type != RuleType.MACHINE_LEARNING and not self.index:
            raise ValueError("At least one index pattern is required")
        if self.rule_type == RuleType.EQL and not isinstance(self.query, str):
            raise ValueError("EQL rules require a query string")
        return self

    @property
    def primary_timestamp(self) -> str:
        """Field used for range queries and suppression times."""
        return self.timestamp_override or self.timestamp_field

    @property
    def source_indices(self) -> List[str]:
        """Index patterns searched by this rule."""
        if self.rule_type == RuleType.MACHINE_LEARNING and self.machine_learning:
            return [self.machine_learning.anomaly_index]
        return list(self.index)
