"""
Alert suppression.

Matches sharing the values of the configured grouping fields are merged
into one suppressed alert. The engine keeps one SuppressedAlertInstance per
suppression key for the duration of a single run:

    - a new key creates an alert (doc_count = 1) and consumes created budget
    - a known key increments doc_count and extends the suppression window
    - once an alert is persisted, later merges become optimistic updates

Per-execution suppression starts every run with an empty map. Time-window
suppression seeds the map with open alerts created within the window, so
matches keep merging into them across runs. Events at or before a seeded
alert's suppression end were counted by an earlier run and are skipped
when an overlapping window reads them again.

Note:
    An instance map is never shared between runs or rules.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog
from pydantic import BaseModel, Field

from alerting_engine.detection.alert_writer import (
    build_alert,
    build_instance_id,
    build_sequence_alerts,
)
from alerting_engine.models.alerts import (
    AlertDocument,
    AlertWriteOperation,
    SuppressedAlertInstance,
    SuppressionTerm,
)
from alerting_engine.models.matches import EqlSequence, RawMatch
from alerting_engine.models.results import BulkItemOutcome, BulkItemResult
from alerting_engine.models.rules import (
    MissingFieldsStrategy,
    RuleDefinition,
    SuppressionConfig,
    TimeWindowSuppression,
)

logger = structlog.get_logger(__name__)


DEFAULT_BUDGET_MULTIPLIER = 5


def _sort_key(value: Any) -> Tuple[str, Any]:
    if isinstance(value, (bool, int, float, str)):
        return (type(value).__name__, value)
    return (type(value).__name__, str(value))


def sorted_term_values(values: List[Any]) -> Optional[List[Any]]:
    """Sorted, de-duplicated values of a term; None when there are none."""
    unique: List[Any] = []
    for value in values:
        if value not in unique:
            unique.append(value)
    if not unique:
        return None
    return sorted(unique, key=_sort_key)


def get_suppression_terms(match: RawMatch, group_by: List[str]) -> List[SuppressionTerm]:
    """
    Compute the suppression key of a match.

    Terms are ordered by field name so the key does not depend on the order
    of the configured fields; multi-valued fields are sorted.
    """
    return [
        SuppressionTerm(field=field, value=sorted_term_values(match.get_values(field)))
        for field in sorted(group_by)
    ]


def get_sequence_suppression_terms(
    sequence: EqlSequence,
    group_by: List[str],
) -> List[SuppressionTerm]:
    """Suppression key over the union of values across a sequence's events."""
    return [
        SuppressionTerm(
            field=field,
            value=sorted_term_values(
                [value for event in sequence.events for value in event.get_values(field)]
            ),
        )
        for field in sorted(group_by)
    ]


def is_missing_fields(match: RawMatch, group_by: List[str]) -> bool:
    """Check if the match lacks any grouping field."""
    return any(not match.has_field(field) for field in group_by)


def partition_missing_fields(
    matches: List[RawMatch],
    group_by: List[str],
    strategy: MissingFieldsStrategy,
) -> Tuple[List[RawMatch], List[RawMatch]]:
    """
    Split matches into suppressible and unsuppressible.

    Only the doNotSuppress strategy routes matches with missing grouping
    fields to the unsuppressible side.

    Returns:
        Tuple of (suppressible, unsuppressible).
    """
    if strategy != MissingFieldsStrategy.DO_NOT_SUPPRESS:
        return list(matches), []
    suppressible: List[RawMatch] = []
    unsuppressible: List[RawMatch] = []
    for match in matches:
        if is_missing_fields(match, group_by):
            unsuppressible.append(match)
        else:
            suppressible.append(match)
    return suppressible, unsuppressible


def partition_sequences(
    sequences: List[EqlSequence],
    group_by: List[str],
    strategy: MissingFieldsStrategy,
) -> Tuple[List[EqlSequence], List[EqlSequence]]:
    """
    Split sequences into suppressible and unsuppressible.

    Under doNotSuppress a sequence is suppressible only when none of its
    events is missing a grouping field.
    """
    if strategy != MissingFieldsStrategy.DO_NOT_SUPPRESS:
        return list(sequences), []
    suppressible: List[EqlSequence] = []
    unsuppressible: List[EqlSequence] = []
    for sequence in sequences:
        if any(is_missing_fields(event, group_by) for event in sequence.events):
            unsuppressible.append(sequence)
        else:
            suppressible.append(sequence)
    return suppressible, unsuppressible


class SuppressionOutcome(BaseModel):
    """
    Result of merging one batch.

    Attributes:
        operations: Create and update operations to persist.
        created: New alerts counted against the budget.
        suppressed: Matches merged into existing alerts.
        replayed: Matches already counted by a seeded alert.
        truncated: True if matches were dropped because a budget ran out.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    operations: List[AlertWriteOperation] = Field(default_factory=list)
    created: int = 0
    suppressed: int = 0
    replayed: int = 0
    truncated: bool = False


class SuppressionEngine:
    """
    Run-scoped suppression state for one rule.

    Attributes:
        rule: Rule being executed.
        config: Suppression configuration.
        now: Run start time.
        alerts_index: Target index of alert operations.
        max_total: Cap on created plus suppressed matches for the run.

    Example:
        >>> engine = SuppressionEngine(rule, rule.suppression, now, "alerts")
        >>> outcome = engine.merge(matches, remaining_create_budget=100)
        >>> result = await storage.write(outcome.operations, remaining_budget=100)
        >>> engine.record_outcomes(result.outcomes)
    """

    def __init__(
        self,
        rule: RuleDefinition,
        config: SuppressionConfig,
        now: datetime,
        alerts_index: str,
        budget_multiplier: int = DEFAULT_BUDGET_MULTIPLIER,
    ) -> None:
        self.rule = rule
        self.config = config
        self.now = now
        self.alerts_index = alerts_index
        self.max_total = rule.max_matches * budget_multiplier
        self._instances: Dict[str, SuppressedAlertInstance] = {}
        self._by_alert_id: Dict[str, str] = {}
        self._seeded_end: Dict[str, datetime] = {}
        self._total = 0

    @property
    def window_start(self) -> Optional[datetime]:
        """Earliest creation time of an alert that may still absorb matches."""
        if isinstance(self.config.mode, TimeWindowSuppression):
            return self.now - self.config.mode.duration.to_timedelta()
        return None

    @property
    def total_processed(self) -> int:
        """Created plus suppressed matches so far."""
        return self._total

    def get_instance(self, instance_id: str) -> Optional[SuppressedAlertInstance]:
        """Current state of a suppression key."""
        return self._instances.get(instance_id)

    def seed(self, alerts: List[Tuple[AlertDocument, Optional[int], Optional[int]]]) -> int:
        """
        Load open suppressed alerts for time-window suppression.

        Args:
            alerts: (alert, seq_no, primary_term) of persisted suppressed alerts.

        Returns:
            int: Number of instances loaded.
        """
        window_start = self.window_start
        if window_start is None:
            return 0
        loaded = 0
        for alert, seq_no, primary_term in alerts:
            fields = alert.suppression
            if fields is None or alert.timestamp < window_start:
                continue
            current = self._instances.get(fields.instance_id)
            if current is not None and current.created_at >= alert.timestamp:
                continue
            self._store(
                SuppressedAlertInstance(
                    instance_id=fields.instance_id,
                    alert=alert.model_copy(update={"suppression": None}),
                    terms=fields.terms,
                    suppression_start=fields.start,
                    suppression_end=fields.end,
                    doc_count=fields.docs_count,
                    created_at=alert.timestamp,
                    persisted=True,
                    seq_no=seq_no,
                    primary_term=primary_term,
                )
            )
            self._seeded_end[fields.instance_id] = fields.end
            loaded += 1
        logger.debug("suppression_instances_seeded", rule_id=self.rule.rule_id, loaded=loaded)
        return loaded

    def _store(self, instance: SuppressedAlertInstance) -> None:
        self._instances[instance.instance_id] = instance
        self._by_alert_id[instance.alert_id] = instance.instance_id

    def _is_mergeable(self, instance: SuppressedAlertInstance) -> bool:
        window_start = self.window_start
        if window_start is None:
            return True
        return instance.created_at >= window_start

    def _event_time(self, match: RawMatch) -> datetime:
        return match.get_timestamp(self.rule.primary_timestamp, self.rule.timestamp_field) or self.now

    def _merge_one(
        self,
        instance_id: str,
        event_time: datetime,
        build_head: Any,
        terms: List[SuppressionTerm],
        remaining_create_budget: int,
        created: int,
        touched: Dict[str, None],
    ) -> Tuple[str, Optional[SuppressedAlertInstance]]:
        """
        Merge into or create the instance.

        Returns ("merged"|"created"|"replayed"|"skipped", new instance).
        """
        existing = self._instances.get(instance_id)
        if existing is not None and self._is_mergeable(existing):
            seeded_end = self._seeded_end.get(instance_id)
            if seeded_end is not None and event_time <= seeded_end:
                return "replayed", None
            self._store(existing.merge(event_time))
            touched[instance_id] = None
            return "merged", None
        if created >= remaining_create_budget:
            return "skipped", None
        instance = SuppressedAlertInstance(
            instance_id=instance_id,
            alert=build_head(),
            terms=terms,
            suppression_start=event_time,
            suppression_end=event_time,
            doc_count=1,
            created_at=self.now,
        )
        self._store(instance)
        touched[instance_id] = None
        return "created", instance

    def _operations_for(self, touched: Dict[str, None]) -> List[AlertWriteOperation]:
        operations: List[AlertWriteOperation] = []
        for instance_id in touched:
            instance = self._instances[instance_id]
            if instance.persisted:
                operations.append(
                    AlertWriteOperation.update_suppression(instance, self.alerts_index)
                )
            else:
                operations.append(
                    AlertWriteOperation.create(instance.to_alert(), self.alerts_index)
                )
        return operations

    def merge(
        self,
        matches: List[RawMatch],
        remaining_create_budget: int,
    ) -> SuppressionOutcome:
        """
        Merge a batch of single-event matches.

        Unsuppressible matches become normal alerts first; suppressible
        matches then merge by key. New alerts are limited by the remaining
        create budget, and created plus suppressed matches by max_total.

        Args:
            matches: Filtered matches of one batch.
            remaining_create_budget: Alerts that may still be created.

        Returns:
            SuppressionOutcome: Operations and counters for the batch.
        """
        suppressible, unsuppressible = partition_missing_fields(
            matches, self.config.group_by, self.config.missing_fields_strategy
        )
        operations: List[AlertWriteOperation] = []
        created = 0
        suppressed = 0
        replayed = 0
        truncated = False

        for match in unsuppressible:
            if created >= remaining_create_budget or self._total >= self.max_total:
                truncated = True
                break
            operations.append(
                AlertWriteOperation.create(build_alert(match, self.rule, self.now), self.alerts_index)
            )
            created += 1
            self._total += 1

        touched: Dict[str, None] = {}
        for match in suppressible:
            if self._total >= self.max_total:
                truncated = True
                break
            terms = get_suppression_terms(match, self.config.group_by)
            instance_id = build_instance_id(terms, self.rule.rule_id, self.rule.space_id)
            result, _ = self._merge_one(
                instance_id,
                self._event_time(match),
                lambda match=match: build_alert(match, self.rule, self.now),
                terms,
                remaining_create_budget,
                created,
                touched,
            )
            if result == "merged":
                suppressed += 1
                self._total += 1
            elif result == "created":
                created += 1
                self._total += 1
            elif result == "replayed":
                replayed += 1
            else:
                truncated = True

        operations.extend(self._operations_for(touched))

        logger.debug(
            "suppression_batch_merged",
            rule_id=self.rule.rule_id,
            matches=len(matches),
            unsuppressible=len(unsuppressible),
            created=created,
            suppressed=suppressed,
            replayed=replayed,
            truncated=truncated,
        )
        return SuppressionOutcome(
            operations=operations,
            created=created,
            suppressed=suppressed,
            replayed=replayed,
            truncated=truncated,
        )

    def merge_sequences(
        self,
        sequences: List[EqlSequence],
        remaining_create_budget: int,
    ) -> SuppressionOutcome:
        """
        Merge a batch of sequences.

        Only the head alert of a sequence is suppressible. Building blocks
        are written unsuppressed alongside a newly created head and linked
        to it by group_id; sequences merged into an existing head add no
        building blocks.
        """
        suppressible, unsuppressible = partition_sequences(
            sequences, self.config.group_by, self.config.missing_fields_strategy
        )
        operations: List[AlertWriteOperation] = []
        block_operations: List[AlertWriteOperation] = []
        created = 0
        suppressed = 0
        replayed = 0
        truncated = False

        for sequence in unsuppressible:
            if created >= remaining_create_budget or self._total >= self.max_total:
                truncated = True
                break
            head, blocks = build_sequence_alerts(sequence, self.rule, self.now)
            operations.append(AlertWriteOperation.create(head, self.alerts_index))
            operations.extend(
                AlertWriteOperation.create(block, self.alerts_index, counts_toward_budget=False)
                for block in blocks
            )
            created += 1
            self._total += 1

        touched: Dict[str, None] = {}
        for sequence in suppressible:
            if self._total >= self.max_total:
                truncated = True
                break
            head, blocks = build_sequence_alerts(sequence, self.rule, self.now)
            terms = get_sequence_suppression_terms(sequence, self.config.group_by)
            instance_id = build_instance_id(terms, self.rule.rule_id, self.rule.space_id)
            result, _ = self._merge_one(
                instance_id,
                self._event_time(sequence.events[0]),
                lambda head=head: head,
                terms,
                remaining_create_budget,
                created,
                touched,
            )
            if result == "merged":
                suppressed += 1
                self._total += 1
            elif result == "created":
                created += 1
                self._total += 1
                block_operations.extend(
                    AlertWriteOperation.create(block, self.alerts_index, counts_toward_budget=False)
                    for block in blocks
                )
            elif result == "replayed":
                replayed += 1
            else:
                truncated = True

        operations.extend(self._operations_for(touched))
        operations.extend(block_operations)
        return SuppressionOutcome(
            operations=operations,
            created=created,
            suppressed=suppressed,
            replayed=replayed,
            truncated=truncated,
        )

    def record_outcomes(self, outcomes: List[BulkItemOutcome]) -> None:
        """
        Apply bulk outcomes to the instance map.

        Successful writes store the new concurrency tokens so the next merge
        becomes an update. A failed create forgets the instance so the key
        can be created again later in the run.
        """
        failed: Set[str] = set()
        for outcome in outcomes:
            instance_id = self._by_alert_id.get(outcome.doc_id)
            if instance_id is None:
                continue
            instance = self._instances.get(instance_id)
            if instance is None or instance.alert_id != outcome.doc_id:
                continue
            if outcome.result == BulkItemResult.ERROR:
                if outcome.action == "create":
                    failed.add(instance_id)
                continue
            self._instances[instance_id] = instance.model_copy(
                update={
                    "persisted": True,
                    "seq_no": outcome.seq_no,
                    "primary_term": outcome.primary_term,
                }
            )
        for instance_id in failed:
            instance = self._instances.pop(instance_id)
            self._by_alert_id.pop(instance.alert_id, None)
            logger.warning(
                "suppressed_alert_create_failed",
                rule_id=self.rule.rule_id,
                instance_id=instance_id,
            )
