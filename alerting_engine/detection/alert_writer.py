"""
Deterministic alert construction.

Every function here is pure: the same inputs always produce the same alert
ids, which is what turns at-least-once searching (retries, overlapping
windows) into at-most-once alert creation.

    alert_id      = sha256([index, id, version, "space:rule"])
    instance_id   = sha256([terms, rule id, space id])
    building block ids = sha256([combined ancestry, rule id, space id, position])
    group_id      = sha256(building block ids)

Every hash input is canonical JSON, so no two distinct inputs share an id.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from alerting_engine.models.alerts import (
    AlertDocument,
    AlertWriteOperation,
    Ancestor,
    SuppressionTerm,
)
from alerting_engine.models.matches import EqlSequence, RawMatch
from alerting_engine.models.rules import RuleDefinition

BUILDING_BLOCK_TYPE = "default"


def canonical_hash(parts: Any) -> str:
    """Hash the canonical JSON encoding of parts."""
    payload = json.dumps(parts, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def generate_alert_id(
    index: str,
    doc_id: str,
    version: Optional[int],
    rule_id: str,
    space_id: str,
) -> str:
    """
    Derive the alert id of a single-event alert.

    Example:
        >>> generate_alert_id("logs-1", "abc", 1, "rule-1", "default") == \\
        ...     generate_alert_id("logs-1", "abc", 1, "rule-1", "default")
        True
    """
    return canonical_hash([index, doc_id, version, f"{space_id}:{rule_id}"])


def build_instance_id(terms: List[SuppressionTerm], rule_id: str, space_id: str) -> str:
    """Hash a suppression key into a stable instance id."""
    return canonical_hash(
        [[term.model_dump(mode="json") for term in terms], rule_id, space_id]
    )


def build_ancestors(match: RawMatch) -> List[Ancestor]:
    """Ancestry of an alert built from a source event."""
    return [Ancestor(id=match.id, index=match.index, type="event", depth=0)]


def build_reason(rule: RuleDefinition, match: Optional[RawMatch]) -> str:
    """Short human-readable reason."""
    if match is None:
        return f"{rule.rule_type.value} alert created by {rule.name}"
    hosts = match.get_values("host.name")
    users = match.get_values("user.name")
    parts = [f"{rule.rule_type.value} event"]
    if hosts:
        parts.append(f"on {hosts[0]}")
    if users:
        parts.append(f"by {users[0]}")
    parts.append(f"created {rule.name} alert")
    return " ".join(parts)


def build_alert(match: RawMatch, rule: RuleDefinition, now: datetime) -> AlertDocument:
    """
    Build the alert for one match.

    Args:
        match: Source match.
        rule: Rule definition.
        now: Alert creation time.

    Returns:
        AlertDocument: Open alert with a deterministic id.
    """
    return AlertDocument(
        alert_id=generate_alert_id(
            match.index, match.id, match.version, rule.rule_id, rule.space_id
        ),
        rule_id=rule.rule_id,
        rule_name=rule.name,
        rule_type=rule.rule_type.value,
        space_id=rule.space_id,
        timestamp=now,
        original_time=match.get_timestamp(rule.timestamp_field),
        ancestors=build_ancestors(match),
        source=dict(match.source),
        reason=build_reason(rule, match),
        enrichments=list(match.enrichments),
    )


def generate_building_block_ids(
    sequence: EqlSequence,
    rule: RuleDefinition,
) -> List[str]:
    """
    Ids of the building blocks of a sequence.

    All blocks share a base hash over the whole sequence's ancestry, and
    each id adds the block's position.
    """
    ancestry = [
        [ancestor.id, ancestor.type, ancestor.index]
        for event in sequence.events
        for ancestor in build_ancestors(event)
    ]
    return [
        canonical_hash([ancestry, rule.rule_id, rule.space_id, position])
        for position in range(len(sequence.events))
    ]


def build_sequence_alerts(
    sequence: EqlSequence,
    rule: RuleDefinition,
    now: datetime,
) -> Tuple[AlertDocument, List[AlertDocument]]:
    """
    Build the head alert and building blocks of a sequence.

    Returns:
        Tuple of (head alert, building block alerts); every alert carries
        the sequence's group_id.
    """
    block_ids = generate_building_block_ids(sequence, rule)
    group_id = canonical_hash(block_ids)

    blocks = [
        AlertDocument(
            alert_id=block_id,
            rule_id=rule.rule_id,
            rule_name=rule.name,
            rule_type=rule.rule_type.value,
            space_id=rule.space_id,
            timestamp=now,
            original_time=event.get_timestamp(rule.timestamp_field),
            ancestors=build_ancestors(event),
            source=dict(event.source),
            reason=build_reason(rule, event),
            building_block_type=BUILDING_BLOCK_TYPE,
            group_id=group_id,
            group_index=position,
        )
        for position, (block_id, event) in enumerate(zip(block_ids, sequence.events))
    ]

    ancestors: List[Ancestor] = []
    for event in sequence.events:
        ancestors.extend(build_ancestors(event))
    first = sequence.events[0]
    head = AlertDocument(
        alert_id=group_id,
        rule_id=rule.rule_id,
        rule_name=rule.name,
        rule_type=rule.rule_type.value,
        space_id=rule.space_id,
        timestamp=now,
        original_time=first.get_timestamp(rule.timestamp_field),
        ancestors=ancestors,
        source=merge_sequence_sources(sequence),
        reason=build_reason(rule, first),
        group_id=group_id,
    )
    return head, blocks


def merge_sequence_sources(sequence: EqlSequence) -> Dict[str, Any]:
    """Fields whose values agree across every event of the sequence."""
    common: Dict[str, Any] = dict(sequence.events[0].source)
    for event in sequence.events[1:]:
        common = {
            key: value for key, value in common.items() if event.source.get(key) == value
        }
    return common


def build_alert_operations(
    matches: List[RawMatch],
    sequences: List[EqlSequence],
    rule: RuleDefinition,
    now: datetime,
    alerts_index: str,
) -> List[AlertWriteOperation]:
    """
    Create operations for unsuppressed matches and sequences.

    Building blocks follow their head and do not count toward the budget.
    """
    operations = [
        AlertWriteOperation.create(build_alert(match, rule, now), alerts_index)
        for match in matches
    ]
    for sequence in sequences:
        head, blocks = build_sequence_alerts(sequence, rule, now)
        operations.append(AlertWriteOperation.create(head, alerts_index))
        operations.extend(
            AlertWriteOperation.create(block, alerts_index, counts_toward_budget=False)
            for block in blocks
        )
    return operations

