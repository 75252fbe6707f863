"""
Exception list filtering.

A match is dropped when any exception item matches it, and an item matches
when all of its entries do. Value list entries are resolved through the
list lookup collaborator with one batched call per entry and batch.

Rule types that cannot apply value list exceptions (threshold rules
aggregate before matches exist) skip items containing list entries and
record a warning; their other items still apply.
"""

from typing import Dict, List, Optional, Set, Tuple

import structlog
from pydantic import BaseModel, Field

from alerting_engine.interfaces.collaborators import ListLookup
from alerting_engine.models.exceptions import (
    EntryOperator,
    EntryType,
    ExceptionEntry,
    ExceptionItem,
)
from alerting_engine.models.matches import EqlSequence, RawMatch

logger = structlog.get_logger(__name__)


class FilterResult(BaseModel):
    """Matches left after exception filtering."""

    model_config = {"frozen": True, "extra": "forbid"}

    kept: List[RawMatch] = Field(default_factory=list)
    kept_sequences: List[EqlSequence] = Field(default_factory=list)
    removed_count: int = 0
    warnings: List[str] = Field(default_factory=list)


def sort_exception_items(
    items: List[ExceptionItem],
) -> Tuple[List[ExceptionItem], List[ExceptionItem]]:
    """
    Split items by whether they reference value lists.

    Returns:
        Tuple of (items with value list entries, items without).
    """
    with_lists = [item for item in items if item.has_value_list_entries]
    without_lists = [item for item in items if not item.has_value_list_entries]
    return with_lists, without_lists


def _as_strings(values: List[object]) -> List[str]:
    return [str(value).lower() if isinstance(value, bool) else str(value) for value in values]


class ExceptionFilter:
    """
    Removes matches covered by exception items.

    Attributes:
        list_lookup: Value list membership collaborator.

    Example:
        >>> exception_filter = ExceptionFilter(list_lookup)
        >>> result = await exception_filter.filter(matches, items, allow_value_lists=True)
        >>> result.removed_count
        3
    """

    def __init__(self, list_lookup: ListLookup) -> None:
        self.list_lookup = list_lookup

    async def _resolve_list_members(
        self,
        items: List[ExceptionItem],
        events: List[RawMatch],
    ) -> Dict[Tuple[str, str, str], Set[str]]:
        """Look up, per list entry, which of the batch's values are members."""
        members: Dict[Tuple[str, str, str], Set[str]] = {}
        for item in items:
            for entry in item.entries:
                if entry.type != EntryType.LIST or entry.value_list is None:
                    continue
                key = (entry.value_list.id, entry.value_list.type, entry.field)
                if key in members:
                    continue
                values = sorted(
                    {value for event in events for value in _as_strings(event.get_values(entry.field))}
                )
                if not values:
                    members[key] = set()
                    continue
                members[key] = await self.list_lookup.are_members(
                    entry.value_list.id, entry.value_list.type, values
                )
        return members

    @staticmethod
    def _entry_matches(
        entry: ExceptionEntry,
        event: RawMatch,
        members: Dict[Tuple[str, str, str], Set[str]],
    ) -> bool:
        values = _as_strings(event.get_values(entry.field))
        if entry.type == EntryType.MATCH:
            matched = entry.value in values
        elif entry.type == EntryType.MATCH_ANY:
            matched = any(value in values for value in entry.value or [])
        elif entry.type == EntryType.EXISTS:
            matched = bool(values)
        else:
            list_ref = entry.value_list
            key = (list_ref.id, list_ref.type, entry.field) if list_ref else None
            found = members.get(key, set()) if key else set()
            matched = any(value in found for value in values)

        if entry.operator == EntryOperator.EXCLUDED:
            return not matched
        return matched

    def is_excepted(
        self,
        event: RawMatch,
        items: List[ExceptionItem],
        members: Dict[Tuple[str, str, str], Set[str]],
    ) -> bool:
        """Check if any item matches the event."""
        return any(
            all(self._entry_matches(entry, event, members) for entry in item.entries)
            for item in items
        )

    async def filter(
        self,
        matches: List[RawMatch],
        items: List[ExceptionItem],
        allow_value_lists: bool = True,
        sequences: Optional[List[EqlSequence]] = None,
    ) -> FilterResult:
        """
        Remove matches covered by exception items.

        A sequence is removed when any of its events is covered.

        Args:
            matches: Single-event matches.
            items: Exception items of the rule.
            allow_value_lists: False for rule types that cannot apply value lists.
            sequences: Sequence matches.

        Returns:
            FilterResult: Kept matches and sequences, removed count and warnings.
        """
        sequences = sequences or []
        if not items:
            return FilterResult(kept=list(matches), kept_sequences=list(sequences))

        warnings: List[str] = []
        with_lists, without_lists = sort_exception_items(items)
        applicable = list(items)
        if with_lists and not allow_value_lists:
            applicable = without_lists
            warnings.append(
                "Exceptions that use \"is in list\" or \"is not in list\" operators are "
                f"not applied to this rule type: {[item.item_id for item in with_lists]}"
            )
        if not applicable:
            return FilterResult(
                kept=list(matches), kept_sequences=list(sequences), warnings=warnings
            )

        events = list(matches) + [event for sequence in sequences for event in sequence.events]
        members = await self._resolve_list_members(applicable, events)

        kept = [match for match in matches if not self.is_excepted(match, applicable, members)]
        kept_sequences = [
            sequence
            for sequence in sequences
            if not any(self.is_excepted(event, applicable, members) for event in sequence.events)
        ]
        removed = (len(matches) - len(kept)) + (len(sequences) - len(kept_sequences))

        if removed:
            logger.debug("exception_items_applied", removed=removed, items=len(applicable))

        return FilterResult(
            kept=kept,
            kept_sequences=kept_sequences,
            removed_count=removed,
            warnings=warnings,
        )
