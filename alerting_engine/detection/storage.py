"""
Bulk persistence of alert operations.

AlertStorage turns a list of create and update intents into bulk requests:

    1. create operations whose alert already exists are dropped as duplicates;
       overlapping look-back windows re-read the same source events
    2. create operations beyond the remaining alert budget are dropped, along
       with the building blocks of any dropped sequence head
    3. the rest is written in chunks of batch_size
    4. every item's outcome is recorded independently
    5. item errors are aggregated by (reason, status code) into messages

Status codes listed in ignore_status_codes are not reported as errors.
A create that still conflicts in the bulk request lost a race with another
writer and is reported as an error.
"""

import time
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional, Set, Tuple

import structlog
from pydantic import ValidationError

from alerting_engine.dates import to_iso
from alerting_engine.errors import BulkWriteError
from alerting_engine.interfaces.search_backend import SearchBackend
from alerting_engine.models.alerts import AlertDocument, AlertWriteOperation, WriteAction
from alerting_engine.models.results import (
    BulkErrorAggregate,
    BulkItemOutcome,
    BulkItemResult,
    BulkWriteResult,
)

logger = structlog.get_logger(__name__)


DEFAULT_BATCH_SIZE = 500
DEFAULT_LOOKUP_PAGE_SIZE = 500
UNKNOWN_ERROR_REASON = "unknown error"


def truncate_operations(
    operations: List[AlertWriteOperation],
    remaining_budget: int,
) -> Tuple[List[AlertWriteOperation], int]:
    """
    Drop create operations that would exceed the budget.

    Only operations with counts_toward_budget consume budget. Building
    blocks are dropped when their head was dropped; updates always pass.

    Args:
        operations: Operations in write order.
        remaining_budget: Alerts that may still be created.

    Returns:
        Tuple of (operations to write, number of dropped counted creates).
    """
    kept: List[AlertWriteOperation] = []
    dropped_groups: Set[str] = set()
    counted = 0
    truncated = 0
    for operation in operations:
        if operation.action != WriteAction.CREATE:
            kept.append(operation)
            continue
        if operation.counts_toward_budget:
            if counted >= remaining_budget:
                truncated += 1
                if operation.group_id:
                    dropped_groups.add(operation.group_id)
                continue
            counted += 1
            kept.append(operation)
        elif operation.group_id in dropped_groups:
            continue
        else:
            kept.append(operation)
    return kept, truncated


def aggregate_errors(
    outcomes: List[BulkItemOutcome],
    ignore_status_codes: Optional[List[int]] = None,
) -> List[BulkErrorAggregate]:
    """
    Group failed outcomes by reason and status code.

    Example:
        >>> aggregates = aggregate_errors(outcomes)
        >>> aggregates[0].message()
        'version conflict (status code: 409, count: 1)'
    """
    ignored = set(ignore_status_codes or [])
    counts: "OrderedDict[Tuple[str, int], int]" = OrderedDict()
    for outcome in outcomes:
        if outcome.result != BulkItemResult.ERROR or outcome.status in ignored:
            continue
        key = (outcome.error_reason or UNKNOWN_ERROR_REASON, outcome.status)
        counts[key] = counts.get(key, 0) + 1
    return [
        BulkErrorAggregate(reason=reason, status_code=status, count=count)
        for (reason, status), count in counts.items()
    ]


class AlertStorage:
    """
    Writes alert operations to the alerts index.

    Attributes:
        backend: Search backend used for bulk requests and lookups.
        alerts_index: Index holding alerts.
        batch_size: Maximum operations per bulk request.
        timeout_seconds: Timeout of each request.
        ignore_status_codes: Item status codes not reported as errors.

    Example:
        >>> storage = AlertStorage(backend, ".alerts-default", batch_size=500)
        >>> result = await storage.write(operations, remaining_budget=100)
        >>> result.created_counted
        10
    """

    def __init__(
        self,
        backend: SearchBackend,
        alerts_index: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout_seconds: float = 30.0,
        ignore_status_codes: Optional[List[int]] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.backend = backend
        self.alerts_index = alerts_index
        self.batch_size = batch_size
        self.timeout_seconds = timeout_seconds
        self.ignore_status_codes = list(ignore_status_codes or [])

    async def find_existing_ids(self, doc_ids: List[str]) -> Set[str]:
        """
        Find which alert ids already exist in the alerts index.

        Ids are looked up in chunks of batch_size with an ids query.

        Raises:
            BackendQueryError: If a lookup fails.
        """
        existing: Set[str] = set()
        unique = list(dict.fromkeys(doc_ids))
        for offset in range(0, len(unique), self.batch_size):
            chunk = unique[offset:offset + self.batch_size]
            response = await self.backend.search(
                indices=[self.alerts_index],
                query={"ids": {"values": chunk}},
                sort=[{"_doc": {"order": "asc"}}],
                size=len(chunk),
                timeout_seconds=self.timeout_seconds,
            )
            existing.update(hit.id for hit in response.hits)
        return existing

    async def drop_existing(
        self,
        operations: List[AlertWriteOperation],
    ) -> Tuple[List[AlertWriteOperation], int]:
        """
        Drop create operations whose alert already exists.

        Returns:
            Tuple of (operations to write, number of dropped creates).
        """
        create_ids = [
            operation.doc_id for operation in operations if operation.action == WriteAction.CREATE
        ]
        if not create_ids:
            return operations, 0
        existing = await self.find_existing_ids(create_ids)
        if not existing:
            return operations, 0
        kept = [
            operation
            for operation in operations
            if operation.action != WriteAction.CREATE or operation.doc_id not in existing
        ]
        return kept, len(operations) - len(kept)

    async def _write_chunk(
        self,
        chunk: List[AlertWriteOperation],
    ) -> Tuple[List[BulkItemOutcome], float]:
        """Write one chunk; a failed request marks every item as failed."""
        start = time.monotonic()
        try:
            response = await self.backend.bulk(chunk, timeout_seconds=self.timeout_seconds)
        except BulkWriteError as e:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.error(
                "bulk_request_failed",
                index=self.alerts_index,
                operations=len(chunk),
                error=str(e),
            )
            status = e.status_code or 500
            return [
                BulkItemOutcome(
                    doc_id=operation.doc_id,
                    action=operation.action.value,
                    result=BulkItemResult.ERROR,
                    status=status,
                    error_reason=str(e),
                )
                for operation in chunk
            ], elapsed_ms
        elapsed_ms = (time.monotonic() - start) * 1000

        outcomes: List[BulkItemOutcome] = []
        for operation, item in zip(chunk, response.items):
            if item.failed:
                result = BulkItemResult.ERROR
            elif operation.action == WriteAction.CREATE:
                result = BulkItemResult.CREATED
            else:
                result = BulkItemResult.UPDATED
            outcomes.append(
                BulkItemOutcome(
                    doc_id=operation.doc_id,
                    action=operation.action.value,
                    result=result,
                    status=item.status,
                    error_type=item.error_type,
                    error_reason=item.error_reason,
                    seq_no=item.seq_no,
                    primary_term=item.primary_term,
                )
            )
        return outcomes, elapsed_ms

    async def write(
        self,
        operations: List[AlertWriteOperation],
        remaining_budget: int,
    ) -> BulkWriteResult:
        """
        Persist operations within the remaining alert budget.

        Alerts that already exist are skipped before the budget is applied,
        so re-reading an event never consumes budget or reports an error.
        A failed item never aborts its siblings; a failed request only fails
        the items of its own chunk.

        Args:
            operations: Create and update operations in write order.
            remaining_budget: Alerts that may still be created in this run.

        Returns:
            BulkWriteResult: Counts, per-item outcomes and aggregated errors.

        Raises:
            BackendQueryError: If the existing alert lookup fails.
        """
        fresh, duplicates = await self.drop_existing(operations)
        if duplicates:
            logger.debug(
                "duplicate_alerts_skipped",
                index=self.alerts_index,
                duplicates=duplicates,
            )
        kept, truncated = truncate_operations(fresh, max(remaining_budget, 0))
        if truncated:
            logger.info(
                "alert_operations_truncated",
                index=self.alerts_index,
                truncated=truncated,
                remaining_budget=remaining_budget,
            )
        if not kept:
            return BulkWriteResult(truncated=truncated, duplicates=duplicates)

        counted_ids = {
            operation.doc_id
            for operation in kept
            if operation.action == WriteAction.CREATE and operation.counts_toward_budget
        }
        outcomes: List[BulkItemOutcome] = []
        durations: List[float] = []
        for offset in range(0, len(kept), self.batch_size):
            chunk_outcomes, elapsed_ms = await self._write_chunk(
                kept[offset:offset + self.batch_size]
            )
            outcomes.extend(chunk_outcomes)
            durations.append(elapsed_ms)

        created = [o for o in outcomes if o.result == BulkItemResult.CREATED]
        updated = [o for o in outcomes if o.result == BulkItemResult.UPDATED]
        aggregation = aggregate_errors(outcomes, self.ignore_status_codes)

        if aggregation:
            logger.warning(
                "bulk_item_errors",
                index=self.alerts_index,
                errors={aggregate.reason: aggregate.count for aggregate in aggregation},
            )
        logger.debug(
            "alerts_written",
            index=self.alerts_index,
            requests=len(durations),
            created=len(created),
            updated=len(updated),
            duplicates=duplicates,
            failed=len(outcomes) - len(created) - len(updated),
        )

        return BulkWriteResult(
            created=len(created),
            created_counted=sum(1 for o in created if o.doc_id in counted_ids),
            updated=len(updated),
            truncated=truncated,
            duplicates=duplicates,
            outcomes=outcomes,
            error_aggregation=aggregation,
            errors=[aggregate.message() for aggregate in aggregation],
            duration_ms=durations,
        )

    async def find_open_instances(
        self,
        rule_id: str,
        space_id: str,
        since: datetime,
        page_size: int = DEFAULT_LOOKUP_PAGE_SIZE,
    ) -> List[Tuple[AlertDocument, Optional[int], Optional[int]]]:
        """
        Load open suppressed alerts of a rule created since a point in time.

        Args:
            rule_id: Rule identifier.
            space_id: Space identifier.
            since: Start of the suppression window.
            page_size: Hits per request.

        Returns:
            List of (alert, seq_no, primary_term), oldest first.

        Raises:
            BackendQueryError: If the lookup search fails.
        """
        query = {
            "bool": {
                "filter": [
                    {"term": {"rule_id": rule_id}},
                    {"term": {"space_id": space_id}},
                    {"term": {"status": "open"}},
                    {"exists": {"field": "suppression.instance_id"}},
                    {"range": {"@timestamp": {"gte": to_iso(since)}}},
                ]
            }
        }
        sort = [{"@timestamp": {"order": "asc"}}, {"_doc": {"order": "asc"}}]

        found: List[Tuple[AlertDocument, Optional[int], Optional[int]]] = []
        search_after = None
        while True:
            response = await self.backend.search(
                indices=[self.alerts_index],
                query=query,
                sort=sort,
                search_after=search_after,
                size=page_size,
                timeout_seconds=self.timeout_seconds,
                seq_no_primary_term=True,
            )
            for hit in response.hits:
                try:
                    alert = AlertDocument.model_validate(hit.source)
                except ValidationError as e:
                    logger.warning(
                        "suppressed_alert_unreadable",
                        alert_id=hit.id,
                        error=str(e),
                    )
                    continue
                found.append((alert, hit.seq_no, hit.primary_term))
            if len(response.hits) < page_size or not response.hits[-1].sort:
                break
            search_after = response.hits[-1].sort

        logger.debug(
            "open_suppressed_alerts_loaded",
            rule_id=rule_id,
            space_id=space_id,
            count=len(found),
        )
        return found

