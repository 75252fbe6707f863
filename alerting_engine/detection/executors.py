"""
Rule executors.

Each rule type searches differently but produces the same output: an async
stream of MatchBatch for one time tuple. The orchestrator consumes every
executor the same way and stops iterating once the tuple's budget is spent.

Executors:
    QueryExecutor: Query DSL or query string, paginated with search_after
    ThresholdExecutor: Composite aggregation, one match per bucket over the threshold
    EqlExecutor: EQL event and sequence queries
    NewTermsExecutor: Events whose field values never appeared in the history window
    ThreatMatchExecutor: Events matching indicator values, enriched with the indicator
    MachineLearningExecutor: Anomaly records above a score threshold

Note:
    Executors never write alerts. Backend failures raise BackendQueryError
    and are handled per tuple by the orchestrator.
"""

import asyncio
import itertools
import math
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

import structlog

from alerting_engine.dates import parse_date_math, parse_timestamp, to_iso
from alerting_engine.detection.alert_writer import canonical_hash
from alerting_engine.detection.searcher import (
    PaginatedSearcher,
    build_event_query,
    build_query_clause,
    build_range_filter,
    create_errors_from_shard,
    last_valid_date,
)
from alerting_engine.errors import RunCancelled
from alerting_engine.interfaces.search_backend import SearchBackend
from alerting_engine.models.matches import EqlSequence, MatchBatch, RawMatch, TimeTuple
from alerting_engine.models.rules import RuleDefinition, RuleType

logger = structlog.get_logger(__name__)


THRESHOLD_AGGREGATION = "thresholds"
THRESHOLD_PAGE_SIZE = 500
NEW_TERMS_AGGREGATION = "history"
NEW_TERMS_PAGE_SIZE = 1000
ANOMALY_TIMESTAMP_FIELD = "timestamp"
INDICATOR_PAGE_SIZE = 1000


class ExecutionContext:
    """
    Everything an executor needs for one run.

    Attributes:
        rule: Rule being executed.
        backend: Search backend.
        searcher: Paginated searcher bound to the backend.
        indices: Concrete indices that passed the timestamp field check.
        now: Run start time.
        timeout_seconds: Timeout of each search request.
        cancel_event: Set to request cooperative cancellation.
    """

    def __init__(
        self,
        rule: RuleDefinition,
        backend: SearchBackend,
        searcher: PaginatedSearcher,
        indices: List[str],
        now: datetime,
        timeout_seconds: float = 30.0,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.rule = rule
        self.backend = backend
        self.searcher = searcher
        self.indices = indices
        self.now = now
        self.timeout_seconds = timeout_seconds
        self.cancel_event = cancel_event

    def check_cancelled(self) -> None:
        """
        Raise if cancellation was requested.

        Raises:
            RunCancelled: If the cancel event is set.
        """
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelled(f"Rule run cancelled: {self.rule.rule_id}")


class RuleExecutor(ABC):
    """
    Strategy for searching one rule type.

    Attributes:
        rule_type: Rule type handled by this executor.
        supports_value_list_exceptions: False when matches only exist after
            aggregation, so value list exceptions cannot be applied.
    """

    rule_type: RuleType
    supports_value_list_exceptions: bool = True

    def timestamp_field(self, rule: RuleDefinition) -> str:
        """Field used for the time range and the timestamp check."""
        return rule.primary_timestamp

    @abstractmethod
    def execute(
        self,
        time_tuple: TimeTuple,
        context: ExecutionContext,
    ) -> AsyncIterator[MatchBatch]:
        """
        Stream matches for one time tuple.

        Args:
            time_tuple: Window to search.
            context: Run context.

        Yields:
            MatchBatch: One batch per backend page.

        Raises:
            BackendQueryError: If a search fails.
            RunCancelled: If cancellation is requested between pages.
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(rule_type={self.rule_type.value})"


def _page_batch(page: Any, matches: Optional[List[RawMatch]] = None) -> MatchBatch:
    return MatchBatch(
        matches=page.hits if matches is None else matches,
        search_durations_ms=[page.search_duration_ms],
        errors=page.errors,
        last_seen_timestamp=page.last_seen_timestamp,
    )


# =============================================================================
# Query
# =============================================================================


class QueryExecutor(RuleExecutor):
    """Runs the rule query and streams every hit in the tuple."""

    rule_type = RuleType.QUERY

    async def execute(
        self,
        time_tuple: TimeTuple,
        context: ExecutionContext,
    ) -> AsyncIterator[MatchBatch]:
        rule = context.rule
        timestamp_field = self.timestamp_field(rule)
        query = build_event_query(rule.query, rule.filters, time_tuple, timestamp_field)
        async for page in context.searcher.iter_pages(
            context.indices,
            query,
            time_tuple,
            timestamp_field,
            cancel_event=context.cancel_event,
        ):
            yield _page_batch(page)


# =============================================================================
# Threshold
# =============================================================================


def build_threshold_match(
    rule: RuleDefinition,
    time_tuple: TimeTuple,
    terms: Dict[str, Any],
    count: int,
    last_event_time: Optional[datetime],
    index: str,
) -> RawMatch:
    """
    Build the synthetic match for a threshold bucket.

    The id is derived from the rule, the window start and the bucket terms,
    so the same bucket in the same window always maps to the same alert.

    Args:
        rule: Threshold rule.
        time_tuple: Window the bucket was counted in.
        terms: Bucket key, field to value.
        count: Events in the bucket.
        last_event_time: Newest event in the bucket.
        index: Index label for the match.

    Returns:
        RawMatch: Match whose source holds the bucket terms.
    """
    bucket_id = canonical_hash(
        [rule.rule_id, rule.space_id, to_iso(time_tuple.from_), sorted(terms.items())]
    )

    source: Dict[str, Any] = dict(terms)
    event_time = last_event_time or time_tuple.to
    source[rule.timestamp_field] = to_iso(event_time)
    return RawMatch(
        id=bucket_id,
        index=index,
        source=source,
        enrichments=[
            {
                "threshold_result": {
                    "terms": [{"field": field, "value": terms[field]} for field in sorted(terms)],
                    "count": count,
                    "from": to_iso(time_tuple.from_),
                }
            }
        ],
    )


class ThresholdExecutor(RuleExecutor):
    """
    Counts events per group and emits one match per group over the threshold.

    With no group fields the whole window is one group.
    """

    rule_type = RuleType.THRESHOLD
    supports_value_list_exceptions = False

    def _aggregations(
        self,
        fields: List[str],
        timestamp_field: str,
        after_key: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        max_timestamp = {"max_timestamp": {"max": {"field": timestamp_field}}}
        if not fields:
            return {
                "count": {"value_count": {"field": timestamp_field}},
                **max_timestamp,
            }
        composite: Dict[str, Any] = {
            "size": THRESHOLD_PAGE_SIZE,
            "sources": [{field: {"terms": {"field": field}}} for field in fields],
        }
        if after_key:
            composite["after"] = after_key
        return {THRESHOLD_AGGREGATION: {"composite": composite, "aggs": max_timestamp}}

    async def execute(
        self,
        time_tuple: TimeTuple,
        context: ExecutionContext,
    ) -> AsyncIterator[MatchBatch]:
        rule = context.rule
        params = rule.threshold
        timestamp_field = self.timestamp_field(rule)
        query = build_event_query(rule.query, rule.filters, time_tuple, timestamp_field)
        label = ",".join(context.indices)
        after_key: Optional[Dict[str, Any]] = None

        while True:
            context.check_cancelled()
            start = time.monotonic()
            response = await context.backend.aggregate(
                indices=context.indices,
                query=query,
                aggregations=self._aggregations(params.field, timestamp_field, after_key),
                timeout_seconds=context.timeout_seconds,
            )
            elapsed_ms = (time.monotonic() - start) * 1000
            errors = create_errors_from_shard(response.shard_failures)

            if not params.field:
                count = int(response.aggregations.get("count", {}).get("value") or 0)
                last_time = parse_timestamp(
                    response.aggregations.get("max_timestamp", {}).get("value")
                )
                matches = []
                if count >= params.value:
                    matches.append(
                        build_threshold_match(rule, time_tuple, {}, count, last_time, label)
                    )
                yield MatchBatch(
                    matches=matches,
                    search_durations_ms=[elapsed_ms],
                    errors=errors,
                    last_seen_timestamp=last_time,
                )
                return

            aggregation = response.aggregations.get(THRESHOLD_AGGREGATION, {})
            buckets = aggregation.get("buckets", [])
            matches = []
            for bucket in buckets:
                if bucket.get("doc_count", 0) < params.value:
                    continue
                matches.append(
                    build_threshold_match(
                        rule,
                        time_tuple,
                        dict(bucket.get("key", {})),
                        bucket["doc_count"],
                        parse_timestamp(bucket.get("max_timestamp", {}).get("value")),
                        label,
                    )
                )
            logger.debug(
                "threshold_buckets_evaluated",
                rule_id=rule.rule_id,
                buckets=len(buckets),
                over_threshold=len(matches),
            )
            yield MatchBatch(
                matches=matches,
                search_durations_ms=[elapsed_ms],
                errors=errors,
                last_seen_timestamp=last_valid_date(matches, rule.timestamp_field),
            )

            after_key = aggregation.get("after_key")
            if not after_key or len(buckets) < THRESHOLD_PAGE_SIZE:
                return


# =============================================================================
# EQL
# =============================================================================


class EqlExecutor(RuleExecutor):
    """Runs an EQL query restricted to the tuple."""

    rule_type = RuleType.EQL

    async def execute(
        self,
        time_tuple: TimeTuple,
        context: ExecutionContext,
    ) -> AsyncIterator[MatchBatch]:
        rule = context.rule
        timestamp_field = self.timestamp_field(rule)
        context.check_cancelled()

        filter_query = {
            "bool": {"filter": [build_range_filter(time_tuple, timestamp_field), *rule.filters]}
        }
        start = time.monotonic()
        response = await context.backend.eql_search(
            indices=context.indices,
            query=rule.query,
            filter_query=filter_query,
            size=max(1, math.ceil(time_tuple.max_matches)),
            timestamp_field=timestamp_field,
            timeout_seconds=context.timeout_seconds,
        )
        elapsed_ms = (time.monotonic() - start) * 1000

        sequences = [EqlSequence(events=events) for events in response.sequences if events]
        events = list(response.hits) + [e for s in sequences for e in s.events]
        last_seen = None
        for event in events:
            timestamp = event.get_timestamp(timestamp_field)
            if timestamp is not None and (last_seen is None or timestamp > last_seen):
                last_seen = timestamp

        logger.debug(
            "eql_search_completed",
            rule_id=rule.rule_id,
            events=len(response.hits),
            sequences=len(sequences),
            elapsed_ms=round(elapsed_ms, 2),
        )
        yield MatchBatch(
            matches=list(response.hits),
            sequences=sequences,
            search_durations_ms=[elapsed_ms],
            errors=create_errors_from_shard(response.shard_failures),
            last_seen_timestamp=last_seen,
        )


# =============================================================================
# New terms
# =============================================================================


def term_combinations(match: RawMatch, fields: List[str]) -> Set[Tuple[Any, ...]]:
    """
    All value combinations of the fields in a match.

    Multi-valued fields contribute every value; a missing field yields no
    combinations.
    """
    values = [match.get_values(field) for field in fields]
    if any(not field_values for field_values in values):
        return set()
    return set(itertools.product(*values))


class NewTermsExecutor(RuleExecutor):
    """
    Emits events whose term combination is absent from the history window.

    The history window spans from the rule's history_window_start to the
    start of the tuple. Each new combination alerts once per tuple.
    """

    rule_type = RuleType.NEW_TERMS

    async def _known_combinations(
        self,
        context: ExecutionContext,
        fields: List[str],
        candidates: Set[Tuple[Any, ...]],
        history_start: datetime,
        history_end: datetime,
    ) -> Tuple[Set[Tuple[Any, ...]], List[float], List[str]]:
        """Combinations among the candidates already seen in the history window."""
        rule = context.rule
        timestamp_field = self.timestamp_field(rule)
        history_tuple = TimeTuple(from_=history_start, to=history_end, max_matches=0)
        term_filters = [
            {"terms": {field: sorted({c[i] for c in candidates}, key=str)}}
            for i, field in enumerate(fields)
        ]
        query = build_event_query(
            rule.query, rule.filters, history_tuple, timestamp_field, term_filters
        )

        known: Set[Tuple[Any, ...]] = set()
        durations: List[float] = []
        errors: List[str] = []
        after_key: Optional[Dict[str, Any]] = None
        while True:
            context.check_cancelled()
            composite: Dict[str, Any] = {
                "size": NEW_TERMS_PAGE_SIZE,
                "sources": [{field: {"terms": {"field": field}}} for field in fields],
            }
            if after_key:
                composite["after"] = after_key
            start = time.monotonic()
            response = await context.backend.aggregate(
                indices=context.indices,
                query=query,
                aggregations={NEW_TERMS_AGGREGATION: {"composite": composite}},
                timeout_seconds=context.timeout_seconds,
            )
            durations.append((time.monotonic() - start) * 1000)
            errors.extend(create_errors_from_shard(response.shard_failures))

            aggregation = response.aggregations.get(NEW_TERMS_AGGREGATION, {})
            buckets = aggregation.get("buckets", [])
            for bucket in buckets:
                key = bucket.get("key", {})
                known.add(tuple(key.get(field) for field in fields))
            after_key = aggregation.get("after_key")
            if not after_key or len(buckets) < NEW_TERMS_PAGE_SIZE:
                return known & candidates, durations, errors

    async def execute(
        self,
        time_tuple: TimeTuple,
        context: ExecutionContext,
    ) -> AsyncIterator[MatchBatch]:
        rule = context.rule
        params = rule.new_terms
        timestamp_field = self.timestamp_field(rule)
        history_start = parse_date_math(params.history_window_start, context.now)
        query = build_event_query(rule.query, rule.filters, time_tuple, timestamp_field)
        alerted: Set[Tuple[Any, ...]] = set()

        async for page in context.searcher.iter_pages(
            context.indices,
            query,
            time_tuple,
            timestamp_field,
            cancel_event=context.cancel_event,
        ):
            combinations = {id(hit): term_combinations(hit, params.fields) for hit in page.hits}
            candidates = set().union(*combinations.values()) - alerted if combinations else set()
            if not candidates:
                yield _page_batch(page, matches=[])
                continue

            known: Set[Tuple[Any, ...]] = set()
            durations: List[float] = []
            errors: List[str] = []
            if history_start < time_tuple.from_:
                known, durations, errors = await self._known_combinations(
                    context, params.fields, candidates, history_start, time_tuple.from_
                )
            matches: List[RawMatch] = []
            for hit in page.hits:
                new = combinations[id(hit)] - known - alerted
                if new:
                    matches.append(hit)
                    alerted.update(new)

            yield MatchBatch(
                matches=matches,
                search_durations_ms=[page.search_duration_ms, *durations],
                errors=page.errors + errors,
                last_seen_timestamp=page.last_seen_timestamp,
            )


# =============================================================================
# Threat match
# =============================================================================


class ThreatMatchExecutor(RuleExecutor):
    """
    Matches events against indicator documents.

    Indicators are loaded once per tuple, up to max_indicators, and
    searched in chunks of items_per_search. Each chunk becomes one terms
    clause per mapping. Matching events carry one enrichment per indicator
    they matched; an event matched by several chunks is emitted once.
    """

    rule_type = RuleType.THREAT_MATCH

    async def _load_indicators(self, context: ExecutionContext) -> List[RawMatch]:
        params = context.rule.threat
        query = {"bool": {"filter": [build_query_clause(params.threat_query)]}}
        sort = [{"_doc": {"order": "asc"}}]
        indicators: List[RawMatch] = []
        search_after: Optional[List[Any]] = None
        while len(indicators) < params.max_indicators:
            context.check_cancelled()
            size = min(INDICATOR_PAGE_SIZE, params.max_indicators - len(indicators))
            response = await context.backend.search(
                indices=params.threat_index,
                query=query,
                sort=sort,
                search_after=search_after,
                size=size,
                timeout_seconds=context.timeout_seconds,
            )
            indicators.extend(response.hits)
            if len(response.hits) < size or not response.hits[-1].sort:
                break
            search_after = response.hits[-1].sort
        logger.debug(
            "threat_indicators_loaded",
            rule_id=context.rule.rule_id,
            indicators=len(indicators),
        )
        return indicators

    @staticmethod
    def _enrich(
        event: RawMatch,
        indicators: List[RawMatch],
        context: ExecutionContext,
    ) -> List[Dict[str, Any]]:
        enrichments: List[Dict[str, Any]] = []
        for indicator in indicators:
            for mapping in context.rule.threat.threat_mapping:
                atomic = set(map(str, event.get_values(mapping.field))) & set(
                    map(str, indicator.get_values(mapping.value))
                )
                if atomic:
                    enrichments.append(
                        {
                            "indicator": {"id": indicator.id, "index": indicator.index},
                            "matched": {
                                "atomic": sorted(atomic)[0],
                                "field": mapping.field,
                                "type": "indicator_match_rule",
                            },
                        }
                    )
        return enrichments

    async def execute(
        self,
        time_tuple: TimeTuple,
        context: ExecutionContext,
    ) -> AsyncIterator[MatchBatch]:
        rule = context.rule
        params = rule.threat
        timestamp_field = self.timestamp_field(rule)
        indicators = await self._load_indicators(context)
        seen: Set[Tuple[str, str]] = set()

        for offset in range(0, len(indicators), params.items_per_search):
            chunk = indicators[offset:offset + params.items_per_search]
            should = []
            for mapping in params.threat_mapping:
                values = sorted(
                    {value for indicator in chunk for value in indicator.get_values(mapping.value)},
                    key=str,
                )
                if values:
                    should.append({"terms": {mapping.field: values}})
            if not should:
                continue

            query = build_event_query(
                rule.query,
                rule.filters,
                time_tuple,
                timestamp_field,
                [{"bool": {"should": should, "minimum_should_match": 1}}],
            )
            async for page in context.searcher.iter_pages(
                context.indices,
                query,
                time_tuple,
                timestamp_field,
                cancel_event=context.cancel_event,
            ):
                matches: List[RawMatch] = []
                for hit in page.hits:
                    key = (hit.index, hit.id)
                    if key in seen:
                        continue
                    enrichments = self._enrich(hit, chunk, context)
                    if not enrichments:
                        continue
                    seen.add(key)
                    matches.append(
                        hit.model_copy(update={"enrichments": hit.enrichments + enrichments})
                    )
                yield _page_batch(page, matches=matches)


# =============================================================================
# Machine learning
# =============================================================================


class MachineLearningExecutor(RuleExecutor):
    """
    Reads anomaly records written by external anomaly jobs.

    Only records of the configured jobs with a record_score at or above
    the threshold are matched.
    """

    rule_type = RuleType.MACHINE_LEARNING

    def timestamp_field(self, rule: RuleDefinition) -> str:
        return ANOMALY_TIMESTAMP_FIELD

    async def execute(
        self,
        time_tuple: TimeTuple,
        context: ExecutionContext,
    ) -> AsyncIterator[MatchBatch]:
        rule = context.rule
        params = rule.machine_learning
        timestamp_field = self.timestamp_field(rule)
        query = build_event_query(
            "*",
            [],
            time_tuple,
            timestamp_field,
            [
                {"term": {"result_type": "record"}},
                {"terms": {"job_id": list(params.job_ids)}},
                {"range": {"record_score": {"gte": params.anomaly_threshold}}},
            ],
        )
        async for page in context.searcher.iter_pages(
            context.indices,
            query,
            time_tuple,
            timestamp_field,
            cancel_event=context.cancel_event,
        ):
            yield _page_batch(page)


DEFAULT_EXECUTORS = (
    QueryExecutor,
    ThresholdExecutor,
    EqlExecutor,
    NewTermsExecutor,
    ThreatMatchExecutor,
    MachineLearningExecutor,
)
