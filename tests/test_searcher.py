"""Tests for search_after pagination and the timestamp field check."""

import asyncio
from datetime import timedelta

import pytest

from alerting_engine.detection.searcher import (
    PaginatedSearcher,
    build_event_query,
    build_query_clause,
    check_timestamp_fields,
)
from alerting_engine.errors import BackendQueryError, RunCancelled
from alerting_engine.models.results import TimestampCheckStatus

from tests.conftest import EVENTS_INDEX, NOW, add_events, make_tuple


class TestPaginatedSearcher:
    @pytest.mark.asyncio
    async def test_returns_every_document_exactly_once(self, backend):
        ids = add_events(backend, 25)
        searcher = PaginatedSearcher(backend, page_size=10)
        time_tuple = make_tuple()
        query = build_event_query("*", [], time_tuple, "@timestamp")

        pages = [
            page
            async for page in searcher.iter_pages([EVENTS_INDEX], query, time_tuple, "@timestamp")
        ]

        seen = [hit.id for page in pages for hit in page.hits]
        assert sorted(seen) == sorted(ids)
        assert len(seen) == len(set(seen))
        assert [len(page.hits) for page in pages] == [10, 10, 5]

    @pytest.mark.asyncio
    async def test_identical_timestamps_are_split_by_tiebreaker(self, backend):
        ids = add_events(backend, 12, step=timedelta(0))
        searcher = PaginatedSearcher(backend, page_size=5)
        time_tuple = make_tuple()
        query = build_event_query("*", [], time_tuple, "@timestamp")

        seen = [
            hit.id
            async for page in searcher.iter_pages([EVENTS_INDEX], query, time_tuple, "@timestamp")
            for hit in page.hits
        ]

        assert seen == ids

    @pytest.mark.asyncio
    async def test_page_size_is_capped_by_tuple_budget(self, backend):
        add_events(backend, 30)
        searcher = PaginatedSearcher(backend, page_size=100)
        time_tuple = make_tuple(max_matches=7)
        query = build_event_query("*", [], time_tuple, "@timestamp")

        async for _ in searcher.iter_pages([EVENTS_INDEX], query, time_tuple, "@timestamp"):
            break

        assert backend.search_requests[0]["size"] == 7

    @pytest.mark.asyncio
    async def test_events_outside_tuple_are_not_returned(self, backend):
        add_events(backend, 3, start=NOW - timedelta(hours=1), prefix="old")
        recent = add_events(backend, 2, prefix="new")
        searcher = PaginatedSearcher(backend, page_size=10)
        time_tuple = make_tuple()
        query = build_event_query("*", [], time_tuple, "@timestamp")

        seen = [
            hit.id
            async for page in searcher.iter_pages([EVENTS_INDEX], query, time_tuple, "@timestamp")
            for hit in page.hits
        ]

        assert seen == recent

    @pytest.mark.asyncio
    async def test_last_seen_timestamp_is_newest_hit(self, backend):
        add_events(backend, 3)
        searcher = PaginatedSearcher(backend, page_size=10)
        time_tuple = make_tuple()
        query = build_event_query("*", [], time_tuple, "@timestamp")

        pages = [
            page
            async for page in searcher.iter_pages([EVENTS_INDEX], query, time_tuple, "@timestamp")
        ]

        assert pages[0].last_seen_timestamp == NOW - timedelta(minutes=5) + timedelta(seconds=2)

    @pytest.mark.asyncio
    async def test_cancellation_stops_before_next_request(self, backend):
        add_events(backend, 25)
        searcher = PaginatedSearcher(backend, page_size=10)
        time_tuple = make_tuple()
        query = build_event_query("*", [], time_tuple, "@timestamp")
        cancel_event = asyncio.Event()

        with pytest.raises(RunCancelled):
            async for _ in searcher.iter_pages(
                [EVENTS_INDEX], query, time_tuple, "@timestamp", cancel_event=cancel_event
            ):
                cancel_event.set()

        assert len(backend.search_requests) == 1

    @pytest.mark.asyncio
    async def test_backend_errors_propagate(self, backend):
        add_events(backend, 3)
        backend.search_failure = lambda request: BackendQueryError("boom", timed_out=True)
        searcher = PaginatedSearcher(backend, page_size=10)
        time_tuple = make_tuple()
        query = build_event_query("*", [], time_tuple, "@timestamp")

        with pytest.raises(BackendQueryError):
            async for _ in searcher.iter_pages([EVENTS_INDEX], query, time_tuple, "@timestamp"):
                pass


class TestQueryBuilding:
    def test_wildcard_query_matches_all(self):
        assert build_query_clause("*") == {"match_all": {}}
        assert build_query_clause("") == {"match_all": {}}

    def test_query_string_and_dsl(self):
        assert build_query_clause("user.name:root") == {
            "query_string": {"query": "user.name:root"}
        }
        dsl = {"term": {"event.outcome": "failure"}}
        assert build_query_clause(dsl) is dsl

    def test_event_query_combines_range_query_and_filters(self):
        time_tuple = make_tuple()
        query = build_event_query(
            "*", [{"term": {"host.name": "a"}}], time_tuple, "event.ingested"
        )

        clauses = query["bool"]["filter"]
        assert "event.ingested" in clauses[0]["range"]
        assert clauses[1] == {"match_all": {}}
        assert clauses[2] == {"term": {"host.name": "a"}}


class TestCheckTimestampFields:
    @pytest.mark.asyncio
    async def test_all_indices_map_field(self, backend):
        backend.create_index("logs-a", ["@timestamp"])
        backend.create_index("logs-b", ["@timestamp"])

        result = await check_timestamp_fields(backend, ["logs-*"], "@timestamp")

        assert result.status == TimestampCheckStatus.SUCCESS
        assert result.success_indices == ["logs-a", "logs-b"]

    @pytest.mark.asyncio
    async def test_some_indices_missing_field(self, backend):
        backend.create_index("logs-a", ["@timestamp"])
        backend.create_index("logs-b", ["message"])

        result = await check_timestamp_fields(backend, ["logs-*"], "@timestamp")

        assert result.status == TimestampCheckStatus.PARTIAL_FAILURE
        assert result.success_indices == ["logs-a"]
        assert result.failing_indices == ["logs-b"]
        assert any("missing the timestamp field" in m for m in result.messages)

    @pytest.mark.asyncio
    async def test_no_index_maps_field(self, backend):
        backend.create_index("logs-a", ["message"])

        result = await check_timestamp_fields(backend, ["logs-*"], "@timestamp")

        assert result.status == TimestampCheckStatus.ERROR

    @pytest.mark.asyncio
    async def test_no_matching_index(self, backend):
        result = await check_timestamp_fields(backend, ["missing-*"], "@timestamp")

        assert result.status == TimestampCheckStatus.ERROR
        assert "no index matching" in result.messages[0]
