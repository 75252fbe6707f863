"""Tests for bulk persistence of alert operations."""

from datetime import timedelta

import pytest

from alerting_engine.detection.alert_writer import build_alert, build_alert_operations
from alerting_engine.detection.storage import AlertStorage, aggregate_errors, truncate_operations
from alerting_engine.detection.suppression import SuppressionEngine
from alerting_engine.errors import BulkWriteError
from alerting_engine.models.alerts import AlertWriteOperation
from alerting_engine.models.matches import EqlSequence
from alerting_engine.models.results import BulkItemOutcome, BulkItemResult

from tests.conftest import ALERTS_INDEX, NOW, make_match, make_rule


def create_operations(count, rule=None):
    rule = rule or make_rule()
    return [
        AlertWriteOperation.create(build_alert(make_match(f"doc-{i}"), rule, NOW), ALERTS_INDEX)
        for i in range(count)
    ]


class TestWrite:
    @pytest.mark.asyncio
    async def test_one_failed_item_does_not_fail_siblings(self, backend):
        operations = create_operations(10)
        backend.bulk_item_failures[operations[5].doc_id] = (
            409,
            "version_conflict_engine_exception",
            "version conflict",
        )
        storage = AlertStorage(backend, ALERTS_INDEX)

        result = await storage.write(operations, remaining_budget=100)

        assert result.created == 9
        assert result.created_counted == 9
        assert len(result.error_aggregation) == 1
        assert result.error_aggregation[0].count == 1
        assert result.errors == ["version conflict (status code: 409, count: 1)"]
        assert not result.success
        assert len(backend.indices[ALERTS_INDEX]) == 9

    @pytest.mark.asyncio
    async def test_operations_are_chunked(self, backend):
        storage = AlertStorage(backend, ALERTS_INDEX, batch_size=4)

        result = await storage.write(create_operations(10), remaining_budget=100)

        assert [len(request) for request in backend.bulk_requests] == [4, 4, 2]
        assert len(result.duration_ms) == 3
        assert result.created == 10

    @pytest.mark.asyncio
    async def test_budget_truncates_creates(self, backend):
        storage = AlertStorage(backend, ALERTS_INDEX)

        result = await storage.write(create_operations(5), remaining_budget=3)

        assert result.created_counted == 3
        assert result.truncated == 2

    @pytest.mark.asyncio
    async def test_rewriting_same_alerts_skips_duplicates(self, backend):
        storage = AlertStorage(backend, ALERTS_INDEX)
        await storage.write(create_operations(3), remaining_budget=100)

        result = await storage.write(create_operations(3), remaining_budget=100)

        assert result.created == 0
        assert result.duplicates == 3
        assert result.errors == []
        assert result.success
        assert len(backend.bulk_requests) == 1
        assert len(backend.indices[ALERTS_INDEX]) == 3

    @pytest.mark.asyncio
    async def test_duplicates_do_not_consume_budget(self, backend):
        storage = AlertStorage(backend, ALERTS_INDEX)
        operations = create_operations(5)
        await storage.write(operations[:3], remaining_budget=100)

        result = await storage.write(operations, remaining_budget=2)

        assert result.duplicates == 3
        assert result.created_counted == 2
        assert result.truncated == 0
        assert len(backend.indices[ALERTS_INDEX]) == 5

    @pytest.mark.asyncio
    async def test_existing_ids_are_looked_up_in_chunks(self, backend):
        storage = AlertStorage(backend, ALERTS_INDEX, batch_size=2)
        operations = create_operations(5)
        await storage.write(operations[:1], remaining_budget=100)
        backend.search_requests.clear()

        existing = await storage.find_existing_ids([op.doc_id for op in operations])

        assert existing == {operations[0].doc_id}
        assert [len(r["query"]["ids"]["values"]) for r in backend.search_requests] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_ignored_status_codes_are_not_errors(self, backend):
        operations = create_operations(2)
        backend.bulk_item_failures[operations[0].doc_id] = (
            409,
            "version_conflict_engine_exception",
            "version conflict",
        )
        storage = AlertStorage(backend, ALERTS_INDEX, ignore_status_codes=[409])

        result = await storage.write(operations, remaining_budget=100)

        assert result.created == 1
        assert result.errors == []
        assert result.success

    @pytest.mark.asyncio
    async def test_failed_request_only_fails_its_chunk(self, backend):
        backend.bulk_request_failures.append(BulkWriteError("cluster unavailable", status_code=503))
        storage = AlertStorage(backend, ALERTS_INDEX, batch_size=3)

        result = await storage.write(create_operations(5), remaining_budget=100)

        assert result.created == 2
        assert result.errors == ["cluster unavailable (status code: 503, count: 3)"]
        assert all(o.result == BulkItemResult.ERROR for o in result.outcomes[:3])

    @pytest.mark.asyncio
    async def test_nothing_to_write(self, backend):
        storage = AlertStorage(backend, ALERTS_INDEX)

        result = await storage.write([], remaining_budget=10)

        assert result.created == 0
        assert backend.bulk_requests == []

    def test_batch_size_must_be_positive(self, backend):
        with pytest.raises(ValueError):
            AlertStorage(backend, ALERTS_INDEX, batch_size=0)


class TestTruncateOperations:
    def test_blocks_of_dropped_head_are_dropped(self):
        rule = make_rule(rule_type="eql", query="sequence [a where true] [b where true]")
        first = EqlSequence(events=[make_match("a1"), make_match("a2")])
        second = EqlSequence(events=[make_match("b1"), make_match("b2")])
        operations = build_alert_operations([], [first, second], rule, NOW, ALERTS_INDEX)

        kept, truncated = truncate_operations(operations, remaining_budget=1)

        assert truncated == 1
        assert len(kept) == 3
        assert {op.group_id for op in kept} == {operations[0].group_id}

    def test_updates_always_pass(self):
        update = AlertWriteOperation(
            action="update",
            index=ALERTS_INDEX,
            doc_id="x",
            document={"suppression": {}},
            counts_toward_budget=False,
        )

        kept, truncated = truncate_operations([update], remaining_budget=0)

        assert kept == [update]
        assert truncated == 0


class TestAggregateErrors:
    def test_groups_by_reason_and_status(self):
        def failed(doc_id, status, reason):
            return BulkItemOutcome(
                doc_id=doc_id,
                action="create",
                result=BulkItemResult.ERROR,
                status=status,
                error_reason=reason,
            )

        outcomes = [
            failed("a", 409, "conflict"),
            failed("b", 409, "conflict"),
            failed("c", 429, "rejected"),
            failed("d", 500, None),
        ]

        aggregates = aggregate_errors(outcomes)

        assert [(a.reason, a.status_code, a.count) for a in aggregates] == [
            ("conflict", 409, 2),
            ("rejected", 429, 1),
            ("unknown error", 500, 1),
        ]


class TestFindOpenInstances:
    @pytest.mark.asyncio
    async def test_pages_through_suppressed_alerts(self, backend):
        rule = make_rule(suppression={"group_by": ["host.name"]})
        storage = AlertStorage(backend, ALERTS_INDEX)
        engine = SuppressionEngine(rule, rule.suppression, NOW, ALERTS_INDEX)
        matches = [make_match(f"e{i}", {"host.name": f"h{i}"}) for i in range(5)]
        await storage.write(engine.merge(matches, 100).operations, remaining_budget=100)
        await storage.write(create_operations(2, rule), remaining_budget=100)

        found = await storage.find_open_instances(
            rule.rule_id, rule.space_id, NOW - timedelta(hours=1), page_size=2
        )

        assert len(found) == 5
        assert all(alert.suppression is not None for alert, _, _ in found)
        assert all(seq_no is not None for _, seq_no, _ in found)
