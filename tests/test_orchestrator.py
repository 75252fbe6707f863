"""End-to-end tests of rule runs against the in-memory backend."""

import asyncio
from datetime import timedelta

import pytest

from alerting_engine.dates import to_iso
from alerting_engine.detection.orchestrator import MAX_ALERTS_WARNING, create_orchestrator
from alerting_engine.detection.registry import create_default_registry
from alerting_engine.errors import BackendQueryError
from alerting_engine.interfaces.collaborators import ConsumerAuthorizer
from alerting_engine.models.results import RunStatus

from tests.conftest import ALERTS_INDEX, NOW, add_events, exception_item, make_rule
from tests.fakes import InMemoryExceptionSource


def alerts(backend):
    return backend.indices[ALERTS_INDEX]


class TestSuccessfulRuns:
    @pytest.mark.asyncio
    async def test_creates_one_alert_per_match(self, orchestrator, backend, status_sink):
        add_events(backend, 5)

        outcome = await orchestrator.run(make_rule(), now=NOW)

        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.result.created_count == 5
        assert outcome.tuples_planned == 1
        assert outcome.tuples_processed == 1
        assert len(alerts(backend)) == 5
        assert status_sink.last["status"] == "succeeded"
        assert status_sink.last["metrics"]["created_count"] == 5
        assert status_sink.last["metrics"]["tuples_planned"] == 1

    @pytest.mark.asyncio
    async def test_rerun_over_same_window_creates_no_duplicates(self, orchestrator, backend):
        add_events(backend, 5)
        rule = make_rule()

        await orchestrator.run(rule, now=NOW)
        outcome = await orchestrator.run(rule, now=NOW)

        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.result.errors == []
        assert outcome.result.created_count == 0
        assert len(alerts(backend)) == 5

    @pytest.mark.asyncio
    async def test_scheduled_overlap_is_not_a_failure(self, orchestrator, backend, status_sink):
        add_events(backend, 1, start=NOW - timedelta(seconds=30))
        rule = make_rule()

        first = await orchestrator.run(rule, now=NOW)
        second = await orchestrator.run(
            rule, previous_started_at=NOW, now=NOW + timedelta(minutes=5)
        )

        assert first.result.created_count == 1
        assert second.status == RunStatus.SUCCEEDED
        assert second.result.errors == []
        assert second.result.created_count == 0
        assert status_sink.last["status"] == "succeeded"
        assert len(alerts(backend)) == 1

    @pytest.mark.asyncio
    async def test_no_matches_succeeds(self, orchestrator, backend):
        backend.create_index("logs-empty", ["@timestamp"])

        outcome = await orchestrator.run(make_rule(), now=NOW)

        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.result.created_count == 0


class TestBudget:
    @pytest.mark.asyncio
    async def test_budget_caps_alerts_and_warns(self, orchestrator, backend, status_sink):
        add_events(backend, 8)

        outcome = await orchestrator.run(make_rule(max_matches=3), now=NOW)

        assert outcome.result.created_count == 3
        assert len(alerts(backend)) == 3
        assert MAX_ALERTS_WARNING in outcome.result.warnings
        assert outcome.status == RunStatus.PARTIAL_FAILURE
        assert status_sink.last["status"] == "partialFailure"

    @pytest.mark.asyncio
    async def test_catch_up_tuples_share_the_budget(self, orchestrator, backend):
        add_events(backend, 30, start=NOW - timedelta(hours=1), step=timedelta(minutes=2))

        outcome = await orchestrator.run(
            make_rule(max_matches=4),
            previous_started_at=NOW - timedelta(minutes=30),
            now=NOW,
        )

        assert outcome.tuples_planned == 5
        assert outcome.result.created_count == 4
        assert len(alerts(backend)) == 4
        assert MAX_ALERTS_WARNING in outcome.result.warnings


class TestGaps:
    @pytest.mark.asyncio
    async def test_uncovered_gap_is_a_warning(self, orchestrator, backend):
        add_events(backend, 1)

        outcome = await orchestrator.run(
            make_rule(), previous_started_at=NOW - timedelta(hours=2), now=NOW
        )

        assert outcome.tuples_planned == 5
        assert outcome.status == RunStatus.PARTIAL_FAILURE
        assert any("has passed since last rule execution" in w for w in outcome.result.warnings)


class TestFailures:
    @pytest.mark.asyncio
    async def test_cancelled_run_fails(self, orchestrator, backend, status_sink):
        add_events(backend, 5)
        cancel_event = asyncio.Event()
        cancel_event.set()

        outcome = await orchestrator.run(make_rule(), now=NOW, cancel_event=cancel_event)

        assert outcome.status == RunStatus.FAILED
        assert alerts(backend) == []
        assert status_sink.last["status"] == "failed"

    @pytest.mark.asyncio
    async def test_one_failed_tuple_is_partial_failure(self, orchestrator, backend):
        add_events(backend, 5)
        catch_up_start = to_iso(NOW - timedelta(minutes=8))
        backend.search_failure = lambda request: (
            BackendQueryError("search timed out", timed_out=True)
            if catch_up_start in str(request["query"])
            else None
        )

        outcome = await orchestrator.run(
            make_rule(), previous_started_at=NOW - timedelta(minutes=8), now=NOW
        )

        assert outcome.tuples_planned == 2
        assert outcome.tuples_failed == 1
        assert outcome.status == RunStatus.PARTIAL_FAILURE
        assert "search timed out" in outcome.result.errors
        assert outcome.result.created_count == 5

    @pytest.mark.asyncio
    async def test_every_tuple_failing_fails_the_run(self, orchestrator, backend):
        add_events(backend, 5)
        backend.search_failure = lambda request: BackendQueryError("unavailable", status_code=503)

        outcome = await orchestrator.run(make_rule(), now=NOW)

        assert outcome.status == RunStatus.FAILED
        assert outcome.tuples_failed == 1

    @pytest.mark.asyncio
    async def test_unauthorized_consumer_fails_without_searching(self, orchestrator, backend):
        add_events(backend, 5)

        outcome = await orchestrator.run(make_rule(consumer="ml"), now=NOW)

        assert outcome.status == RunStatus.FAILED
        assert "Unauthorized" in outcome.message
        assert backend.search_requests == []

    @pytest.mark.asyncio
    async def test_missing_timestamp_field_everywhere_fails(self, orchestrator, backend):
        backend.create_index("logs-test", ["message"])

        outcome = await orchestrator.run(make_rule(), now=NOW)

        assert outcome.status == RunStatus.FAILED
        assert backend.search_requests == []

    @pytest.mark.asyncio
    async def test_exception_list_failure_fails(
        self, backend, list_lookup, status_sink, settings
    ):
        add_events(backend, 2)
        orchestrator = create_orchestrator(
            backend=backend,
            registry=create_default_registry(),
            list_lookup=list_lookup,
            exception_source=InMemoryExceptionSource(fail=True),
            authorizer=ConsumerAuthorizer(),
            status_sink=status_sink,
            settings=settings,
        )
        rule = make_rule(exception_list_refs=[{"list_id": "endpoint-exceptions"}])

        outcome = await orchestrator.run(rule, now=NOW)

        assert outcome.status == RunStatus.FAILED
        assert "unable to fetch exception list items" in outcome.message

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported_and_raised(self, orchestrator, backend, status_sink):
        add_events(backend, 2)
        backend.search_failure = lambda request: RuntimeError("bug")

        with pytest.raises(RuntimeError):
            await orchestrator.run(make_rule(), now=NOW)

        assert status_sink.last["status"] == "error"


class TestExceptionsAndSuppression:
    @pytest.mark.asyncio
    async def test_excepted_matches_do_not_alert(self, orchestrator, backend, exception_source):
        add_events(backend, 3, source={"host.name": "scanner-01"}, prefix="scan")
        add_events(backend, 2, source={"host.name": "web-01"}, prefix="web")
        exception_source.items.append(
            exception_item(
                "trusted-scanner",
                "endpoint-exceptions",
                [{"field": "host.name", "type": "match", "value": "scanner-01"}],
            )
        )
        rule = make_rule(exception_list_refs=[{"list_id": "endpoint-exceptions"}])

        outcome = await orchestrator.run(rule, now=NOW)

        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.result.created_count == 2

    @pytest.mark.asyncio
    async def test_matches_are_suppressed_into_one_alert(self, orchestrator, backend):
        add_events(backend, 4, source={"host.name": "a", "user.name": "x"})
        rule = make_rule(suppression={"group_by": ["host.name", "user.name"]})

        outcome = await orchestrator.run(rule, now=NOW)

        assert outcome.result.created_count == 1
        assert outcome.result.suppressed_count == 3
        assert alerts(backend)[0].source["suppression"]["docs_count"] == 4

    @pytest.mark.asyncio
    async def test_suppression_spanning_pages_updates_alert(self, orchestrator, backend):
        add_events(backend, 25, source={"host.name": "a"})
        rule = make_rule(suppression={"group_by": ["host.name"]})

        outcome = await orchestrator.run(rule, now=NOW)

        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.result.created_count == 1
        assert outcome.result.suppressed_count == 24
        assert len(alerts(backend)) == 1
        assert alerts(backend)[0].source["suppression"]["docs_count"] == 25

    @pytest.mark.asyncio
    async def test_time_window_suppression_across_runs(self, orchestrator, backend):
        add_events(backend, 2, source={"host.name": "a"}, prefix="first")
        rule = make_rule(
            suppression={
                "group_by": ["host.name"],
                "mode": {"kind": "time_window", "duration": {"value": 1, "unit": "h"}},
            }
        )
        await orchestrator.run(rule, now=NOW)

        later = NOW + timedelta(minutes=5)
        add_events(backend, 3, start=later - timedelta(minutes=2), source={"host.name": "a"}, prefix="second")
        outcome = await orchestrator.run(rule, previous_started_at=NOW, now=later)

        assert outcome.result.created_count == 0
        assert len(alerts(backend)) == 1
        assert alerts(backend)[0].source["suppression"]["docs_count"] == 5

    @pytest.mark.asyncio
    async def test_time_window_replay_keeps_counts(self, orchestrator, backend):
        add_events(backend, 2, start=NOW - timedelta(seconds=30), source={"host.name": "a"})
        rule = make_rule(
            suppression={
                "group_by": ["host.name"],
                "mode": {"kind": "time_window", "duration": {"value": 1, "unit": "h"}},
            }
        )
        await orchestrator.run(rule, now=NOW)

        outcome = await orchestrator.run(
            rule, previous_started_at=NOW, now=NOW + timedelta(minutes=5)
        )

        assert outcome.status == RunStatus.SUCCEEDED
        assert outcome.result.created_count == 0
        assert outcome.result.suppressed_count == 0
        assert len(alerts(backend)) == 1
        assert alerts(backend)[0].source["suppression"]["docs_count"] == 2

    @pytest.mark.asyncio
    async def test_threshold_rule_skips_value_list_exceptions(
        self, orchestrator, backend, exception_source
    ):
        add_events(backend, 4, source={"source.ip": "10.0.0.1"})
        exception_source.items.append(
            exception_item(
                "trusted-ips",
                "network-exceptions",
                [{"field": "source.ip", "type": "list", "list": {"id": "ips", "type": "ip"}}],
            )
        )
        rule = make_rule(
            rule_type="threshold",
            threshold={"field": ["source.ip"], "value": 3},
            exception_list_refs=[{"list_id": "network-exceptions"}],
        )

        outcome = await orchestrator.run(rule, now=NOW)

        assert outcome.result.created_count == 1
        assert outcome.status == RunStatus.PARTIAL_FAILURE
        assert any("trusted-ips" in w for w in outcome.result.warnings)
