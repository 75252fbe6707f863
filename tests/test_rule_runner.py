"""Tests for the rule runner service's run handling."""

import asyncio

import pytest

from alerting_engine.config.models import EngineConfig, ExecutionSettings
from alerting_engine.models.results import ExecutionOutcome, RunResult, RunStatus
from alerting_engine.services.rule_runner import RuleRunnerService

from tests.conftest import NOW, make_rule


class StubOrchestrator:
    """Records runs; optionally waits for cancellation or raises."""

    def __init__(self, wait_for_cancel=False, error=None):
        self.calls = []
        self.wait_for_cancel = wait_for_cancel
        self.error = error

    async def run(self, rule, previous_started_at=None, now=None, cancel_event=None):
        self.calls.append({"previous_started_at": previous_started_at, "now": now})
        if self.error is not None:
            raise self.error
        status = RunStatus.SUCCEEDED
        if self.wait_for_cancel:
            await cancel_event.wait()
            status = RunStatus.FAILED
        return ExecutionOutcome(
            rule_id=rule.rule_id,
            status=status,
            result=RunResult(),
            started_at=now or NOW,
            finished_at=now or NOW,
        )


def make_service(orchestrator, run_timeout_seconds=5.0):
    service = RuleRunnerService(config_path="config")
    service.config = EngineConfig(
        execution=ExecutionSettings(run_timeout_seconds=run_timeout_seconds),
        rules=[make_rule()],
    )
    service.orchestrator = orchestrator
    service.run_semaphore = asyncio.Semaphore(1)
    return service


@pytest.mark.asyncio
async def test_previous_start_is_passed_to_next_run():
    orchestrator = StubOrchestrator()
    service = make_service(orchestrator)
    rule = make_rule()

    first = await service.run_rule(rule)
    second = await service.run_rule(rule)

    assert first.status == RunStatus.SUCCEEDED
    assert second.status == RunStatus.SUCCEEDED
    assert orchestrator.calls[0]["previous_started_at"] is None
    assert orchestrator.calls[1]["previous_started_at"] == orchestrator.calls[0]["now"]


@pytest.mark.asyncio
async def test_run_timeout_cancels_cooperatively():
    service = make_service(StubOrchestrator(wait_for_cancel=True), run_timeout_seconds=0.05)

    outcome = await service.run_rule(make_rule())

    assert outcome is not None
    assert outcome.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_crashed_run_returns_none():
    service = make_service(StubOrchestrator(error=RuntimeError("bug")))

    assert await service.run_rule(make_rule()) is None


@pytest.mark.asyncio
async def test_uninitialized_service_raises():
    service = RuleRunnerService(config_path="config")

    with pytest.raises(RuntimeError):
        await service.run_rule(make_rule())


def test_request_shutdown_sets_event():
    service = RuleRunnerService(config_path="config")

    service.request_shutdown()

    assert service.shutdown_event.is_set()
    assert service.service_name == "rule-runner"
