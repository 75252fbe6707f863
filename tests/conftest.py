"""
Shared fixtures and builders for the engine tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from alerting_engine.config.models import ExecutionSettings
from alerting_engine.dates import to_iso
from alerting_engine.detection.orchestrator import ExecutionOrchestrator
from alerting_engine.detection.registry import create_default_registry
from alerting_engine.interfaces.collaborators import ConsumerAuthorizer
from alerting_engine.models.exceptions import ExceptionItem
from alerting_engine.models.matches import RawMatch, TimeTuple
from alerting_engine.models.rules import RuleDefinition

from tests.fakes import (
    InMemoryBackend,
    InMemoryExceptionSource,
    InMemoryListLookup,
    RecordingStatusSink,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
ALERTS_INDEX = ".alerts-test"
EVENTS_INDEX = "logs-test"


def make_rule(**overrides: Any) -> RuleDefinition:
    """Query rule over logs-* with a 6m look-back every 5m."""
    data: Dict[str, Any] = {
        "rule_id": "rule-1",
        "name": "Test rule",
        "rule_type": "query",
        "index": ["logs-*"],
        "query": "*",
        "from": "now-6m",
        "to": "now",
        "interval": "5m",
        "max_matches": 100,
    }
    data.update(overrides)
    return RuleDefinition.model_validate(data)


def make_match(
    doc_id: str,
    source: Optional[Dict[str, Any]] = None,
    index: str = EVENTS_INDEX,
    timestamp: Optional[datetime] = None,
    version: int = 1,
) -> RawMatch:
    """Match whose source carries @timestamp (default NOW - 1m)."""
    body = {"@timestamp": to_iso(timestamp or NOW - timedelta(minutes=1))}
    body.update(source or {})
    return RawMatch(id=doc_id, index=index, version=version, source=body)


def make_tuple(minutes: int = 6, max_matches: int = 100) -> TimeTuple:
    return TimeTuple(from_=NOW - timedelta(minutes=minutes), to=NOW, max_matches=max_matches)


def add_events(
    backend: InMemoryBackend,
    count: int,
    index: str = EVENTS_INDEX,
    start: Optional[datetime] = None,
    step: timedelta = timedelta(seconds=1),
    source: Optional[Dict[str, Any]] = None,
    prefix: str = "evt",
) -> List[str]:
    """Add count events one step apart, starting 5 minutes before NOW."""
    first = start or NOW - timedelta(minutes=5)
    ids = []
    for position in range(count):
        doc_id = f"{prefix}-{position}"
        body = {"@timestamp": to_iso(first + step * position)}
        body.update(source or {})
        backend.add_document(index, doc_id, body)
        ids.append(doc_id)
    return ids


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def backend() -> InMemoryBackend:
    backend = InMemoryBackend()
    backend.create_index(ALERTS_INDEX, ["@timestamp"])
    return backend


@pytest.fixture
def list_lookup() -> InMemoryListLookup:
    return InMemoryListLookup()


@pytest.fixture
def exception_source() -> InMemoryExceptionSource:
    return InMemoryExceptionSource()


@pytest.fixture
def status_sink() -> RecordingStatusSink:
    return RecordingStatusSink()


@pytest.fixture
def settings() -> ExecutionSettings:
    return ExecutionSettings(page_size=10, bulk_batch_size=50, alerts_index=ALERTS_INDEX)


@pytest.fixture
def orchestrator(
    backend: InMemoryBackend,
    list_lookup: InMemoryListLookup,
    exception_source: InMemoryExceptionSource,
    status_sink: RecordingStatusSink,
    settings: ExecutionSettings,
) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(
        backend=backend,
        registry=create_default_registry(),
        list_lookup=list_lookup,
        exception_source=exception_source,
        authorizer=ConsumerAuthorizer(["siem"]),
        status_sink=status_sink,
        settings=settings,
    )


def exception_item(item_id: str, list_id: str, entries: List[Dict[str, Any]]) -> ExceptionItem:
    return ExceptionItem.model_validate(
        {"item_id": item_id, "list_id": list_id, "entries": entries}
    )
