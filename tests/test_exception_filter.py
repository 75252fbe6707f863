"""Tests for exception item filtering."""

import pytest

from alerting_engine.detection.exception_filter import ExceptionFilter, sort_exception_items
from alerting_engine.models.matches import EqlSequence

from tests.conftest import exception_item, make_match


@pytest.fixture
def exception_filter(list_lookup):
    return ExceptionFilter(list_lookup)


def _ids(matches):
    return [match.id for match in matches]


class TestEntryTypes:
    @pytest.mark.asyncio
    async def test_match_entry_removes_matching_event(self, exception_filter):
        matches = [
            make_match("a", {"host": {"name": "scanner-01"}}),
            make_match("b", {"host": {"name": "web-01"}}),
        ]
        items = [
            exception_item("i1", "l1", [{"field": "host.name", "type": "match", "value": "scanner-01"}])
        ]

        result = await exception_filter.filter(matches, items)

        assert _ids(result.kept) == ["b"]
        assert result.removed_count == 1

    @pytest.mark.asyncio
    async def test_match_any_entry(self, exception_filter):
        matches = [
            make_match("a", {"user.name": "svc-backup"}),
            make_match("b", {"user.name": "svc-deploy"}),
            make_match("c", {"user.name": "alice"}),
        ]
        items = [
            exception_item(
                "i1",
                "l1",
                [{"field": "user.name", "type": "match_any", "value": ["svc-backup", "svc-deploy"]}],
            )
        ]

        result = await exception_filter.filter(matches, items)

        assert _ids(result.kept) == ["c"]

    @pytest.mark.asyncio
    async def test_exists_entry(self, exception_filter):
        matches = [
            make_match("a", {"process": {"parent": {"name": "init"}}}),
            make_match("b", {"process": {"name": "sh"}}),
        ]
        items = [exception_item("i1", "l1", [{"field": "process.parent.name", "type": "exists"}])]

        result = await exception_filter.filter(matches, items)

        assert _ids(result.kept) == ["b"]

    @pytest.mark.asyncio
    async def test_excluded_operator_inverts_entry(self, exception_filter):
        matches = [
            make_match("a", {"host.name": "scanner-01"}),
            make_match("b", {"host.name": "web-01"}),
        ]
        items = [
            exception_item(
                "i1",
                "l1",
                [
                    {
                        "field": "host.name",
                        "type": "match",
                        "operator": "excluded",
                        "value": "scanner-01",
                    }
                ],
            )
        ]

        result = await exception_filter.filter(matches, items)

        assert _ids(result.kept) == ["a"]

    @pytest.mark.asyncio
    async def test_item_requires_every_entry(self, exception_filter):
        matches = [
            make_match("a", {"host.name": "web-01", "user.name": "root"}),
            make_match("b", {"host.name": "web-01", "user.name": "alice"}),
        ]
        items = [
            exception_item(
                "i1",
                "l1",
                [
                    {"field": "host.name", "type": "match", "value": "web-01"},
                    {"field": "user.name", "type": "match", "value": "root"},
                ],
            )
        ]

        result = await exception_filter.filter(matches, items)

        assert _ids(result.kept) == ["b"]

    @pytest.mark.asyncio
    async def test_no_items_keeps_everything(self, exception_filter):
        matches = [make_match("a"), make_match("b")]

        result = await exception_filter.filter(matches, [])

        assert _ids(result.kept) == ["a", "b"]
        assert result.removed_count == 0


class TestValueLists:
    @pytest.mark.asyncio
    async def test_list_entry_uses_one_batched_lookup(self, exception_filter, list_lookup):
        list_lookup.add("trusted-ips", "ip", ["10.0.0.1", "10.0.0.2"])
        matches = [
            make_match("a", {"source.ip": "10.0.0.1"}),
            make_match("b", {"source.ip": "10.0.0.2"}),
            make_match("c", {"source.ip": "192.168.1.9"}),
        ]
        items = [
            exception_item(
                "i1",
                "l1",
                [{"field": "source.ip", "type": "list", "list": {"id": "trusted-ips", "type": "ip"}}],
            )
        ]

        result = await exception_filter.filter(matches, items)

        assert _ids(result.kept) == ["c"]
        assert len(list_lookup.calls) == 1
        assert list_lookup.calls[0] == (
            "trusted-ips",
            "ip",
            ["10.0.0.1", "10.0.0.2", "192.168.1.9"],
        )

    @pytest.mark.asyncio
    async def test_list_items_skipped_with_warning_when_not_allowed(
        self, exception_filter, list_lookup
    ):
        list_lookup.add("trusted-ips", "ip", ["10.0.0.1"])
        matches = [
            make_match("a", {"source.ip": "10.0.0.1", "host.name": "web-01"}),
            make_match("b", {"source.ip": "10.0.0.3", "host.name": "scanner-01"}),
        ]
        items = [
            exception_item(
                "with-list",
                "l1",
                [{"field": "source.ip", "type": "list", "list": {"id": "trusted-ips", "type": "ip"}}],
            ),
            exception_item(
                "plain",
                "l1",
                [{"field": "host.name", "type": "match", "value": "scanner-01"}],
            ),
        ]

        result = await exception_filter.filter(matches, items, allow_value_lists=False)

        assert _ids(result.kept) == ["a"]
        assert len(result.warnings) == 1
        assert "with-list" in result.warnings[0]
        assert list_lookup.calls == []

    def test_sort_exception_items(self):
        with_list = exception_item(
            "x", "l1", [{"field": "f", "type": "list", "list": {"id": "v", "type": "keyword"}}]
        )
        plain = exception_item("y", "l1", [{"field": "f", "type": "exists"}])

        assert sort_exception_items([with_list, plain]) == ([with_list], [plain])


class TestSequences:
    @pytest.mark.asyncio
    async def test_sequence_removed_when_any_event_excepted(self, exception_filter):
        first = EqlSequence(
            events=[make_match("a1", {"host.name": "web-01"}), make_match("a2", {"host.name": "scanner-01"})]
        )
        second = EqlSequence(
            events=[make_match("b1", {"host.name": "web-01"}), make_match("b2", {"host.name": "web-02"})]
        )
        items = [
            exception_item("i1", "l1", [{"field": "host.name", "type": "match", "value": "scanner-01"}])
        ]

        result = await exception_filter.filter([], items, sequences=[first, second])

        assert result.kept_sequences == [second]
        assert result.removed_count == 1
