"""Tests for deterministic alert construction."""

from alerting_engine.detection.alert_writer import (
    build_alert,
    build_alert_operations,
    build_sequence_alerts,
    generate_alert_id,
    generate_building_block_ids,
    merge_sequence_sources,
)
from alerting_engine.models.matches import EqlSequence

from tests.conftest import ALERTS_INDEX, NOW, make_match, make_rule


def eql_rule():
    return make_rule(rule_type="eql", query="sequence [process where true] [network where true]")


class TestAlertIds:
    def test_same_event_gives_same_id(self):
        rule = make_rule()
        first = build_alert(make_match("doc-1"), rule, NOW)
        second = build_alert(make_match("doc-1"), rule, NOW)

        assert first.alert_id == second.alert_id

    def test_id_depends_on_index_version_rule_and_space(self):
        base = generate_alert_id("logs-1", "doc-1", 1, "rule-1", "default")

        assert base != generate_alert_id("logs-2", "doc-1", 1, "rule-1", "default")
        assert base != generate_alert_id("logs-1", "doc-1", 2, "rule-1", "default")
        assert base != generate_alert_id("logs-1", "doc-1", 1, "rule-2", "default")
        assert base != generate_alert_id("logs-1", "doc-1", 1, "rule-1", "other")

    def test_shifting_characters_between_parts_changes_id(self):
        assert generate_alert_id("logs-1", "23", 1, "rule-1", "default") != generate_alert_id(
            "logs-12", "3", 1, "rule-1", "default"
        )
        assert generate_alert_id("logs", "a1", None, "rule-1", "default") != generate_alert_id(
            "logs", "a", 1, "rule-1", "default"
        )

    def test_alert_copies_source_and_ancestry(self):
        rule = make_rule()
        match = make_match("doc-1", {"host.name": "web-01", "user.name": "root"})

        alert = build_alert(match, rule, NOW)

        assert alert.rule_id == rule.rule_id
        assert alert.status.value == "open"
        assert alert.timestamp == NOW
        assert alert.source["host.name"] == "web-01"
        assert alert.ancestors[0].id == "doc-1"
        assert "on web-01" in alert.reason
        assert "by root" in alert.reason

    def test_index_document_uses_timestamp_alias(self):
        alert = build_alert(make_match("doc-1"), make_rule(), NOW)

        document = alert.to_index_document()

        assert "@timestamp" in document
        assert "timestamp" not in document
        assert "suppression" not in document


class TestSequences:
    def test_building_block_ids_are_stable_and_distinct(self):
        rule = eql_rule()
        sequence = EqlSequence(events=[make_match("a"), make_match("b"), make_match("c")])

        ids = generate_building_block_ids(sequence, rule)

        assert ids == generate_building_block_ids(sequence, rule)
        assert len(set(ids)) == 3

    def test_building_block_ids_keep_events_apart(self):
        rule = eql_rule()
        first = EqlSequence(
            events=[make_match("ab", index="logs-1"), make_match("c", index="logs-1")]
        )
        second = EqlSequence(
            events=[make_match("a", index="logs-1"), make_match("bc", index="logs-1")]
        )

        assert set(generate_building_block_ids(first, rule)).isdisjoint(
            generate_building_block_ids(second, rule)
        )

    def test_head_and_blocks_share_group(self):
        rule = eql_rule()
        sequence = EqlSequence(events=[make_match("a"), make_match("b")])

        head, blocks = build_sequence_alerts(sequence, rule, NOW)

        assert [block.group_index for block in blocks] == [0, 1]
        assert all(block.is_building_block for block in blocks)
        assert not head.is_building_block
        assert {block.group_id for block in blocks} == {head.group_id}
        assert [ancestor.id for ancestor in head.ancestors] == ["a", "b"]

    def test_head_source_keeps_common_fields(self):
        sequence = EqlSequence(
            events=[
                make_match("a", {"host.name": "h", "process.name": "sh"}),
                make_match("b", {"host.name": "h", "process.name": "curl"}),
            ]
        )

        common = merge_sequence_sources(sequence)

        assert common["host.name"] == "h"
        assert "process.name" not in common


class TestBuildAlertOperations:
    def test_blocks_follow_head_and_do_not_count(self):
        rule = eql_rule()
        sequence = EqlSequence(events=[make_match("a"), make_match("b")])

        operations = build_alert_operations(
            [make_match("single")], [sequence], rule, NOW, ALERTS_INDEX
        )

        assert [op.counts_toward_budget for op in operations] == [True, True, False, False]
        assert all(op.index == ALERTS_INDEX for op in operations)
        assert operations[2].group_id == operations[1].doc_id
