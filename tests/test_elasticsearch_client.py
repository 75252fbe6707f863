"""Tests for Elasticsearch response parsing and error translation."""

import pytest
from elasticsearch import ConnectionTimeout

from alerting_engine.config.models import ElasticsearchConnectionConfig
from alerting_engine.errors import BackendQueryError
from alerting_engine.models.alerts import AlertWriteOperation
from alerting_engine.storage.elasticsearch_client import (
    ElasticsearchClient,
    build_bulk_body,
    parse_bulk_item,
    parse_hit,
    parse_shard_failures,
    parse_total,
)


class StubResponse:
    def __init__(self, body):
        self.body = body


class StubClient:
    """Stands in for AsyncElasticsearch; records search kwargs."""

    def __init__(self, body=None, error=None):
        self.body = body or {}
        self.error = error
        self.requests = []

    def options(self, **kwargs):
        return self

    async def search(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return StubResponse(self.body)


def connected_client(stub):
    client = ElasticsearchClient(ElasticsearchConnectionConfig())
    client._client = stub
    client._connected = True
    return client


class TestParsing:
    def test_parse_hit(self):
        hit = parse_hit(
            {
                "_id": "a",
                "_index": "logs-1",
                "_version": 2,
                "_seq_no": 10,
                "_primary_term": 1,
                "sort": [1714564740000, 3],
                "_source": {"host": {"name": "web-01"}},
            }
        )

        assert hit.id == "a"
        assert hit.version == 2
        assert hit.sort == [1714564740000, 3]
        assert hit.get_values("host.name") == ["web-01"]
        assert (hit.seq_no, hit.primary_term) == (10, 1)

    def test_parse_total_object_or_number(self):
        assert parse_total({"total": {"value": 7, "relation": "eq"}}) == 7
        assert parse_total({"total": 3}) == 3
        assert parse_total({}) is None

    def test_parse_shard_failures(self):
        failures = parse_shard_failures(
            {
                "_shards": {
                    "failures": [
                        {
                            "index": "logs-1",
                            "shard": 0,
                            "reason": {
                                "type": "query_shard_exception",
                                "reason": "failed to create query",
                                "caused_by": {"type": "number_format_exception", "reason": "bad"},
                            },
                        }
                    ]
                }
            }
        )

        assert len(failures) == 1
        message = failures[0].message()
        assert "failed to create query" in message
        assert "number_format_exception" in message

    def test_parse_bulk_item(self):
        created = parse_bulk_item({"create": {"_id": "a", "status": 201, "_seq_no": 4, "_primary_term": 1}})
        conflict = parse_bulk_item(
            {
                "create": {
                    "_id": "b",
                    "status": 409,
                    "error": {"type": "version_conflict_engine_exception", "reason": "exists"},
                }
            }
        )

        assert not created.failed
        assert created.seq_no == 4
        assert conflict.failed
        assert conflict.error_type == "version_conflict_engine_exception"
        assert conflict.error_reason == "exists"

    def test_build_bulk_body(self):
        create = AlertWriteOperation(action="create", index="alerts", doc_id="a", document={"x": 1})
        update = AlertWriteOperation(
            action="update",
            index="alerts",
            doc_id="b",
            document={"suppression": {"docs_count": 2}},
            if_seq_no=5,
            if_primary_term=1,
        )

        body = build_bulk_body([create, update])

        assert body == [
            {"create": {"_index": "alerts", "_id": "a"}},
            {"x": 1},
            {"update": {"_index": "alerts", "_id": "b", "if_seq_no": 5, "if_primary_term": 1}},
            {"doc": {"suppression": {"docs_count": 2}}},
        ]


class TestClient:
    @pytest.mark.asyncio
    async def test_search_request_and_response(self):
        stub = StubClient(
            body={
                "took": 4,
                "timed_out": False,
                "hits": {"hits": [{"_id": "a", "_index": "logs-1", "_source": {}, "sort": [1, 1]}]},
            }
        )
        client = connected_client(stub)

        response = await client.search(
            ["logs-*"],
            {"match_all": {}},
            [{"@timestamp": {"order": "asc"}}],
            search_after=[0, 0],
            size=10,
            timeout_seconds=5.0,
        )

        assert [hit.id for hit in response.hits] == ["a"]
        assert response.took_ms == 4.0
        request = stub.requests[0]
        assert request["search_after"] == [0, 0]
        assert request["timeout"] == "5000ms"
        assert request["track_total_hits"] is False

    @pytest.mark.asyncio
    async def test_timeouts_become_backend_query_errors(self):
        client = connected_client(StubClient(error=ConnectionTimeout("read timed out")))

        with pytest.raises(BackendQueryError) as info:
            await client.search(["logs-*"], {"match_all": {}}, [])

        assert info.value.timed_out is True

    @pytest.mark.asyncio
    async def test_requires_connection(self):
        client = ElasticsearchClient(ElasticsearchConnectionConfig())

        with pytest.raises(BackendQueryError):
            await client.search(["logs-*"], {"match_all": {}}, [])
        assert await client.ping() is False
