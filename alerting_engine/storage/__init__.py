"""
Storage clients for the rule execution engine.

Components:
    ElasticsearchClient: Search backend (events, alerts, EQL, mappings)
    RedisListClient: Value lists and exception items
    PostgresClient: Rule run state and status history
"""

from alerting_engine.storage.elasticsearch_client import (
    ElasticsearchClient,
    ElasticsearchClientError,
    ElasticsearchConnectionException,
)
from alerting_engine.storage.postgres_client import (
    PostgresClient,
    PostgresClientError,
    PostgresConnectionException,
    PostgresOperationError,
)
from alerting_engine.storage.redis_client import (
    RedisClientError,
    RedisConnectionException,
    RedisListClient,
    RedisOperationError,
)

__all__ = [
    # Elasticsearch
    "ElasticsearchClient",
    "ElasticsearchClientError",
    "ElasticsearchConnectionException",
    # Redis
    "RedisListClient",
    "RedisClientError",
    "RedisConnectionException",
    "RedisOperationError",
    # PostgreSQL
    "PostgresClient",
    "PostgresClientError",
    "PostgresConnectionException",
    "PostgresOperationError",
]
