"""
Configuration management for the alerting engine.

Configuration is loaded from YAML files in the config/ directory and
validated with Pydantic models:
    - engine.yaml: Execution settings, Elasticsearch, logging
    - rules.yaml: Rule definitions

Environment variables can override connection settings:
    - ELASTICSEARCH_URL: Elasticsearch URL
    - REDIS_URL: Redis connection URL
    - DATABASE_URL: PostgreSQL connection URL
    - LOG_LEVEL: Application log level

Example:
    >>> from alerting_engine.config import load_config
    >>> config = load_config()
    >>> config.execution.max_concurrent_runs
    10

Modules:
    loader: Configuration file loading utilities
    models: Pydantic models for configuration validation
"""

from alerting_engine.config.loader import ConfigLoadError, ConfigLoader, load_config
from alerting_engine.config.models import (
    # Enums
    LogFormat,
    LogLevel,
    # Engine config
    AuthorizationConfig,
    ExecutionSettings,
    LoggingConfig,
    # Connection config
    ElasticsearchConnectionConfig,
    PostgresConnectionConfig,
    RedisConnectionConfig,
    # Root config
    EngineConfig,
)

__all__ = [
    # Loader
    "ConfigLoader",
    "ConfigLoadError",
    "load_config",
    # Enums
    "LogFormat",
    "LogLevel",
    # Engine config
    "AuthorizationConfig",
    "ExecutionSettings",
    "LoggingConfig",
    # Connection config
    "ElasticsearchConnectionConfig",
    "PostgresConnectionConfig",
    "RedisConnectionConfig",
    # Root config
    "EngineConfig",
]
