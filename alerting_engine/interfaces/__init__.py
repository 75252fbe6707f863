"""
Abstract interfaces for the backend and external collaborators.

Components:
    search_backend: SearchBackend for search, bulk, aggregation and EQL
    collaborators: ListLookup, ExceptionItemSource, Authorizer,
        ExecutionStatusSink and the allow-list ConsumerAuthorizer
"""

from alerting_engine.interfaces.collaborators import (
    Authorizer,
    ConsumerAuthorizer,
    ExceptionItemSource,
    ExecutionStatusSink,
    ListLookup,
)
from alerting_engine.interfaces.search_backend import SearchBackend

__all__ = [
    "SearchBackend",
    "ListLookup",
    "ExceptionItemSource",
    "Authorizer",
    "ConsumerAuthorizer",
    "ExecutionStatusSink",
]
