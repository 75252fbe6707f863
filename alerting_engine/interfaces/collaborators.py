"""
Interfaces for the engine's external collaborators.

The engine consumes, but does not own, value list storage, exception item
storage, authorization and execution status persistence. Each is reached
through a small abstract class so the service wires concrete clients and
tests wire in-memory fakes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from alerting_engine.errors import AuthorizationError
from alerting_engine.models.exceptions import ExceptionItem, ExceptionListRef

logger = structlog.get_logger(__name__)


class ListLookup(ABC):
    """Membership checks against large value lists."""

    @abstractmethod
    async def is_member(self, list_id: str, value_type: str, value: str) -> bool:
        """Check if a single value is in the list."""
        pass

    @abstractmethod
    async def are_members(
        self,
        list_id: str,
        value_type: str,
        values: List[str],
    ) -> Set[str]:
        """
        Batched membership check.

        Returns:
            Set[str]: The subset of values present in the list.
        """
        pass


class ExceptionItemSource(ABC):
    """Loads exception items for a rule's exception list references."""

    @abstractmethod
    async def get_items(self, refs: List[ExceptionListRef]) -> List[ExceptionItem]:
        """Return all items of the referenced lists."""
        pass


class Authorizer(ABC):
    """Authorization boundary."""

    @abstractmethod
    async def ensure_authorized(
        self,
        rule_type_id: str,
        consumer: str,
        operation: str,
    ) -> None:
        """
        Allow or deny an operation.

        Raises:
            AuthorizationError: If the operation is denied.
        """
        pass


class ExecutionStatusSink(ABC):
    """Receives the final status of every rule run."""

    @abstractmethod
    async def report_status(
        self,
        rule_id: str,
        status: str,
        message: str,
        metrics: Dict[str, Any],
    ) -> None:
        """
        Persist a run status.

        Args:
            rule_id: Rule identifier.
            status: succeeded, partialFailure, failed or error.
            message: Human-readable summary.
            metrics: Execution metrics.
        """
        pass


class ConsumerAuthorizer(Authorizer):
    """
    Authorizer backed by a static consumer allow list.

    Attributes:
        allowed_consumers: Consumers allowed to run rules, or None for all.
        allowed_operations: Operations that may be authorized.

    Example:
        >>> authorizer = ConsumerAuthorizer(["siem"])
        >>> await authorizer.ensure_authorized("query", "siem", "execute")
    """

    def __init__(
        self,
        allowed_consumers: Optional[Iterable[str]] = None,
        allowed_operations: Iterable[str] = ("execute", "create", "update"),
    ) -> None:
        self.allowed_consumers = set(allowed_consumers) if allowed_consumers is not None else None
        self.allowed_operations = set(allowed_operations)

    async def ensure_authorized(
        self,
        rule_type_id: str,
        consumer: str,
        operation: str,
    ) -> None:
        """Deny unknown operations and consumers outside the allow list."""
        if operation not in self.allowed_operations or (
            self.allowed_consumers is not None and consumer not in self.allowed_consumers
        ):
            logger.warning(
                "authorization_denied",
                rule_type_id=rule_type_id,
                consumer=consumer,
                operation=operation,
            )
            raise AuthorizationError(rule_type_id, consumer, operation)
