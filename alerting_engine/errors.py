"""
Error taxonomy for rule execution.

Every failure raised inside the execution pipeline derives from EngineError.
The orchestrator decides how each kind affects the run:

    ConfigurationError: fatal, the run is reported as failed
    BackendQueryError: recoverable at time tuple granularity
    MappingError: timestamp field missing from the target indices
    BulkWriteError: a whole bulk request failed (item errors are aggregated)
    AuthorizationError: the rule's consumer may not execute the rule type
    ExceptionListError: exception items could not be loaded
    RunCancelled: cooperative cancellation was requested mid-run
"""

from typing import List, Optional


class EngineError(Exception):
    """Base exception for rule execution errors."""

    pass


class ConfigurationError(EngineError):
    """Raised for malformed date math, intervals or rule parameters."""

    pass


class BackendQueryError(EngineError):
    """
    Raised when a search against the backend fails.

    Attributes:
        message: Error message.
        status_code: HTTP status code reported by the backend, if any.
        timed_out: True if the request exceeded its timeout.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        timed_out: bool = False,
    ):
        self.message = message
        self.status_code = status_code
        self.timed_out = timed_out
        super().__init__(message)


class MappingError(EngineError):
    """
    Raised when no target index maps the rule's timestamp field.

    Attributes:
        field: The timestamp field that was checked.
        index_patterns: Patterns whose indices are missing the field.
    """

    def __init__(self, message: str, field: str, index_patterns: List[str]):
        self.field = field
        self.index_patterns = index_patterns
        super().__init__(message)


class BulkWriteError(EngineError):
    """Raised when a bulk request fails as a whole."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class AuthorizationError(EngineError):
    """Raised when the authorization collaborator denies an operation."""

    def __init__(self, rule_type_id: str, consumer: str, operation: str):
        self.rule_type_id = rule_type_id
        self.consumer = consumer
        self.operation = operation
        super().__init__(
            f'Unauthorized to {operation} a "{rule_type_id}" rule for "{consumer}"'
        )


class ExceptionListError(EngineError):
    """Raised when exception list items cannot be fetched."""

    pass


class RunCancelled(EngineError):
    """Raised at a tuple or page boundary once cancellation was requested."""

    pass
