"""
Rule type registry.

The orchestrator receives a RuleTypeRegistry instead of reaching for a
process-wide table, so tests and services decide which rule types exist.

Example:
    >>> registry = create_default_registry()
    >>> registry.get(RuleType.QUERY).executor
    QueryExecutor(rule_type=query)
"""

from typing import Dict, List

import structlog
from pydantic import BaseModel, Field

from alerting_engine.detection.executors import DEFAULT_EXECUTORS, RuleExecutor
from alerting_engine.errors import ConfigurationError
from alerting_engine.models.rules import RuleType

logger = structlog.get_logger(__name__)


class RuleTypeDefinition(BaseModel):
    """
    A registered rule type.

    Attributes:
        rule_type: Rule type identifier.
        name: Display name.
        executor: Strategy that searches for this rule type.
    """

    model_config = {"frozen": True, "extra": "forbid", "arbitrary_types_allowed": True}

    rule_type: RuleType
    name: str = Field(..., description="Display name")
    executor: RuleExecutor

    @property
    def supports_value_list_exceptions(self) -> bool:
        """Check if value list exceptions apply to this rule type."""
        return self.executor.supports_value_list_exceptions


class RuleTypeRegistry:
    """
    Lookup of rule type definitions by type.

    Example:
        >>> registry = RuleTypeRegistry()
        >>> registry.register(RuleTypeDefinition(
        ...     rule_type=RuleType.QUERY, name="Custom query", executor=QueryExecutor()
        ... ))
    """

    def __init__(self) -> None:
        self._definitions: Dict[RuleType, RuleTypeDefinition] = {}

    def register(self, definition: RuleTypeDefinition) -> None:
        """
        Register a rule type.

        Raises:
            ConfigurationError: If the type is already registered or the
                executor handles a different type.
        """
        if definition.rule_type in self._definitions:
            raise ConfigurationError(
                f"Rule type already registered: {definition.rule_type.value}"
            )
        if definition.executor.rule_type != definition.rule_type:
            raise ConfigurationError(
                f"Executor {definition.executor!r} cannot run "
                f"{definition.rule_type.value} rules"
            )
        self._definitions[definition.rule_type] = definition
        logger.debug("rule_type_registered", rule_type=definition.rule_type.value)

    def get(self, rule_type: RuleType) -> RuleTypeDefinition:
        """
        Get the definition of a rule type.

        Raises:
            ConfigurationError: If the type is not registered.
        """
        definition = self._definitions.get(rule_type)
        if definition is None:
            raise ConfigurationError(f"Unknown rule type: {rule_type.value}")
        return definition

    def list_types(self) -> List[RuleType]:
        """Registered rule types in registration order."""
        return list(self._definitions)

    def __contains__(self, rule_type: object) -> bool:
        return rule_type in self._definitions


DISPLAY_NAMES = {
    RuleType.QUERY: "Custom query",
    RuleType.THRESHOLD: "Threshold",
    RuleType.EQL: "Event correlation",
    RuleType.NEW_TERMS: "New terms",
    RuleType.THREAT_MATCH: "Indicator match",
    RuleType.MACHINE_LEARNING: "Machine learning",
}


def create_default_registry() -> RuleTypeRegistry:
    """
    Factory function to create a registry with every built-in rule type.

    Returns:
        RuleTypeRegistry: Registry holding one definition per RuleType.
    """
    registry = RuleTypeRegistry()
    for executor_class in DEFAULT_EXECUTORS:
        executor = executor_class()
        registry.register(
            RuleTypeDefinition(
                rule_type=executor.rule_type,
                name=DISPLAY_NAMES[executor.rule_type],
                executor=executor,
            )
        )
    return registry
