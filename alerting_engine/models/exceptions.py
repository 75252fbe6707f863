"""
Exception list models.

An exception item removes a match from alerting when every one of its
entries matches the event. Entries of type "list" test membership in a
large value list held by the list lookup collaborator.
"""

from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field, model_validator


class NamespaceType(str, Enum):
    """Visibility of an exception list."""

    SINGLE = "single"
    AGNOSTIC = "agnostic"


class EntryType(str, Enum):
    """Exception entry types."""

    MATCH = "match"
    MATCH_ANY = "match_any"
    EXISTS = "exists"
    LIST = "list"


class EntryOperator(str, Enum):
    """Whether an entry matches on presence or absence of the condition."""

    INCLUDED = "included"
    EXCLUDED = "excluded"


class ExceptionListRef(BaseModel):
    """Reference from a rule to an exception list."""

    model_config = {"frozen": True, "extra": "forbid"}

    list_id: str = Field(..., description="Exception list identifier")
    namespace_type: NamespaceType = Field(
        default=NamespaceType.SINGLE,
        description="Exception list namespace",
    )


class ValueListRef(BaseModel):
    """Reference to a value list used by a "list" entry."""

    model_config = {"frozen": True, "extra": "forbid"}

    id: str = Field(..., description="Value list identifier")
    type: str = Field(..., description="Value type (keyword, ip, ...)")


class ExceptionEntry(BaseModel):
    """Single condition of an exception item."""

    model_config = {"frozen": True, "extra": "forbid", "populate_by_name": True}

    field: str = Field(..., description="Event field tested by the entry")
    type: EntryType = Field(..., description="Entry type")
    operator: EntryOperator = Field(default=EntryOperator.INCLUDED)
    value: Optional[Union[str, List[str]]] = Field(
        default=None,
        description="Value for match, values for match_any",
    )
    value_list: Optional[ValueListRef] = Field(
        default=None,
        alias="list",
        description="Value list for list entries",
    )

    @model_validator(mode="after")
    def validate_entry(self) -> "ExceptionEntry":
        """Ensure each entry type carries the data it needs."""
        if self.type == EntryType.MATCH and not isinstance(self.value, str):
            raise ValueError("match entries require a single string value")
        if self.type == EntryType.MATCH_ANY and not isinstance(self.value, list):
            raise ValueError("match_any entries require a list of values")
        if self.type == EntryType.LIST and self.value_list is None:
            raise ValueError("list entries require a value list reference")
        return self


class ExceptionItem(BaseModel):
    """
    Exception item: a conjunction of entries.

    Example:
        >>> item = ExceptionItem(
        ...     item_id="trusted-scanner",
        ...     list_id="endpoint-exceptions",
        ...     name="Trusted scanner",
        ...     entries=[ExceptionEntry(field="host.name", type="match", value="scanner-01")],
        ... )
    """

    model_config = {"frozen": True, "extra": "forbid"}

    item_id: str = Field(..., description="Item identifier")
    list_id: str = Field(..., description="Owning exception list")
    name: str = Field(default="", description="Item name")
    entries: List[ExceptionEntry] = Field(..., min_length=1)

    @property
    def has_value_list_entries(self) -> bool:
        """Check if the item references a value list."""
        return any(entry.type == EntryType.LIST for entry in self.entries)
