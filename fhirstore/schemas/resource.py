"""Pydantic schemas for the public view of resources.

Indexed search columns are internal to the store and never appear here.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ResourceType(str, Enum):
    """Closed set of supported resource types."""

    PATIENT = "Patient"
    OBSERVATION = "Observation"
    CONDITION = "Condition"
    ENCOUNTER = "Encounter"


class Operation(str, Enum):
    """Mutation that produced a history record."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class ResourceView(_CamelModel):
    """Current state of a resource as returned to callers."""

    id: uuid.UUID
    resource_type: ResourceType
    version_id: int = Field(ge=1)
    last_updated: datetime
    body: dict[str, Any]
    warnings: list[str] = Field(
        default_factory=list,
        description="Advisory validation messages (e.g. possible duplicates)",
    )


class HistoryEntry(_CamelModel):
    """One immutable version of a resource."""

    id: uuid.UUID
    resource_type: ResourceType
    version_id: int = Field(ge=1)
    last_updated: datetime
    operation: Operation
    body: dict[str, Any]


class SearchResult(_CamelModel):
    """One page of search results."""

    items: list[ResourceView]
    total: int = Field(ge=0)
    offset: int = Field(ge=0)
    count: int = Field(ge=0)
