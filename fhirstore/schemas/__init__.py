"""Pydantic schemas shared by the service layer and the HTTP adapter."""

from fhirstore.schemas.resource import (
    HistoryEntry,
    Operation,
    ResourceType,
    ResourceView,
    SearchResult,
)
from fhirstore.schemas.security import Action, Role, SecurityContext

__all__ = [
    "Action",
    "HistoryEntry",
    "Operation",
    "ResourceType",
    "ResourceView",
    "Role",
    "SearchResult",
    "SecurityContext",
]
