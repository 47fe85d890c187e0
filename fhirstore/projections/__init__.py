"""FHIR projection system.

Projections extract indexed fields from FHIR JSON into scalar columns
for fast queries while keeping the canonical FHIR data as the source of truth.
"""

from fhirstore.projections.projector import project
from fhirstore.projections.registry import (
    FieldExtractor,
    ProjectionConfig,
    ProjectionRegistry,
    SearchParameter,
)

__all__ = [
    "FieldExtractor",
    "ProjectionConfig",
    "ProjectionRegistry",
    "SearchParameter",
    "project",
]
