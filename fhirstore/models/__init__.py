"""SQLAlchemy models."""

from fhirstore.models.resources import (
    ConditionHistory,
    ConditionResource,
    EncounterHistory,
    EncounterResource,
    ObservationHistory,
    ObservationResource,
    PatientHistory,
    PatientResource,
)

__all__ = [
    "ConditionHistory",
    "ConditionResource",
    "EncounterHistory",
    "EncounterResource",
    "ObservationHistory",
    "ObservationResource",
    "PatientHistory",
    "PatientResource",
]
