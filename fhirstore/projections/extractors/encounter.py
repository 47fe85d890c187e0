"""Encounter-specific extractors.

Pure functions that extract fields from FHIR Encounter JSON for the
encounters table.
"""

from datetime import datetime

from fhirstore.projections.registry import (
    FieldExtractor,
    ProjectionConfig,
    ProjectionRegistry,
    SearchParameter,
)
from fhirstore.schemas.resource import ResourceType
from fhirstore.utils.fhir_helpers import (
    as_str,
    extract_first_coding,
    extract_reference_id,
    first_of,
    parse_fhir_datetime,
    reference_of,
)


def extract_status(data: dict) -> str | None:
    return as_str(data.get("status"))


def extract_class_code(data: dict) -> str | None:
    """Extract Encounter.class code.

    R4 carries a single Coding; R5 a list of CodeableConcepts.
    """
    encounter_class = data.get("class")
    if isinstance(encounter_class, dict):
        return as_str(encounter_class.get("code"))
    return as_str(extract_first_coding(first_of(encounter_class)).get("code"))


def extract_subject_id(data: dict) -> str | None:
    return extract_reference_id(reference_of(data.get("subject")))


def _period(data: dict) -> dict:
    period = data.get("period")
    return period if isinstance(period, dict) else {}


def extract_period_start(data: dict) -> datetime | None:
    return parse_fhir_datetime(_period(data).get("start"))


def extract_period_end(data: dict) -> datetime | None:
    return parse_fhir_datetime(_period(data).get("end"))


def register_encounter_projection() -> None:
    """Register the Encounter projection configuration with the registry."""
    # Import here to avoid circular imports
    from fhirstore.models.resources import EncounterHistory, EncounterResource

    config = ProjectionConfig(
        resource_type=ResourceType.ENCOUNTER,
        model_class=EncounterResource,
        history_class=EncounterHistory,
        extractors=[
            FieldExtractor("status", extract_status),
            FieldExtractor("class_code", extract_class_code),
            FieldExtractor("subject_id", extract_subject_id),
            FieldExtractor("period_start", extract_period_start),
            FieldExtractor("period_end", extract_period_end),
        ],
        search_parameters=[
            SearchParameter("status", "status", "token"),
            SearchParameter("class", "class_code", "token"),
            SearchParameter("subject", "subject_id", "reference"),
            SearchParameter("patient", "subject_id", "reference"),
            SearchParameter("date", "period_start", "date"),
            SearchParameter("end-date", "period_end", "date"),
        ],
        subject_column="subject_id",
    )
    ProjectionRegistry.register(config)
