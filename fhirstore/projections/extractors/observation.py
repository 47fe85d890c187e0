"""Observation-specific extractors.

Pure functions that extract fields from FHIR Observation JSON for the
observations table.
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


def extract_subject_id(data: dict) -> str | None:
    return extract_reference_id(reference_of(data.get("subject")))


def extract_encounter_id(data: dict) -> str | None:
    return extract_reference_id(reference_of(data.get("encounter")))


def extract_category_code(data: dict) -> str | None:
    """Extract the first coding code of the first category."""
    return as_str(extract_first_coding(first_of(data.get("category"))).get("code"))


def extract_code_code(data: dict) -> str | None:
    return as_str(extract_first_coding(data.get("code")).get("code"))


def extract_code_system(data: dict) -> str | None:
    return as_str(extract_first_coding(data.get("code")).get("system"))


def extract_effective_datetime(data: dict) -> datetime | None:
    """Extract the clinically relevant time.

    effectiveDateTime and effectiveInstant are used as-is; for an
    effectivePeriod the start is indexed.
    """
    for key in ("effectiveDateTime", "effectiveInstant"):
        parsed = parse_fhir_datetime(data.get(key))
        if parsed is not None:
            return parsed
    period = data.get("effectivePeriod")
    if isinstance(period, dict):
        return parse_fhir_datetime(period.get("start"))
    return None


def extract_issued(data: dict) -> datetime | None:
    return parse_fhir_datetime(data.get("issued"))


def register_observation_projection() -> None:
    """Register the Observation projection configuration with the registry."""
    # Import here to avoid circular imports
    from fhirstore.models.resources import ObservationHistory, ObservationResource

    config = ProjectionConfig(
        resource_type=ResourceType.OBSERVATION,
        model_class=ObservationResource,
        history_class=ObservationHistory,
        extractors=[
            FieldExtractor("status", extract_status),
            FieldExtractor("subject_id", extract_subject_id),
            FieldExtractor("encounter_id", extract_encounter_id),
            FieldExtractor("category_code", extract_category_code),
            FieldExtractor("code_code", extract_code_code),
            FieldExtractor("code_system", extract_code_system),
            FieldExtractor("effective_datetime", extract_effective_datetime),
            FieldExtractor("issued", extract_issued),
        ],
        search_parameters=[
            SearchParameter("status", "status", "token"),
            SearchParameter("subject", "subject_id", "reference"),
            SearchParameter("patient", "subject_id", "reference"),
            SearchParameter("encounter", "encounter_id", "reference"),
            SearchParameter("category", "category_code", "token"),
            SearchParameter("code", "code_code", "token"),
            SearchParameter("date", "effective_datetime", "date"),
            SearchParameter("issued", "issued", "date"),
        ],
        subject_column="subject_id",
    )
    ProjectionRegistry.register(config)
