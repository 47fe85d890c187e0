"""Condition-specific extractors.

Pure functions that extract fields from FHIR Condition JSON for the
conditions table.
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


def extract_subject_id(data: dict) -> str | None:
    return extract_reference_id(reference_of(data.get("subject")))


def extract_encounter_id(data: dict) -> str | None:
    return extract_reference_id(reference_of(data.get("encounter")))


def extract_clinical_status(data: dict) -> str | None:
    return as_str(extract_first_coding(data.get("clinicalStatus")).get("code"))


def extract_verification_status(data: dict) -> str | None:
    return as_str(extract_first_coding(data.get("verificationStatus")).get("code"))


def extract_category_code(data: dict) -> str | None:
    return as_str(extract_first_coding(first_of(data.get("category"))).get("code"))


def extract_code_code(data: dict) -> str | None:
    return as_str(extract_first_coding(data.get("code")).get("code"))


def extract_code_system(data: dict) -> str | None:
    return as_str(extract_first_coding(data.get("code")).get("system"))


def extract_onset_datetime(data: dict) -> datetime | None:
    """Extract onset from onsetDateTime, or the start of onsetPeriod."""
    parsed = parse_fhir_datetime(data.get("onsetDateTime"))
    if parsed is not None:
        return parsed
    period = data.get("onsetPeriod")
    if isinstance(period, dict):
        return parse_fhir_datetime(period.get("start"))
    return None


def extract_recorded_date(data: dict) -> datetime | None:
    return parse_fhir_datetime(data.get("recordedDate"))


def register_condition_projection() -> None:
    """Register the Condition projection configuration with the registry."""
    # Import here to avoid circular imports
    from fhirstore.models.resources import ConditionHistory, ConditionResource

    config = ProjectionConfig(
        resource_type=ResourceType.CONDITION,
        model_class=ConditionResource,
        history_class=ConditionHistory,
        extractors=[
            FieldExtractor("subject_id", extract_subject_id),
            FieldExtractor("encounter_id", extract_encounter_id),
            FieldExtractor("clinical_status", extract_clinical_status),
            FieldExtractor("verification_status", extract_verification_status),
            FieldExtractor("category_code", extract_category_code),
            FieldExtractor("code_code", extract_code_code),
            FieldExtractor("code_system", extract_code_system),
            FieldExtractor("onset_datetime", extract_onset_datetime),
            FieldExtractor("recorded_date", extract_recorded_date),
        ],
        search_parameters=[
            SearchParameter("subject", "subject_id", "reference"),
            SearchParameter("patient", "subject_id", "reference"),
            SearchParameter("encounter", "encounter_id", "reference"),
            SearchParameter("clinical-status", "clinical_status", "token"),
            SearchParameter("verification-status", "verification_status", "token"),
            SearchParameter("category", "category_code", "token"),
            SearchParameter("code", "code_code", "token"),
            SearchParameter("onset-date", "onset_datetime", "date"),
            SearchParameter("recorded-date", "recorded_date", "date"),
        ],
        subject_column="subject_id",
    )
    ProjectionRegistry.register(config)
