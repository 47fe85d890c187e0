"""Patient-specific extractors.

Pure functions that extract fields from FHIR Patient JSON for the
patients table.
"""

from datetime import date

from fhirstore.projections.registry import (
    FieldExtractor,
    ProjectionConfig,
    ProjectionRegistry,
    SearchParameter,
)
from fhirstore.schemas.resource import ResourceType
from fhirstore.utils.fhir_helpers import (
    as_str,
    extract_reference_id,
    parse_fhir_date,
    reference_of,
)


def _primary_name(data: dict) -> dict:
    """Return the first HumanName.

    Bodies that carry family/given at the top level (a flattened name)
    are treated as a single HumanName.
    """
    names = data.get("name")
    if isinstance(names, list):
        for name in names:
            if isinstance(name, dict):
                return name
        return {}
    if "family" in data or "given" in data:
        return data
    return {}


def extract_family_name(data: dict) -> str | None:
    """Extract family name from the primary HumanName."""
    return as_str(_primary_name(data).get("family"))


def extract_given_name(data: dict) -> str | None:
    """Extract all given names of the primary HumanName, space separated.

    Args:
        data: FHIR Patient JSON.

    Returns:
        "John David" for given ["John", "David"], or None.
    """
    given = _primary_name(data).get("given")
    if isinstance(given, str):
        given = [given]
    if not isinstance(given, list):
        return None
    parts = [g for g in given if isinstance(g, str) and g]
    return " ".join(parts) or None


def extract_gender(data: dict) -> str | None:
    return as_str(data.get("gender"))


def extract_birth_date(data: dict) -> date | None:
    return parse_fhir_date(data.get("birthDate"))


def extract_active(data: dict) -> bool | None:
    active = data.get("active")
    return active if isinstance(active, bool) else None


def extract_deceased(data: dict) -> bool | None:
    """Extract deceased flag; a deceasedDateTime implies True."""
    flag = data.get("deceasedBoolean")
    if isinstance(flag, bool):
        return flag
    if as_str(data.get("deceasedDateTime")):
        return True
    return None


def extract_identifier(data: dict) -> str | None:
    """Extract the first identifier as a "system|value" token.

    Identifiers without a system project to their bare value.
    """
    identifiers = data.get("identifier")
    if not isinstance(identifiers, list):
        return None
    for identifier in identifiers:
        if not isinstance(identifier, dict):
            continue
        value = as_str(identifier.get("value"))
        if value is None:
            continue
        system = as_str(identifier.get("system"))
        return f"{system}|{value}" if system else value
    return None


def extract_organization_id(data: dict) -> str | None:
    return extract_reference_id(reference_of(data.get("managingOrganization")))


def register_patient_projection() -> None:
    """Register the Patient projection configuration with the registry."""
    # Import here to avoid circular imports
    from fhirstore.models.resources import PatientHistory, PatientResource

    config = ProjectionConfig(
        resource_type=ResourceType.PATIENT,
        model_class=PatientResource,
        history_class=PatientHistory,
        extractors=[
            FieldExtractor("active", extract_active),
            FieldExtractor("family_name", extract_family_name),
            FieldExtractor("given_name", extract_given_name),
            FieldExtractor("gender", extract_gender),
            FieldExtractor("birth_date", extract_birth_date),
            FieldExtractor("deceased", extract_deceased),
            FieldExtractor("identifier", extract_identifier),
            FieldExtractor("organization_id", extract_organization_id),
        ],
        search_parameters=[
            SearchParameter("family", "family_name", "string"),
            SearchParameter("given", "given_name", "string"),
            SearchParameter("gender", "gender", "token"),
            SearchParameter("birthdate", "birth_date", "date"),
            SearchParameter("active", "active", "boolean"),
            SearchParameter("deceased", "deceased", "boolean"),
            SearchParameter("identifier", "identifier", "token"),
            SearchParameter("organization", "organization_id", "reference"),
        ],
        subject_column=None,
        natural_key_column="identifier",
    )
    ProjectionRegistry.register(config)
