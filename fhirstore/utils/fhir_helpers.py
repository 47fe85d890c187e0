"""Shared FHIR element parsing utilities.

Consolidates common FHIR extraction patterns used by the projector and the
validators. All functions are pure and handle missing/malformed data
gracefully by returning None.
"""

import re
import uuid
from datetime import date, datetime, timezone
from typing import Any

_PARTIAL_DATE = re.compile(r"^(\d{4})(?:-(\d{2}))?(?:-(\d{2}))?$")


def canonical_id(value: str | None) -> str | None:
    """Return UUID-shaped ids in canonical lowercase form.

    Other ids are returned unchanged; empty values give None.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return value


def extract_reference_id(reference: str | None) -> str | None:
    """Extract FHIR ID from a reference string.

    Handles both formats:
    - "urn:uuid:abc-123" -> "abc-123"
    - "Patient/abc-123" -> "abc-123"

    UUID ids are normalized to canonical lowercase form.

    Args:
        reference: FHIR reference string

    Returns:
        Extracted ID or None if reference is empty/None
    """
    if not reference or not isinstance(reference, str):
        return None

    if reference.startswith("urn:uuid:"):
        return canonical_id(reference[9:])  # len("urn:uuid:")
    elif "/" in reference:
        return canonical_id(reference.split("/")[-1])
    return canonical_id(reference)


def split_reference(reference: str | None) -> tuple[str | None, str | None]:
    """Split a relative reference into (resource_type, id).

    "Patient/123" -> ("Patient", "123"); "123" -> (None, "123").
    Absolute URLs keep only their last two path segments.
    """
    if not reference or not isinstance(reference, str):
        return None, None
    if reference.startswith("urn:uuid:"):
        return None, reference[9:] or None
    parts = [p for p in reference.split("/") if p]
    if len(parts) >= 2:
        return parts[-2], parts[-1]
    return None, parts[0] if parts else None


def reference_of(element: Any) -> str | None:
    """Return the reference string of a FHIR Reference element, if any."""
    if isinstance(element, dict):
        ref = element.get("reference")
        return ref if isinstance(ref, str) and ref else None
    return None


def extract_first_coding(codeable_concept: Any) -> dict[str, Any]:
    """Extract first coding from a FHIR CodeableConcept.

    Args:
        codeable_concept: FHIR CodeableConcept structure

    Returns:
        First coding dict or empty dict if none
    """
    if not isinstance(codeable_concept, dict):
        return {}
    codings = codeable_concept.get("coding")
    if isinstance(codings, list) and codings and isinstance(codings[0], dict):
        return codings[0]
    return {}


def first_of(value: Any) -> Any:
    """Return the first element of a list, or None for anything else."""
    if isinstance(value, list) and value:
        return value[0]
    return None


def as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def parse_fhir_datetime(value: Any) -> datetime | None:
    """Parse a FHIR dateTime/instant into an aware UTC datetime.

    Partial dates ("2024", "2024-03") resolve to the start of the period.
    Values without a zone are taken as UTC.
    """
    if not isinstance(value, str) or not value:
        return None

    match = _PARTIAL_DATE.match(value)
    if match:
        year, month, day = match.groups()
        try:
            return datetime(int(year), int(month or 1), int(day or 1), tzinfo=timezone.utc)
        except ValueError:
            return None

    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_fhir_date(value: Any) -> date | None:
    """Parse a FHIR date (full or partial) into a date."""
    parsed = parse_fhir_datetime(value)
    return parsed.date() if parsed else None
