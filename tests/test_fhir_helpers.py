"""Tests for shared FHIR helper utilities."""

from datetime import date, datetime, timezone

from fhirstore.utils.fhir_helpers import (
    canonical_id,
    extract_first_coding,
    extract_reference_id,
    parse_fhir_date,
    parse_fhir_datetime,
    split_reference,
)


class TestExtractReferenceId:
    """Tests for extract_reference_id function."""

    def test_extracts_from_urn_uuid(self):
        """Test extraction from urn:uuid format."""
        assert extract_reference_id("urn:uuid:abc-123-def") == "abc-123-def"

    def test_extracts_from_resource_reference(self):
        """Test extraction from ResourceType/id format."""
        assert extract_reference_id("Patient/patient-123") == "patient-123"

    def test_returns_none_for_empty(self):
        """Test returns None for None and empty input."""
        assert extract_reference_id(None) is None
        assert extract_reference_id("") is None

    def test_returns_plain_id_unchanged(self):
        """Test returns plain ID without prefix unchanged."""
        assert extract_reference_id("plain-id-no-prefix") == "plain-id-no-prefix"

    def test_uuid_ids_lowercased(self):
        """Test UUID ids are returned in canonical form."""
        upper = "ABCDEF01-2345-6789-ABCD-EF0123456789"
        assert extract_reference_id(f"Patient/{upper}") == upper.lower()
        assert extract_reference_id(f"urn:uuid:{upper}") == upper.lower()

    def test_missing_id_returns_none(self):
        """Test references without an id part return None."""
        assert extract_reference_id("Patient/") is None
        assert extract_reference_id("urn:uuid:") is None


class TestCanonicalId:
    """Tests for canonical_id function."""

    def test_canonicalizes_uuid(self):
        assert canonical_id("ABCDEF01-2345-6789-ABCD-EF0123456789") == (
            "abcdef01-2345-6789-abcd-ef0123456789"
        )

    def test_other_values(self):
        """Non-UUID ids pass through; empty values give None."""
        assert canonical_id("org-1") == "org-1"
        assert canonical_id("") is None
        assert canonical_id(None) is None


class TestSplitReference:
    """Tests for split_reference function."""

    def test_relative_reference(self):
        assert split_reference("Patient/123") == ("Patient", "123")

    def test_absolute_reference(self):
        """Absolute URLs keep their last two segments."""
        assert split_reference("https://example.org/fhir/Encounter/e1") == ("Encounter", "e1")

    def test_bare_id_has_no_type(self):
        assert split_reference("123") == (None, "123")
        assert split_reference("urn:uuid:abc") == (None, "abc")


class TestExtractFirstCoding:
    """Tests for extract_first_coding function."""

    def test_returns_first(self):
        concept = {"coding": [{"code": "a"}, {"code": "b"}]}
        assert extract_first_coding(concept) == {"code": "a"}

    def test_malformed_returns_empty(self):
        """Anything that is not a CodeableConcept with codings gives {}."""
        assert extract_first_coding(None) == {}
        assert extract_first_coding({"coding": []}) == {}
        assert extract_first_coding({"coding": "x"}) == {}


class TestParseFhirDatetime:
    """Tests for FHIR date/dateTime parsing."""

    def test_partial_dates_resolve_to_period_start(self):
        """Year and year-month values resolve to the first instant."""
        assert parse_fhir_datetime("2024") == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert parse_fhir_datetime("2024-03") == datetime(2024, 3, 1, tzinfo=timezone.utc)

    def test_zulu_and_offsets_normalized_to_utc(self):
        """Zone designators are honoured and normalized to UTC."""
        assert parse_fhir_datetime("2024-03-15T10:30:00Z") == datetime(
            2024, 3, 15, 10, 30, tzinfo=timezone.utc
        )
        assert parse_fhir_datetime("2024-03-15T10:30:00+02:00") == datetime(
            2024, 3, 15, 8, 30, tzinfo=timezone.utc
        )

    def test_invalid_values(self):
        """Garbage and impossible dates parse to None."""
        assert parse_fhir_datetime("not a date") is None
        assert parse_fhir_datetime("2024-02-30") is None
        assert parse_fhir_datetime(20240101) is None

    def test_parse_date(self):
        assert parse_fhir_date("1980-04-12") == date(1980, 4, 12)
        assert parse_fhir_date(None) is None
