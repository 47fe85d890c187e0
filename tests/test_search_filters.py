"""Tests for search parameter translation."""

import pytest

from fhirstore.errors import InvalidSearchError
from fhirstore.projections.registry import ProjectionRegistry
from fhirstore.repositories.search import build_filter_clauses
from fhirstore.schemas.resource import ResourceType


@pytest.fixture
def observation_config():
    return ProjectionRegistry.require(ResourceType.OBSERVATION)


@pytest.fixture
def patient_config():
    return ProjectionRegistry.require(ResourceType.PATIENT)


class TestBuildFilterClauses:
    """Tests for build_filter_clauses()."""

    def test_no_filters(self, observation_config):
        """No filters means no clauses."""
        assert build_filter_clauses(observation_config, None) == []
        assert build_filter_clauses(observation_config, {}) == []

    def test_one_clause_per_value(self, observation_config):
        """Repeated values produce one AND-ed clause each."""
        clauses = build_filter_clauses(
            observation_config,
            {"date": ["ge2024-01-01", "lt2024-02-01"], "status": "final"},
        )
        assert len(clauses) == 3

    def test_alias_and_column_name_accepted(self, observation_config):
        """Both FHIR names and indexed column names are accepted."""
        assert len(build_filter_clauses(observation_config, {"patient": "Patient/1"})) == 1
        assert len(build_filter_clauses(observation_config, {"subject_id": "1"})) == 1

    def test_unknown_parameter(self, observation_config):
        """Unknown parameters are rejected, never ignored."""
        with pytest.raises(InvalidSearchError, match="Unknown search parameter 'colour'"):
            build_filter_clauses(observation_config, {"colour": "red"})

    def test_document_fields_not_searchable(self, patient_config):
        """Non-indexed body elements cannot be searched."""
        with pytest.raises(InvalidSearchError):
            build_filter_clauses(patient_config, {"telecom": "555-1234"})

    @pytest.mark.parametrize(
        "value", ["yesterday", "ge", "2024-13", "xx2024-01-01", "9999", "9999-12", "le9999-12-31"]
    )
    def test_invalid_date(self, observation_config, value):
        """Malformed dates are rejected."""
        with pytest.raises(InvalidSearchError, match="Invalid date value"):
            build_filter_clauses(observation_config, {"date": value})

    @pytest.mark.parametrize("value", ["Patient/", "urn:uuid:"])
    def test_reference_without_id(self, observation_config, value):
        """References with no id are rejected instead of matching missing subjects."""
        with pytest.raises(InvalidSearchError, match="Invalid reference value"):
            build_filter_clauses(observation_config, {"subject": value})

    def test_invalid_boolean(self, patient_config):
        """Boolean parameters accept only true/false."""
        with pytest.raises(InvalidSearchError, match="Invalid boolean value"):
            build_filter_clauses(patient_config, {"active": "maybe"})

    def test_empty_value(self, patient_config):
        """Empty values are rejected."""
        with pytest.raises(InvalidSearchError, match="Empty value"):
            build_filter_clauses(patient_config, {"family": ""})

    def test_invalid_id(self, patient_config):
        """_id values must be resource UUIDs."""
        with pytest.raises(InvalidSearchError, match="Invalid resource id"):
            build_filter_clauses(patient_config, {"_id": "not-a-uuid"})
