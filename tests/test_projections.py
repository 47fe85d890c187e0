"""Tests for the search index projection system."""

from datetime import date, datetime, timezone

import pytest

from fhirstore.models import ObservationHistory, ObservationResource, PatientResource
from fhirstore.projections import (
    FieldExtractor,
    ProjectionConfig,
    ProjectionRegistry,
    SearchParameter,
    project,
)
from fhirstore.projections.extractors import register_all_projections
from fhirstore.projections.extractors.encounter import extract_class_code
from fhirstore.projections.extractors.observation import extract_effective_datetime
from fhirstore.projections.extractors.patient import (
    extract_deceased,
    extract_given_name,
    extract_identifier,
)
from fhirstore.schemas.resource import ResourceType

from conftest import condition_body, encounter_body, observation_body

PATIENT_ID = "11111111-1111-1111-1111-111111111111"


@pytest.fixture
def empty_registry():
    """Clear the registry for a test and restore the real projections after."""
    ProjectionRegistry._clear_for_testing()
    yield
    ProjectionRegistry._clear_for_testing()
    register_all_projections()


class TestProjectionRegistry:
    """Tests for ProjectionRegistry."""

    def test_all_types_registered(self):
        """Every resource type has a projection after startup registration."""
        assert set(ProjectionRegistry.all_configs()) == set(ResourceType)

    def test_get_by_value(self):
        """Configurations can be looked up by the type's string value."""
        config = ProjectionRegistry.get("Patient")
        assert config is not None
        assert config.model_class is PatientResource

    def test_get_unknown_type_returns_none(self):
        """Unknown types have no projection."""
        assert ProjectionRegistry.get("Medication") is None
        assert ProjectionRegistry.has_projection("Medication") is False

    def test_require_unregistered_raises(self, empty_registry):
        """require() fails loudly when startup registration was skipped."""
        with pytest.raises(RuntimeError, match="register_all_projections"):
            ProjectionRegistry.require(ResourceType.PATIENT)

    def test_register_is_idempotent(self):
        """Registering twice leaves one configuration per type."""
        register_all_projections()
        register_all_projections()
        assert len(ProjectionRegistry.all_configs()) == len(ResourceType)


class TestProjectionConfig:
    """Tests for ProjectionConfig helpers."""

    def test_search_parameter_by_name_or_column(self):
        """Parameters resolve by alias first, then by column name."""
        config = ProjectionRegistry.require(ResourceType.OBSERVATION)

        assert config.search_parameter("patient").column == "subject_id"
        assert config.search_parameter("effective_datetime").name == "date"
        assert config.search_parameter("nonexistent") is None

    def test_columns(self):
        """columns lists every indexed column in extractor order."""
        config = ProjectionRegistry.require(ResourceType.PATIENT)
        assert config.columns[:3] == ["active", "family_name", "given_name"]


class TestProject:
    """Tests for project()."""

    def test_patient(self, patient_body):
        """Patient fields project to their indexed columns."""
        indexed = project(ResourceType.PATIENT, patient_body)

        assert indexed == {
            "active": True,
            "family_name": "Doe",
            "given_name": "John",
            "gender": "male",
            "birth_date": date(1980, 4, 12),
            "deceased": None,
            "identifier": "http://hospital.example.org/mrn|MRN-1001",
            "organization_id": "org-1",
        }

    def test_flat_patient_name(self):
        """Top-level family/given are indexed like a single HumanName."""
        indexed = project(
            ResourceType.PATIENT, {"family": "Doe", "given": ["John", "David"]}
        )
        assert indexed["family_name"] == "Doe"
        assert indexed["given_name"] == "John David"

    def test_observation(self):
        """Observation fields project to their indexed columns."""
        indexed = project(ResourceType.OBSERVATION, observation_body(PATIENT_ID))

        assert indexed["status"] == "final"
        assert indexed["subject_id"] == PATIENT_ID
        assert indexed["category_code"] == "vital-signs"
        assert indexed["code_code"] == "8867-4"
        assert indexed["code_system"] == "http://loinc.org"
        assert indexed["effective_datetime"] == datetime(2024, 3, 15, 10, 30, tzinfo=timezone.utc)
        assert indexed["issued"] is None

    def test_condition(self):
        """Condition fields project to their indexed columns."""
        indexed = project(ResourceType.CONDITION, condition_body(PATIENT_ID))

        assert indexed["subject_id"] == PATIENT_ID
        assert indexed["clinical_status"] == "active"
        assert indexed["code_code"] == "38341003"
        assert indexed["onset_datetime"] == datetime(2019, 6, 1, tzinfo=timezone.utc)

    def test_encounter(self):
        """Encounter fields project to their indexed columns."""
        indexed = project(ResourceType.ENCOUNTER, encounter_body(PATIENT_ID))

        assert indexed["status"] == "finished"
        assert indexed["class_code"] == "AMB"
        assert indexed["subject_id"] == PATIENT_ID
        assert indexed["period_end"] == datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("resource_type", list(ResourceType))
    def test_empty_body_projects_nulls(self, resource_type):
        """Missing source fields project to None."""
        indexed = project(resource_type, {})
        assert set(indexed) == set(ProjectionRegistry.require(resource_type).columns)
        assert all(value is None for value in indexed.values())

    def test_malformed_fields_project_nulls(self):
        """Wrongly shaped elements never raise."""
        body = {
            "status": ["final"],
            "subject": "Patient/123",
            "category": {"coding": "vital-signs"},
            "code": {"coding": [None]},
            "effectiveDateTime": "yesterday",
        }
        indexed = project(ResourceType.OBSERVATION, body)
        assert all(value is None for value in indexed.values())

    def test_non_dict_body(self):
        """A non-object body projects every column to None."""
        indexed = project(ResourceType.PATIENT, ["not", "a", "resource"])
        assert all(value is None for value in indexed.values())

    def test_deterministic(self, patient_body):
        """Projecting the same body twice gives the same result."""
        assert project(ResourceType.PATIENT, patient_body) == project(
            ResourceType.PATIENT, patient_body
        )

    def test_failing_extractor_projects_null(self, empty_registry):
        """An extractor that raises yields None for its column only."""

        def explode(data: dict):
            raise KeyError("boom")

        ProjectionRegistry.register(
            ProjectionConfig(
                resource_type=ResourceType.OBSERVATION,
                model_class=ObservationResource,
                history_class=ObservationHistory,
                extractors=[
                    FieldExtractor("status", lambda d: d.get("status")),
                    FieldExtractor("code_code", explode),
                ],
                search_parameters=[SearchParameter("status", "status", "token")],
            )
        )

        assert project(ResourceType.OBSERVATION, {"status": "final"}) == {
            "status": "final",
            "code_code": None,
        }


class TestExtractors:
    """Tests for individual extractors."""

    def test_given_name_joins_all_given(self):
        """All given names of the primary name are indexed."""
        assert extract_given_name({"name": [{"given": ["John", "David"]}]}) == "John David"

    def test_identifier_without_system(self):
        """Identifiers without a system index their bare value."""
        assert extract_identifier({"identifier": [{"value": "A1"}]}) == "A1"

    def test_deceased_datetime_implies_true(self):
        """A deceasedDateTime marks the patient deceased."""
        assert extract_deceased({"deceasedDateTime": "2020-01-01"}) is True

    def test_effective_period_start(self):
        """effectivePeriod indexes its start."""
        body = {"effectivePeriod": {"start": "2024-01-02"}}
        assert extract_effective_datetime(body) == datetime(2024, 1, 2, tzinfo=timezone.utc)

    def test_r5_encounter_class(self):
        """R5-style class lists are supported."""
        body = {"class": [{"coding": [{"code": "IMP"}]}]}
        assert extract_class_code(body) == "IMP"
