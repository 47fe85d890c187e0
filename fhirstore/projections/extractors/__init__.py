"""FHIR field extractors.

Extractors are pure functions that pull specific fields from FHIR JSON
for the indexed columns of each resource table.
"""

from fhirstore.projections.extractors.condition import register_condition_projection
from fhirstore.projections.extractors.encounter import register_encounter_projection
from fhirstore.projections.extractors.observation import register_observation_projection
from fhirstore.projections.extractors.patient import register_patient_projection


def register_all_projections() -> None:
    """Register every resource type. Safe to call more than once."""
    register_patient_projection()
    register_observation_projection()
    register_condition_projection()
    register_encounter_projection()


__all__ = [
    "register_all_projections",
    "register_condition_projection",
    "register_encounter_projection",
    "register_observation_projection",
    "register_patient_projection",
]
