"""Core services: authorization, validation and lifecycle orchestration."""

from fhirstore.services.authorization import AccessTarget, AuthorizationEngine, Decision
from fhirstore.services.lifecycle import ResourceService
from fhirstore.services.validation import ValidationEngine, ValidationReport

__all__ = [
    "AccessTarget",
    "AuthorizationEngine",
    "Decision",
    "ResourceService",
    "ValidationEngine",
    "ValidationReport",
]
