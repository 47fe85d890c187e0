"""Typed failures surfaced by the resource lifecycle.

Every failure path of a public operation ends in one of these exceptions.
None of them is retried inside the core.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ValidationFailure:
    """One problem found while validating a resource body.

    Args:
        path: Dotted path of the offending element (e.g. "name[0].given").
        message: Human-readable description.
        code: Failure kind: required, cardinality, value, structure,
            business-rule, invalid-reference or duplicate.
    """

    path: str
    message: str
    code: str = "value"

    @property
    def is_invalid_reference(self) -> bool:
        return self.code == "invalid-reference"


class FhirStoreError(Exception):
    """Base class for all lifecycle failures."""


class ResourceNotFoundError(FhirStoreError):
    """Raised when a resource id is unknown or soft-deleted."""

    def __init__(self, resource_type: str, resource_id: str, version_id: int | None = None):
        self.resource_type = resource_type
        self.resource_id = str(resource_id)
        self.version_id = version_id
        target = f"{resource_type}/{resource_id}"
        if version_id is not None:
            target = f"{target}/_history/{version_id}"
        super().__init__(f"Resource not found: {target}")


class ForbiddenError(FhirStoreError):
    """Raised when the authorization engine denies an operation."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ValidationError(FhirStoreError):
    """Raised with every failure collected during one validation pass."""

    def __init__(self, failures: list[ValidationFailure]):
        self.failures = list(failures)
        summary = "; ".join(f"{f.path}: {f.message}" for f in self.failures)
        super().__init__(f"Validation failed: {summary}")

    @property
    def invalid_references(self) -> list[ValidationFailure]:
        return [f for f in self.failures if f.is_invalid_reference]


class ConflictError(FhirStoreError):
    """Raised on a version mismatch or a uniqueness violation."""

    def __init__(self, message: str, current_version_id: int | None = None):
        self.current_version_id = current_version_id
        super().__init__(message)


class PreconditionFailedError(FhirStoreError):
    """Raised when a conditional operation's criteria are not met."""


class InvalidSearchError(FhirStoreError):
    """Raised for unknown search parameters or malformed values."""


class TransactionTimeoutError(FhirStoreError):
    """Raised when a store transaction exceeds its time bound."""
