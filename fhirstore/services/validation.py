"""Structural and business-rule validation of resource bodies.

Each resource type has a fixed rule set (required elements, cardinality,
references and business rules). A validation pass collects every failure
instead of stopping at the first one, so callers see all problems in a
single response.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Protocol

from fhirstore.config import DuplicatePolicy
from fhirstore.errors import ValidationFailure
from fhirstore.projections.projector import project
from fhirstore.projections.registry import ProjectionRegistry
from fhirstore.schemas.resource import ResourceType
from fhirstore.schemas.security import SecurityContext
from fhirstore.utils.fhir_helpers import (
    extract_first_coding,
    parse_fhir_date,
    parse_fhir_datetime,
    split_reference,
)

logger = logging.getLogger(__name__)

GENDERS = frozenset({"male", "female", "other", "unknown"})

OBSERVATION_STATUSES = frozenset(
    {
        "registered",
        "preliminary",
        "final",
        "amended",
        "corrected",
        "cancelled",
        "entered-in-error",
        "unknown",
    }
)

ENCOUNTER_STATUSES = frozenset(
    {
        "planned",
        "arrived",
        "triaged",
        "in-progress",
        "onleave",
        "finished",
        "cancelled",
        "entered-in-error",
        "unknown",
    }
)


class ReferenceResolver(Protocol):
    """Existence lookups needed for reference and duplicate checks."""

    async def exists(self, resource_type: ResourceType, resource_id: str) -> bool: ...

    async def find_by_natural_key(
        self, resource_type: ResourceType, key: str
    ) -> list[uuid.UUID]: ...


BusinessRule = Callable[[dict], list[ValidationFailure]]


@dataclass(frozen=True)
class ReferenceRule:
    """An element holding a Reference and the types it may point to."""

    element: str
    target_types: tuple[ResourceType, ...]


@dataclass(frozen=True)
class ResourceRules:
    """Validation rules for one resource type."""

    required: tuple[str, ...] = ()
    single_valued: tuple[str, ...] = ()
    list_valued: tuple[str, ...] = ()
    references: tuple[ReferenceRule, ...] = ()
    business_rules: tuple[BusinessRule, ...] = ()


@dataclass
class ValidationReport:
    """Result of one validation pass."""

    failures: list[ValidationFailure] = field(default_factory=list)
    warnings: list[ValidationFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _has_coding_or_text(concept: Any) -> bool:
    if not isinstance(concept, dict):
        return False
    return bool(concept.get("coding")) or bool(concept.get("text"))


def _value_keys(element: dict) -> list[str]:
    return [key for key in element if key.startswith("value") and len(key) > 5]


def _check_datetime(body: dict, key: str) -> list[ValidationFailure]:
    value = body.get(key)
    if value is not None and parse_fhir_datetime(value) is None:
        return [ValidationFailure(key, f"Invalid dateTime value: '{value}'", "value")]
    return []


# --- Patient -----------------------------------------------------------------


def _patient_names(body: dict) -> list[ValidationFailure]:
    names = body.get("name")
    if names is None or not isinstance(names, list):
        return []
    if not names:
        return [ValidationFailure("name", "Name array cannot be empty if present", "required")]

    failures = []
    for i, name in enumerate(names):
        path = f"name[{i}]"
        if not isinstance(name, dict):
            failures.append(ValidationFailure(path, "HumanName must be an object", "structure"))
            continue
        if all(_is_empty(name.get(key)) for key in ("family", "given", "text")):
            failures.append(
                ValidationFailure(
                    path, "HumanName must have at least family, given, or text", "required"
                )
            )
        family = name.get("family")
        if family is not None and not isinstance(family, str):
            failures.append(
                ValidationFailure(f"{path}.family", "family must be a single string", "cardinality")
            )
        given = name.get("given")
        if given is not None and (
            not isinstance(given, list) or not all(isinstance(g, str) for g in given)
        ):
            failures.append(
                ValidationFailure(f"{path}.given", "given must be a list of strings", "structure")
            )
    return failures


def _patient_gender(body: dict) -> list[ValidationFailure]:
    gender = body.get("gender")
    if gender is None or isinstance(gender, list):
        return []
    if not isinstance(gender, str) or gender not in GENDERS:
        return [
            ValidationFailure(
                "gender",
                f"Invalid gender value: '{gender}'. Must be one of: male, female, other, unknown",
                "value",
            )
        ]
    return []


def _patient_identifiers(body: dict) -> list[ValidationFailure]:
    identifiers = body.get("identifier")
    if not isinstance(identifiers, list):
        return []
    failures = []
    for i, identifier in enumerate(identifiers):
        if not isinstance(identifier, dict) or (
            _is_empty(identifier.get("system")) and _is_empty(identifier.get("value"))
        ):
            failures.append(
                ValidationFailure(
                    f"identifier[{i}]",
                    "Identifier must have at least a value or system",
                    "required",
                )
            )
    return failures


def _patient_dates(body: dict) -> list[ValidationFailure]:
    failures = []
    birth_date = body.get("birthDate")
    if birth_date is not None and parse_fhir_date(birth_date) is None:
        failures.append(
            ValidationFailure("birthDate", f"Invalid date value: '{birth_date}'", "value")
        )
    if "deceasedBoolean" in body and "deceasedDateTime" in body:
        failures.append(
            ValidationFailure(
                "deceased[x]",
                "Only one of deceasedBoolean or deceasedDateTime is allowed",
                "cardinality",
            )
        )
    failures.extend(_check_datetime(body, "deceasedDateTime"))
    active = body.get("active")
    if active is not None and not isinstance(active, bool):
        failures.append(ValidationFailure("active", "active must be a boolean", "value"))
    return failures


# --- Observation -------------------------------------------------------------


def _observation_status(body: dict) -> list[ValidationFailure]:
    status = body.get("status")
    if _is_empty(status) or isinstance(status, list):
        return []
    if not isinstance(status, str) or status not in OBSERVATION_STATUSES:
        return [ValidationFailure("status", f"Invalid status value: '{status}'", "value")]
    return []


def _observation_code(body: dict) -> list[ValidationFailure]:
    code = body.get("code")
    if _is_empty(code):
        return []
    if not _has_coding_or_text(code):
        return [
            ValidationFailure(
                "code", "Observation.code must have at least coding or text", "required"
            )
        ]
    return []


def _observation_values(body: dict) -> list[ValidationFailure]:
    failures = []
    if _value_keys(body) and "dataAbsentReason" in body:
        failures.append(
            ValidationFailure(
                "value[x]", "Cannot have both value and dataAbsentReason", "business-rule"
            )
        )
    if len(_value_keys(body)) > 1:
        failures.append(
            ValidationFailure("value[x]", "Only one value[x] is allowed", "cardinality")
        )

    components = body.get("component")
    if isinstance(components, list):
        for i, component in enumerate(components):
            path = f"component[{i}]"
            if not isinstance(component, dict):
                failures.append(ValidationFailure(path, "Component must be an object", "structure"))
                continue
            if not _has_coding_or_text(component.get("code")):
                failures.append(
                    ValidationFailure(
                        f"{path}.code",
                        "Component.code must have at least coding or text",
                        "required",
                    )
                )
            if _value_keys(component) and "dataAbsentReason" in component:
                failures.append(
                    ValidationFailure(
                        path,
                        "Component cannot have both value and dataAbsentReason",
                        "business-rule",
                    )
                )
    return failures


def _observation_dates(body: dict) -> list[ValidationFailure]:
    return (
        _check_datetime(body, "effectiveDateTime")
        + _check_datetime(body, "effectiveInstant")
        + _check_datetime(body, "issued")
    )


# --- Condition ---------------------------------------------------------------


def _condition_statuses(body: dict) -> list[ValidationFailure]:
    failures = []
    for key in ("clinicalStatus", "verificationStatus"):
        concept = body.get(key)
        if concept is not None and not (isinstance(concept, dict) and concept.get("coding")):
            failures.append(ValidationFailure(key, f"{key} must have coding", "required"))

    verification = body.get("verificationStatus")
    if body.get("clinicalStatus") is None and verification is not None:
        code = extract_first_coding(verification).get("code")
        if code != "entered-in-error":
            failures.append(
                ValidationFailure(
                    "clinicalStatus",
                    "If clinicalStatus is absent, verificationStatus must be 'entered-in-error'",
                    "business-rule",
                )
            )
    return failures


def _condition_dates(body: dict) -> list[ValidationFailure]:
    return _check_datetime(body, "onsetDateTime") + _check_datetime(body, "recordedDate")


# --- Encounter ---------------------------------------------------------------


def _encounter_status(body: dict) -> list[ValidationFailure]:
    failures = []
    status = body.get("status")
    if not _is_empty(status) and not isinstance(status, list):
        if not isinstance(status, str) or status not in ENCOUNTER_STATUSES:
            failures.append(
                ValidationFailure("status", f"Invalid status value: '{status}'", "value")
            )

    history = body.get("statusHistory")
    if isinstance(history, list):
        for i, item in enumerate(history):
            item_status = item.get("status") if isinstance(item, dict) else None
            if not isinstance(item_status, str) or item_status not in ENCOUNTER_STATUSES:
                failures.append(
                    ValidationFailure(
                        f"statusHistory[{i}].status",
                        f"Invalid status in history: '{item_status}'",
                        "value",
                    )
                )
    return failures


def _encounter_class(body: dict) -> list[ValidationFailure]:
    encounter_class = body.get("class")
    if _is_empty(encounter_class) or isinstance(encounter_class, list):
        return []
    if not isinstance(encounter_class, dict) or (
        _is_empty(encounter_class.get("code")) and _is_empty(encounter_class.get("display"))
    ):
        return [
            ValidationFailure(
                "class", "Encounter.class must have at least code or display", "required"
            )
        ]
    return []


def _encounter_period(body: dict) -> list[ValidationFailure]:
    period = body.get("period")
    if period is None:
        return []
    if not isinstance(period, dict):
        return [ValidationFailure("period", "period must be an object", "structure")]

    failures = _check_datetime(period, "start") + _check_datetime(period, "end")
    failures = [ValidationFailure(f"period.{f.path}", f.message, f.code) for f in failures]
    start = parse_fhir_datetime(period.get("start"))
    end = parse_fhir_datetime(period.get("end"))
    if start is not None and end is not None and end < start:
        failures.append(
            ValidationFailure(
                "period.end",
                "Period.end must be after or equal to period.start",
                "business-rule",
            )
        )
    return failures


RESOURCE_RULES: Mapping[ResourceType, ResourceRules] = MappingProxyType(
    {
        ResourceType.PATIENT: ResourceRules(
            single_valued=("gender", "birthDate", "active", "managingOrganization"),
            list_valued=("name", "identifier"),
            business_rules=(_patient_names, _patient_gender, _patient_identifiers, _patient_dates),
        ),
        ResourceType.OBSERVATION: ResourceRules(
            required=("status", "code"),
            single_valued=("status", "code", "subject", "encounter", "effectiveDateTime"),
            list_valued=("category", "component"),
            references=(
                ReferenceRule("subject", (ResourceType.PATIENT,)),
                ReferenceRule("encounter", (ResourceType.ENCOUNTER,)),
            ),
            business_rules=(
                _observation_status,
                _observation_code,
                _observation_values,
                _observation_dates,
            ),
        ),
        ResourceType.CONDITION: ResourceRules(
            required=("subject",),
            single_valued=("subject", "encounter", "clinicalStatus", "verificationStatus", "code"),
            list_valued=("category",),
            references=(
                ReferenceRule("subject", (ResourceType.PATIENT,)),
                ReferenceRule("encounter", (ResourceType.ENCOUNTER,)),
            ),
            business_rules=(_condition_statuses, _condition_dates),
        ),
        ResourceType.ENCOUNTER: ResourceRules(
            required=("status", "class"),
            single_valued=("status", "class", "subject", "period"),
            list_valued=("statusHistory",),
            references=(ReferenceRule("subject", (ResourceType.PATIENT,)),),
            business_rules=(_encounter_status, _encounter_class, _encounter_period),
        ),
    }
)


def check_structure(resource_type: ResourceType, body: Any) -> list[ValidationFailure]:
    """Run every synchronous rule for a resource type.

    Args:
        resource_type: Expected resource type.
        body: Candidate FHIR JSON.

    Returns:
        All structural and business-rule failures (empty if valid).
    """
    if not isinstance(body, dict):
        return [ValidationFailure("$", "Resource body must be a JSON object", "structure")]

    failures: list[ValidationFailure] = []
    declared = body.get("resourceType")
    if declared is not None and declared != resource_type.value:
        failures.append(
            ValidationFailure(
                "resourceType",
                f"Invalid resourceType: expected '{resource_type.value}', got '{declared}'",
                "value",
            )
        )

    rules = RESOURCE_RULES[resource_type]
    for element in rules.required:
        if _is_empty(body.get(element)):
            failures.append(
                ValidationFailure(element, f"Missing required field: {element}", "required")
            )
    for element in rules.single_valued:
        if isinstance(body.get(element), list):
            failures.append(
                ValidationFailure(
                    element, f"{element} must be a single value, not a list", "cardinality"
                )
            )
    for element in rules.list_valued:
        value = body.get(element)
        if value is not None and not isinstance(value, list):
            failures.append(ValidationFailure(element, f"{element} must be a list", "cardinality"))
    for rule in rules.business_rules:
        failures.extend(rule(body))
    return failures


class ValidationEngine:
    """Validates candidate bodies before they reach the store."""

    def __init__(
        self,
        resolver: ReferenceResolver,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.WARN,
    ):
        """Initialize the engine.

        Args:
            resolver: Existence lookups (normally the ResourceRepository).
            duplicate_policy: Treatment of likely duplicates on create.
        """
        self.resolver = resolver
        self.duplicate_policy = duplicate_policy

    async def validate(
        self,
        resource_type: ResourceType,
        body: Any,
        context: SecurityContext,
        is_create: bool = False,
    ) -> ValidationReport:
        """Validate a candidate body.

        Args:
            resource_type: Expected resource type.
            body: Candidate FHIR JSON.
            context: Caller on whose behalf the write happens.
            is_create: Run the create-only duplicate check.

        Returns:
            ValidationReport with every failure and advisory warning.
        """
        logger.debug("Validating %s for user %s", resource_type.value, context.user_id)
        report = ValidationReport(failures=check_structure(resource_type, body))
        if not isinstance(body, dict):
            return report

        report.failures.extend(await self._check_references(resource_type, body))

        if is_create and self.duplicate_policy is not DuplicatePolicy.OFF:
            duplicates = await self._check_duplicates(resource_type, body)
            if self.duplicate_policy is DuplicatePolicy.REJECT:
                report.failures.extend(duplicates)
            else:
                for warning in duplicates:
                    logger.warning(
                        "Possible duplicate %s: %s", resource_type.value, warning.message
                    )
                report.warnings.extend(duplicates)
        return report

    async def _check_references(
        self,
        resource_type: ResourceType,
        body: dict,
    ) -> list[ValidationFailure]:
        failures = []
        for rule in RESOURCE_RULES[resource_type].references:
            element = body.get(rule.element)
            if element is None or isinstance(element, list):
                continue
            reference = element.get("reference") if isinstance(element, dict) else None
            if not isinstance(reference, str) or not reference:
                failures.append(
                    ValidationFailure(
                        rule.element,
                        "Reference must contain a 'reference' string",
                        "invalid-reference",
                    )
                )
                continue

            target_type, target_id = split_reference(reference)
            allowed = ", ".join(t.value for t in rule.target_types)
            if target_type not in {t.value for t in rule.target_types} or not target_id:
                failures.append(
                    ValidationFailure(
                        rule.element,
                        f"Reference '{reference}' must point to {allowed}",
                        "invalid-reference",
                    )
                )
                continue
            if not await self.resolver.exists(ResourceType(target_type), target_id):
                failures.append(
                    ValidationFailure(
                        rule.element,
                        f"Reference '{reference}' does not resolve to an existing resource",
                        "invalid-reference",
                    )
                )
        return failures

    async def _check_duplicates(
        self,
        resource_type: ResourceType,
        body: dict,
    ) -> list[ValidationFailure]:
        config = ProjectionRegistry.require(resource_type)
        if config.natural_key_column is None:
            return []
        key = project(resource_type, body).get(config.natural_key_column)
        if key is None:
            return []
        matches = await self.resolver.find_by_natural_key(resource_type, key)
        return [
            ValidationFailure(
                config.natural_key_column,
                f"Possible duplicate of {resource_type.value}/{match} "
                f"({config.natural_key_column} '{key}')",
                "duplicate",
            )
            for match in matches
        ]
