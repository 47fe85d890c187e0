"""Role- and compartment-based authorization.

Decisions are pure functions of the caller's SecurityContext, the action,
the resource type and (for instance checks) a few indexed fields of the
target. The role matrix is a fixed lookup table; the Patient compartment
rule and optional organization scoping are predicates layered on top.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from fhirstore.errors import ForbiddenError
from fhirstore.schemas.resource import ResourceType
from fhirstore.schemas.security import Action, Role, SecurityContext
from fhirstore.utils.fhir_helpers import canonical_id

logger = logging.getLogger(__name__)

ROLE_PERMISSIONS: Mapping[Role, frozenset[Action]] = MappingProxyType(
    {
        Role.SYSTEM: frozenset(Action),
        Role.ADMIN: frozenset(Action),
        Role.CLINICIAN: frozenset(
            {Action.CREATE, Action.READ, Action.UPDATE, Action.SEARCH, Action.HISTORY}
        ),
        Role.PATIENT: frozenset({Action.READ, Action.SEARCH, Action.HISTORY}),
    }
)

# Roles whose grants only cover their own compartment
COMPARTMENT_ROLES = frozenset({Role.PATIENT})


@dataclass(frozen=True)
class AccessTarget:
    """Instance-level facts about the resource being accessed.

    Args:
        resource_id: Id of the resource itself.
        subject_id: Patient id the resource's subject reference points to.
        organization_id: Managing organization (Patient resources only).
    """

    resource_id: str | None = None
    subject_id: str | None = None
    organization_id: str | None = None


@dataclass(frozen=True)
class Decision:
    """Outcome of an authorization check. Every denial carries a reason."""

    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(allowed=False, reason=reason)

    def __bool__(self) -> bool:
        return self.allowed


class AuthorizationEngine:
    """Decides allow/deny for (context, action, resource type, target)."""

    def __init__(self, enforce_organization_scope: bool = False):
        """Initialize the engine.

        Args:
            enforce_organization_scope: Deny Clinicians access to Patient
                resources managed by another organization.
        """
        self.enforce_organization_scope = enforce_organization_scope

    @staticmethod
    def granting_roles(context: SecurityContext, action: Action) -> set[Role]:
        return {role for role in context.roles if action in ROLE_PERMISSIONS[role]}

    def compartment_for(self, context: SecurityContext, action: Action) -> str | None:
        """Return the patient id the caller is confined to for an action.

        None means the caller's access is not compartment-restricted (or
        the action is not granted at all).
        """
        granting = self.granting_roles(context, action)
        if granting and granting <= COMPARTMENT_ROLES:
            return context.patient_id
        return None

    def decide(
        self,
        context: SecurityContext,
        action: Action,
        resource_type: ResourceType,
        target: AccessTarget | None = None,
    ) -> Decision:
        """Decide whether the caller may perform an action.

        Without a target only the role matrix is consulted; with a target
        the compartment and organization predicates apply as well.

        Args:
            context: Authenticated caller.
            action: Requested action.
            resource_type: Resource type acted on.
            target: Instance facts for instance-level checks.

        Returns:
            Decision, with a human-readable reason when denied.
        """
        granting = self.granting_roles(context, action)
        if not granting:
            roles = ", ".join(sorted(role.value for role in context.roles))
            return Decision.deny(
                f"User {context.user_id} with roles [{roles}] is not permitted to "
                f"{action.value} {resource_type.value} resources"
            )

        if granting - COMPARTMENT_ROLES:
            if target is not None and self._out_of_organization(
                context, granting, resource_type, target
            ):
                return Decision.deny(
                    f"User {context.user_id} cannot access {resource_type.value}/"
                    f"{target.resource_id} managed by another organization"
                )
            return Decision.allow()

        if target is None:
            return Decision.allow()
        return self._check_compartment(context, resource_type, target)

    def _check_compartment(
        self,
        context: SecurityContext,
        resource_type: ResourceType,
        target: AccessTarget,
    ) -> Decision:
        if resource_type is ResourceType.PATIENT:
            owner = target.resource_id
        else:
            owner = target.subject_id

        if owner is not None and canonical_id(owner) == canonical_id(context.patient_id):
            return Decision.allow()
        return Decision.deny(
            f"Patient {context.user_id} cannot access {resource_type.value}/"
            f"{target.resource_id} outside their own compartment"
        )

    def _out_of_organization(
        self,
        context: SecurityContext,
        granting: set[Role],
        resource_type: ResourceType,
        target: AccessTarget,
    ) -> bool:
        if not self.enforce_organization_scope or resource_type is not ResourceType.PATIENT:
            return False
        if granting & {Role.SYSTEM, Role.ADMIN}:
            return False
        if target.organization_id is None:
            return False
        return target.organization_id != context.organization_id

    def authorize(
        self,
        context: SecurityContext,
        action: Action,
        resource_type: ResourceType,
        target: AccessTarget | None = None,
    ) -> None:
        """Like decide(), but raise on denial.

        Raises:
            ForbiddenError: With the denial reason.
        """
        decision = self.decide(context, action, resource_type, target)
        if not decision.allowed:
            logger.warning("Access denied: %s", decision.reason)
            raise ForbiddenError(decision.reason or "Access denied")
