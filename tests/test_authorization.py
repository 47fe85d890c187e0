"""Tests for the authorization engine."""

import pytest

from fhirstore.errors import ForbiddenError
from fhirstore.schemas.resource import ResourceType
from fhirstore.schemas.security import Action, Role, SecurityContext
from fhirstore.services.authorization import (
    ROLE_PERMISSIONS,
    AccessTarget,
    AuthorizationEngine,
)

P1 = "11111111-1111-1111-1111-111111111111"
P2 = "22222222-2222-2222-2222-222222222222"


@pytest.fixture
def engine() -> AuthorizationEngine:
    return AuthorizationEngine()


@pytest.fixture
def patient_p1() -> SecurityContext:
    return SecurityContext.patient("user-p1", P1)


class TestRoleMatrix:
    """Tests for the static role/action matrix."""

    @pytest.mark.parametrize("action", list(Action))
    @pytest.mark.parametrize("resource_type", list(ResourceType))
    def test_system_and_admin_may_do_everything(self, engine, action, resource_type):
        """System and Admin are granted every action on every type."""
        for context in (SecurityContext.system(), SecurityContext.admin("a1")):
            assert engine.decide(context, action, resource_type).allowed

    def test_clinician_cannot_delete(self, engine):
        """Clinicians may do everything except delete."""
        clinician = SecurityContext.clinician("dr-1")
        decision = engine.decide(clinician, Action.DELETE, ResourceType.OBSERVATION)

        assert not decision.allowed
        assert "dr-1" in decision.reason
        assert "delete" in decision.reason
        for action in (Action.CREATE, Action.READ, Action.UPDATE, Action.SEARCH, Action.HISTORY):
            assert engine.decide(clinician, action, ResourceType.OBSERVATION).allowed

    @pytest.mark.parametrize("action", [Action.CREATE, Action.UPDATE, Action.DELETE])
    def test_patient_cannot_mutate(self, engine, patient_p1, action):
        """Patients never create, update or delete, even in their compartment."""
        target = AccessTarget(resource_id=P1)
        assert not engine.decide(patient_p1, action, ResourceType.PATIENT, target).allowed

    def test_matrix_is_read_only(self):
        """The permission table cannot be modified at runtime."""
        with pytest.raises(TypeError):
            ROLE_PERMISSIONS[Role.PATIENT] = frozenset(Action)  # type: ignore[index]

    def test_multiple_roles_union_permissions(self, engine):
        """A caller holding several roles gets the union of their grants."""
        context = SecurityContext(
            user_id="u1",
            roles=frozenset({Role.PATIENT, Role.CLINICIAN}),
            patient_id=P1,
        )
        target = AccessTarget(resource_id="x", subject_id=P2)

        assert engine.decide(context, Action.READ, ResourceType.OBSERVATION, target).allowed
        assert engine.compartment_for(context, Action.READ) is None


class TestCompartment:
    """Tests for Patient compartment isolation."""

    def test_own_patient_resource_allowed(self, engine, patient_p1):
        """A patient may read their own Patient resource."""
        target = AccessTarget(resource_id=P1)
        assert engine.decide(patient_p1, Action.READ, ResourceType.PATIENT, target).allowed

    def test_other_patient_resource_denied(self, engine, patient_p1):
        """A patient may not read another Patient resource."""
        decision = engine.decide(
            patient_p1, Action.READ, ResourceType.PATIENT, AccessTarget(resource_id=P2)
        )

        assert not decision.allowed
        assert f"Patient/{P2}" in decision.reason
        assert "compartment" in decision.reason

    def test_subject_in_compartment_allowed(self, engine, patient_p1):
        """Resources whose subject is the caller are visible."""
        target = AccessTarget(resource_id="obs-1", subject_id=P1)
        assert engine.decide(patient_p1, Action.READ, ResourceType.OBSERVATION, target).allowed

    def test_subject_outside_compartment_denied(self, engine, patient_p1):
        """Resources about another patient are denied."""
        target = AccessTarget(resource_id="obs-1", subject_id=P2)
        assert not engine.decide(patient_p1, Action.READ, ResourceType.OBSERVATION, target).allowed

    def test_uuid_case_ignored(self, engine):
        """Ids differing only in UUID letter case name the same patient."""
        patient = SecurityContext.patient("user-pa", "aaaaaaaa-1111-1111-1111-111111111111")
        subject = AccessTarget(
            resource_id="obs-1", subject_id="AAAAAAAA-1111-1111-1111-111111111111"
        )
        own = AccessTarget(resource_id="AAAAAAAA-1111-1111-1111-111111111111")

        assert engine.decide(patient, Action.READ, ResourceType.OBSERVATION, subject).allowed
        assert engine.decide(patient, Action.READ, ResourceType.PATIENT, own).allowed

    def test_missing_subject_denied(self, engine, patient_p1):
        """A resource without a subject is outside every compartment."""
        target = AccessTarget(resource_id="obs-1", subject_id=None)
        assert not engine.decide(patient_p1, Action.SEARCH, ResourceType.OBSERVATION, target).allowed

    def test_type_level_check_allows_patient_search(self, engine, patient_p1):
        """Without a target only the role matrix applies."""
        assert engine.decide(patient_p1, Action.SEARCH, ResourceType.CONDITION).allowed

    def test_compartment_for_patient(self, engine, patient_p1):
        """Patients are confined to their own compartment."""
        assert engine.compartment_for(patient_p1, Action.SEARCH) == P1
        assert engine.compartment_for(SecurityContext.clinician("dr-1"), Action.SEARCH) is None


class TestOrganizationScope:
    """Tests for optional organization scoping of Patient resources."""

    def test_disabled_by_default(self, engine):
        """Without scoping, clinicians see patients of any organization."""
        clinician = SecurityContext.clinician("dr-1", organization_id="org-1")
        target = AccessTarget(resource_id=P1, organization_id="org-2")
        assert engine.decide(clinician, Action.READ, ResourceType.PATIENT, target).allowed

    def test_other_organization_denied(self):
        """With scoping, clinicians are denied patients of other organizations."""
        engine = AuthorizationEngine(enforce_organization_scope=True)
        clinician = SecurityContext.clinician("dr-1", organization_id="org-1")

        same = AccessTarget(resource_id=P1, organization_id="org-1")
        other = AccessTarget(resource_id=P2, organization_id="org-2")

        assert engine.decide(clinician, Action.READ, ResourceType.PATIENT, same).allowed
        decision = engine.decide(clinician, Action.READ, ResourceType.PATIENT, other)
        assert not decision.allowed
        assert "another organization" in decision.reason

    def test_admin_not_scoped(self):
        """Admins are never organization-scoped."""
        engine = AuthorizationEngine(enforce_organization_scope=True)
        target = AccessTarget(resource_id=P2, organization_id="org-2")
        assert engine.decide(SecurityContext.admin("a1"), Action.READ, ResourceType.PATIENT, target)


class TestAuthorize:
    """Tests for authorize(), the raising variant."""

    def test_raises_forbidden_with_reason(self, engine, patient_p1):
        """Denials raise ForbiddenError carrying the decision reason."""
        with pytest.raises(ForbiddenError) as exc_info:
            engine.authorize(patient_p1, Action.CREATE, ResourceType.OBSERVATION)

        assert "user-p1" in exc_info.value.reason
        assert "create Observation" in exc_info.value.reason

    def test_allowed_returns_none(self, engine):
        """Allowed actions return quietly."""
        assert engine.authorize(SecurityContext.system(), Action.DELETE, ResourceType.PATIENT) is None


class TestSecurityContext:
    """Tests for SecurityContext construction."""

    def test_patient_role_requires_patient_id(self):
        """The Patient role is meaningless without a patient id."""
        with pytest.raises(ValueError):
            SecurityContext(user_id="u1", roles=frozenset({Role.PATIENT}))

    def test_roles_required(self):
        """A context must carry at least one role."""
        with pytest.raises(ValueError):
            SecurityContext(user_id="u1", roles=frozenset())
