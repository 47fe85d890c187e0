"""Security context supplied by the authentication layer.

The context is built per request by the caller (see fhirstore.auth) and is
trusted as-is; the core performs no credential verification.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Role(str, Enum):
    """Caller roles."""

    SYSTEM = "System"
    ADMIN = "Admin"
    CLINICIAN = "Clinician"
    PATIENT = "Patient"


class Action(str, Enum):
    """Operations subject to authorization."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    SEARCH = "search"
    HISTORY = "history"


class SecurityContext(BaseModel):
    """Authenticated caller identity for one request. Never persisted."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    roles: frozenset[Role] = Field(min_length=1)
    patient_id: str | None = Field(
        default=None,
        description="Caller's own Patient id; required for the Patient role",
    )
    organization_id: str | None = Field(
        default=None,
        description="Clinician's organization, used when org scoping is enforced",
    )

    @model_validator(mode="after")
    def _patient_role_needs_patient_id(self) -> "SecurityContext":
        if Role.PATIENT in self.roles and not self.patient_id:
            raise ValueError("patient_id is required for the Patient role")
        return self

    @classmethod
    def system(cls) -> "SecurityContext":
        return cls(user_id="system", roles=frozenset({Role.SYSTEM}))

    @classmethod
    def admin(cls, user_id: str) -> "SecurityContext":
        return cls(user_id=user_id, roles=frozenset({Role.ADMIN}))

    @classmethod
    def clinician(cls, user_id: str, organization_id: str | None = None) -> "SecurityContext":
        return cls(
            user_id=user_id,
            roles=frozenset({Role.CLINICIAN}),
            organization_id=organization_id,
        )

    @classmethod
    def patient(cls, user_id: str, patient_id: str) -> "SecurityContext":
        return cls(user_id=user_id, roles=frozenset({Role.PATIENT}), patient_id=patient_id)

    def has_role(self, role: Role) -> bool:
        return role in self.roles
