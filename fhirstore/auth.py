"""Security context from trusted gateway headers.

Credentials are verified upstream by the authentication gateway, which
forwards the caller's identity as request headers. This module only turns
those headers into a SecurityContext.
"""

from fastapi import Header, HTTPException, status
from pydantic import ValidationError

from fhirstore.schemas.security import Role, SecurityContext


def _parse_roles(raw: str) -> frozenset[Role]:
    roles = set()
    for name in raw.split(","):
        name = name.strip()
        if not name:
            continue
        matches = [role for role in Role if role.value.lower() == name.lower()]
        if not matches:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Unknown role: {name}",
            )
        roles.add(matches[0])
    return frozenset(roles)


async def get_security_context(
    x_user_id: str | None = Header(default=None),
    x_user_roles: str | None = Header(default=None),
    x_patient_id: str | None = Header(default=None),
    x_organization_id: str | None = Header(default=None),
) -> SecurityContext:
    """Build the caller's SecurityContext from gateway headers.

    Returns:
        The authenticated caller.

    Raises:
        HTTPException: 401 if identity headers are missing or inconsistent.
    """
    if not x_user_id or not x_user_roles:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication headers",
        )

    try:
        return SecurityContext(
            user_id=x_user_id,
            roles=_parse_roles(x_user_roles),
            patient_id=x_patient_id or None,
            organization_id=x_organization_id or None,
        )
    except ValidationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication headers",
        ) from None
