"""FHIR REST routes for the resource lifecycle.

Thin adapter over ResourceService: HTTP headers and query strings are
translated into service calls, and service results into JSON responses
with ETag / Last-Modified headers. Errors are mapped to HTTP statuses by
the exception handlers registered in fhirstore.main.
"""

import re
from email.utils import format_datetime
from typing import Any
from urllib.parse import parse_qsl

from fastapi import (
    APIRouter,
    Body,
    Depends,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from fastapi.responses import JSONResponse

from fhirstore.auth import get_security_context
from fhirstore.config import settings
from fhirstore.database import async_session_maker
from fhirstore.errors import PreconditionFailedError
from fhirstore.schemas.resource import HistoryEntry, ResourceType, ResourceView
from fhirstore.schemas.security import SecurityContext
from fhirstore.services.lifecycle import ResourceService

router = APIRouter(prefix="/fhir", tags=["fhir"])

# Query parameters that control paging rather than filtering
_PAGING_PARAMS = {"_offset", "_count"}

_IF_MATCH = re.compile(r'^(?:W/)?"?(\d+)"?$')


def get_resource_service() -> ResourceService:
    """Dependency providing a fully wired ResourceService."""
    return ResourceService.from_settings(async_session_maker, settings)


def _version_headers(version_id: int, last_updated) -> dict[str, str]:
    return {
        "ETag": f'W/"{version_id}"',
        "Last-Modified": format_datetime(last_updated, usegmt=True),
    }


def _resource_response(
    view: ResourceView,
    status_code: int = status.HTTP_200_OK,
    location: bool = False,
) -> JSONResponse:
    headers = _version_headers(view.version_id, view.last_updated)
    if location:
        headers["Location"] = (
            f"/fhir/{view.resource_type.value}/{view.id}/_history/{view.version_id}"
        )
    if view.warnings:
        headers["X-Validation-Warning"] = "; ".join(view.warnings)
    return JSONResponse(content=view.body, status_code=status_code, headers=headers)


def _entry_json(entry: HistoryEntry) -> dict[str, Any]:
    return entry.model_dump(mode="json", by_alias=True)


def parse_if_match(value: str | None) -> int | None:
    """Parse an If-Match header (W/"3", "3" or 3) into a version id.

    Raises:
        HTTPException: 400 if the header is present but malformed.
    """
    if value is None:
        return None
    match = _IF_MATCH.match(value.strip())
    if match is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid If-Match header: {value}",
        )
    return int(match.group(1))


def _body_version(body: Any) -> int | None:
    meta = body.get("meta") if isinstance(body, dict) else None
    version = meta.get("versionId") if isinstance(meta, dict) else None
    if version is None:
        return None
    try:
        return int(version)
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid meta.versionId: {version}",
        ) from None


def _search_filters(request: Request) -> dict[str, list[str]]:
    filters: dict[str, list[str]] = {}
    for name, value in request.query_params.multi_items():
        if name not in _PAGING_PARAMS:
            filters.setdefault(name, []).append(value)
    return filters


@router.post("/{resource_type}", status_code=status.HTTP_201_CREATED)
async def create_resource(
    resource_type: ResourceType,
    body: dict[str, Any] = Body(...),
    if_none_exist: str | None = Header(default=None),
    context: SecurityContext = Depends(get_security_context),
    service: ResourceService = Depends(get_resource_service),
) -> JSONResponse:
    """Create a resource, conditionally if If-None-Exist is given.

    Returns:
        201 with the stored body, ETag, Last-Modified and Location.
    """
    if if_none_exist:
        criteria: dict[str, list[str]] = {}
        for name, value in parse_qsl(if_none_exist, keep_blank_values=True):
            criteria.setdefault(name, []).append(value)
        view = await service.conditional_create(context, resource_type, body, criteria)
    else:
        view = await service.create(context, resource_type, body)
    return _resource_response(view, status.HTTP_201_CREATED, location=True)


@router.get("/{resource_type}")
async def search_resources(
    resource_type: ResourceType,
    request: Request,
    offset: int = Query(0, alias="_offset"),
    count: int | None = Query(None, alias="_count"),
    context: SecurityContext = Depends(get_security_context),
    service: ResourceService = Depends(get_resource_service),
) -> dict:
    """Search resources by indexed fields.

    Any query parameter other than _offset and _count is a search filter;
    repeated parameters are combined with AND.

    Returns:
        Page of results with total, offset and count.
    """
    result = await service.search(
        context,
        resource_type,
        _search_filters(request),
        offset=offset,
        count=count,
    )
    return result.model_dump(mode="json", by_alias=True)


@router.get("/{resource_type}/{resource_id}")
async def read_resource(
    resource_type: ResourceType,
    resource_id: str,
    context: SecurityContext = Depends(get_security_context),
    service: ResourceService = Depends(get_resource_service),
) -> JSONResponse:
    """Read the current version of a resource."""
    view = await service.read(context, resource_type, resource_id)
    return _resource_response(view)


@router.put("/{resource_type}")
async def conditional_update_resource(
    resource_type: ResourceType,
    request: Request,
    body: dict[str, Any] = Body(...),
    if_match: str | None = Header(default=None),
    context: SecurityContext = Depends(get_security_context),
    service: ResourceService = Depends(get_resource_service),
) -> JSONResponse:
    """Update the resource matching the query criteria, or create it.

    Returns:
        200 with the updated body, or 201 with Location when created.
    """
    expected = parse_if_match(if_match)
    if expected is None:
        expected = _body_version(body)

    view, created = await service.conditional_update(
        context, resource_type, body, _search_filters(request), expected_version_id=expected
    )
    if created:
        return _resource_response(view, status.HTTP_201_CREATED, location=True)
    return _resource_response(view)


@router.put("/{resource_type}/{resource_id}")
async def update_resource(
    resource_type: ResourceType,
    resource_id: str,
    body: dict[str, Any] = Body(...),
    if_match: str | None = Header(default=None),
    context: SecurityContext = Depends(get_security_context),
    service: ResourceService = Depends(get_resource_service),
) -> JSONResponse:
    """Replace a resource body.

    The expected version comes from If-Match, falling back to the body's
    meta.versionId.

    Raises:
        PreconditionFailedError: If no expected version is supplied.
    """
    expected = parse_if_match(if_match)
    if expected is None:
        expected = _body_version(body)
    if expected is None:
        raise PreconditionFailedError("Update requires If-Match or meta.versionId")

    view = await service.update(context, resource_type, resource_id, expected, body)
    return _resource_response(view)


@router.delete("/{resource_type}/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_resource(
    resource_type: ResourceType,
    resource_id: str,
    if_match: str | None = Header(default=None),
    context: SecurityContext = Depends(get_security_context),
    service: ResourceService = Depends(get_resource_service),
) -> Response:
    """Soft-delete a resource.

    Raises:
        PreconditionFailedError: If If-Match is missing.
    """
    expected = parse_if_match(if_match)
    if expected is None:
        raise PreconditionFailedError("Delete requires If-Match")

    view = await service.delete(context, resource_type, resource_id, expected)
    return Response(
        status_code=status.HTTP_204_NO_CONTENT,
        headers=_version_headers(view.version_id, view.last_updated),
    )


@router.get("/{resource_type}/{resource_id}/_history")
async def resource_history(
    resource_type: ResourceType,
    resource_id: str,
    context: SecurityContext = Depends(get_security_context),
    service: ResourceService = Depends(get_resource_service),
) -> dict:
    """List every version of a resource, oldest first."""
    entries = await service.history(context, resource_type, resource_id)
    return {"total": len(entries), "items": [_entry_json(entry) for entry in entries]}


@router.get("/{resource_type}/{resource_id}/_history/{version_id}")
async def read_resource_version(
    resource_type: ResourceType,
    resource_id: str,
    version_id: int,
    context: SecurityContext = Depends(get_security_context),
    service: ResourceService = Depends(get_resource_service),
) -> JSONResponse:
    """Read one historical version of a resource."""
    entry = await service.read_version(context, resource_type, resource_id, version_id)
    return JSONResponse(
        content=entry.body,
        headers=_version_headers(entry.version_id, entry.last_updated),
    )
