"""Resource lifecycle orchestration.

ResourceService is the only public entry point of the core. Mutations run
authorization, validation, projection and storage in that fixed order and
stop at the first failure. Reads and searches never hand out the body of a
resource the caller may not see.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fhirstore.config import Settings
from fhirstore.errors import (
    InvalidSearchError,
    PreconditionFailedError,
    ValidationError,
    ValidationFailure,
)
from fhirstore.projections.projector import project
from fhirstore.projections.registry import ProjectionRegistry
from fhirstore.repositories.resource import HistoryRecord, ResourceRepository, StoredResource
from fhirstore.schemas.resource import HistoryEntry, ResourceType, ResourceView, SearchResult
from fhirstore.schemas.security import Action, SecurityContext
from fhirstore.services.authorization import AccessTarget, AuthorizationEngine
from fhirstore.services.validation import ValidationEngine

logger = logging.getLogger(__name__)


def _view(stored: StoredResource, warnings: list[str] | None = None) -> ResourceView:
    return ResourceView(
        id=stored.id,
        resource_type=stored.resource_type,
        version_id=stored.version_id,
        last_updated=stored.last_updated,
        body=stored.body,
        warnings=warnings or [],
    )


def _entry(record: HistoryRecord) -> HistoryEntry:
    return HistoryEntry(
        id=record.id,
        resource_type=record.resource_type,
        version_id=record.version_id,
        last_updated=record.last_updated,
        operation=record.operation,
        body=record.body,
    )


def _access_target(
    resource_type: ResourceType,
    resource_id: uuid.UUID | str | None,
    indexed: Mapping[str, Any],
) -> AccessTarget:
    """Collect the instance facts authorization needs from indexed fields."""
    config = ProjectionRegistry.require(resource_type)
    subject_id = indexed.get(config.subject_column) if config.subject_column else None
    return AccessTarget(
        resource_id=str(resource_id) if resource_id is not None else None,
        subject_id=subject_id,
        organization_id=indexed.get("organization_id"),
    )


class ResourceService:
    """Composes authorization, validation and the versioned store."""

    def __init__(
        self,
        repository: ResourceRepository,
        authorization: AuthorizationEngine | None = None,
        validation: ValidationEngine | None = None,
        default_page_size: int = 50,
        max_page_size: int = 100,
    ):
        """Initialize the service.

        Args:
            repository: Versioned resource store.
            authorization: Authorization engine (default: no org scoping).
            validation: Validation engine (default: warn on duplicates).
            default_page_size: Search page size when none is requested.
            max_page_size: Upper bound on the requested page size.
        """
        self.repository = repository
        self.authorization = authorization or AuthorizationEngine()
        self.validation = validation or ValidationEngine(repository)
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        config: Settings,
    ) -> "ResourceService":
        """Build a fully wired service from application settings."""
        repository = ResourceRepository(
            session_factory,
            transaction_timeout=config.transaction_timeout_seconds,
            unique_natural_keys=config.enforce_unique_identifiers,
        )
        return cls(
            repository,
            authorization=AuthorizationEngine(
                enforce_organization_scope=config.enforce_organization_scope
            ),
            validation=ValidationEngine(repository, duplicate_policy=config.duplicate_policy),
            default_page_size=config.default_page_size,
            max_page_size=config.max_page_size,
        )

    async def create(
        self,
        context: SecurityContext,
        resource_type: ResourceType | str,
        body: dict[str, Any],
    ) -> ResourceView:
        """Create a resource at version 1.

        Args:
            context: Authenticated caller.
            resource_type: Type of the new resource.
            body: FHIR JSON document.

        Returns:
            The created resource, with any advisory warnings.

        Raises:
            ForbiddenError: If the caller may not create this resource.
            ValidationError: With every failure found.
            ConflictError: On a store-level uniqueness violation.
        """
        rt = ResourceType(resource_type)
        self.authorization.authorize(context, Action.CREATE, rt)
        self.authorization.authorize(
            context, Action.CREATE, rt, _access_target(rt, None, project(rt, body))
        )

        report = await self.validation.validate(rt, body, context, is_create=True)
        if not report.ok:
            raise ValidationError(report.failures)

        stored = await self.repository.create(rt, body)
        return _view(stored, [w.message for w in report.warnings])

    async def conditional_create(
        self,
        context: SecurityContext,
        resource_type: ResourceType | str,
        body: dict[str, Any],
        criteria: Mapping[str, Any],
    ) -> ResourceView:
        """Create a resource only if no visible resource matches the criteria.

        The match check and the create run in separate transactions, so two
        concurrent conditional creates can both succeed unless a store-level
        uniqueness constraint is enabled.

        Raises:
            InvalidSearchError: If criteria are empty or malformed.
            PreconditionFailedError: If any resource matches.
        """
        rt = ResourceType(resource_type)
        if not criteria:
            raise InvalidSearchError("Conditional create requires search criteria")

        self.authorization.authorize(context, Action.CREATE, rt)
        existing = await self.search(context, rt, criteria, count=1)
        if existing.total > 0:
            raise PreconditionFailedError(
                f"{existing.total} {rt.value} resource(s) already match the given criteria"
            )
        return await self.create(context, rt, body)

    async def conditional_update(
        self,
        context: SecurityContext,
        resource_type: ResourceType | str,
        body: dict[str, Any],
        criteria: Mapping[str, Any],
        expected_version_id: int | None = None,
    ) -> tuple[ResourceView, bool]:
        """Update the single visible resource matching the criteria.

        No match creates the resource instead. Without an explicit
        expected_version_id the matched version is used.

        Returns:
            The stored resource and whether it was newly created.

        Raises:
            InvalidSearchError: If criteria are empty or malformed.
            PreconditionFailedError: If more than one resource matches.
        """
        rt = ResourceType(resource_type)
        if not criteria:
            raise InvalidSearchError("Conditional update requires search criteria")

        matches = await self.search(context, rt, criteria, count=2)
        if matches.total == 0:
            return await self.create(context, rt, body), True
        if matches.total > 1:
            raise PreconditionFailedError(
                f"{matches.total} {rt.value} resources match the given criteria"
            )

        match = matches.items[0]
        if expected_version_id is None:
            expected_version_id = match.version_id
        view = await self.update(context, rt, match.id, expected_version_id, body)
        return view, False

    async def read(
        self,
        context: SecurityContext,
        resource_type: ResourceType | str,
        resource_id: uuid.UUID | str,
    ) -> ResourceView:
        """Read the current state of a resource.

        Raises:
            ForbiddenError: If the caller may not see this resource.
            ResourceNotFoundError: If absent or deleted.
        """
        rt = ResourceType(resource_type)
        stored = await self._fetch_authorized(context, Action.READ, rt, resource_id)
        return _view(stored)

    async def read_version(
        self,
        context: SecurityContext,
        resource_type: ResourceType | str,
        resource_id: uuid.UUID | str,
        version_id: int,
    ) -> HistoryEntry:
        """Read one historical version of a resource.

        Raises:
            ForbiddenError: If the caller may not see this resource's history.
            ResourceNotFoundError: If the resource or version does not exist.
        """
        rt = ResourceType(resource_type)
        await self._fetch_authorized(context, Action.HISTORY, rt, resource_id, include_deleted=True)
        return _entry(await self.repository.read_version(rt, resource_id, version_id))

    async def history(
        self,
        context: SecurityContext,
        resource_type: ResourceType | str,
        resource_id: uuid.UUID | str,
    ) -> list[HistoryEntry]:
        """List every version of a resource, oldest first.

        Deleted resources keep their history.

        Raises:
            ForbiddenError: If the caller may not see this resource's history.
            ResourceNotFoundError: If the id was never written.
        """
        rt = ResourceType(resource_type)
        await self._fetch_authorized(context, Action.HISTORY, rt, resource_id, include_deleted=True)
        return [_entry(record) for record in await self.repository.history(rt, resource_id)]

    async def update(
        self,
        context: SecurityContext,
        resource_type: ResourceType | str,
        resource_id: uuid.UUID | str,
        expected_version_id: int,
        body: dict[str, Any],
    ) -> ResourceView:
        """Replace a resource body under optimistic concurrency.

        Args:
            context: Authenticated caller.
            resource_type: Type of the resource.
            resource_id: Resource id.
            expected_version_id: Version the caller based the change on.
            body: New FHIR JSON document.

        Returns:
            The resource at its new version.

        Raises:
            ForbiddenError: If the caller may not update this resource.
            ResourceNotFoundError: If absent or deleted.
            ValidationError: With every failure found.
            ConflictError: If expected_version_id is stale.
        """
        rt = ResourceType(resource_type)
        current = await self._fetch_authorized(context, Action.UPDATE, rt, resource_id)
        # The new body must also stay within what the caller may write
        self.authorization.authorize(
            context, Action.UPDATE, rt, _access_target(rt, current.id, project(rt, body))
        )

        report = await self.validation.validate(rt, body, context)
        failures = list(report.failures)
        if isinstance(body, dict) and body.get("id") not in (None, str(current.id)):
            failures.append(
                ValidationFailure("id", "Resource id in body does not match the target id", "value")
            )
        if failures:
            raise ValidationError(failures)

        stored = await self.repository.update(rt, current.id, expected_version_id, body)
        return _view(stored)

    async def delete(
        self,
        context: SecurityContext,
        resource_type: ResourceType | str,
        resource_id: uuid.UUID | str,
        expected_version_id: int,
    ) -> ResourceView:
        """Soft-delete a resource under optimistic concurrency.

        Returns:
            The resource at its deletion version.

        Raises:
            ForbiddenError: If the caller may not delete this resource.
            ResourceNotFoundError: If absent or already deleted.
            ConflictError: If expected_version_id is stale.
        """
        rt = ResourceType(resource_type)
        current = await self._fetch_authorized(context, Action.DELETE, rt, resource_id)
        stored = await self.repository.delete(rt, current.id, expected_version_id)
        return _view(stored)

    async def search(
        self,
        context: SecurityContext,
        resource_type: ResourceType | str,
        filters: Mapping[str, Any] | None = None,
        offset: int = 0,
        count: int | None = None,
    ) -> SearchResult:
        """Search resources visible to the caller.

        Compartment-restricted callers have their compartment pushed into
        the query; every returned item is additionally checked, and denied
        items are dropped rather than reported.

        Args:
            context: Authenticated caller.
            resource_type: Type to search.
            filters: Search parameters.
            offset: Number of matches to skip.
            count: Page size (clamped to the configured maximum).

        Returns:
            SearchResult page.

        Raises:
            ForbiddenError: If the caller may not search this type.
            InvalidSearchError: For unknown parameters or bad paging values.
        """
        rt = ResourceType(resource_type)
        self.authorization.authorize(context, Action.SEARCH, rt)

        if count is None:
            count = self.default_page_size
        if offset < 0 or count < 0:
            raise InvalidSearchError("_offset and _count must not be negative")
        count = min(count, self.max_page_size)

        compartment = self.authorization.compartment_for(context, Action.SEARCH)
        rows, total = await self.repository.search(
            rt, filters, offset=offset, count=count, compartment_patient_id=compartment
        )

        items = []
        for stored in rows:
            target = _access_target(rt, stored.id, stored.indexed)
            if self.authorization.decide(context, Action.SEARCH, rt, target):
                items.append(_view(stored))
        dropped = len(rows) - len(items)
        if dropped:
            logger.warning(
                "Dropped %d %s search result(s) not visible to user %s",
                dropped,
                rt.value,
                context.user_id,
            )

        return SearchResult(items=items, total=max(total - dropped, 0), offset=offset, count=count)

    async def _fetch_authorized(
        self,
        context: SecurityContext,
        action: Action,
        resource_type: ResourceType,
        resource_id: uuid.UUID | str,
        include_deleted: bool = False,
    ) -> StoredResource:
        """Authorize, fetch and re-authorize against the fetched instance.

        For Patient resources a compartment-restricted caller is checked on
        the id before the fetch, so the existence of other patients'
        records is never revealed.
        """
        self.authorization.authorize(context, action, resource_type)
        if (
            resource_type is ResourceType.PATIENT
            and self.authorization.compartment_for(context, action) is not None
        ):
            self.authorization.authorize(
                context, action, resource_type, AccessTarget(resource_id=str(resource_id))
            )

        stored = await self.repository.read(
            resource_type, resource_id, include_deleted=include_deleted
        )
        self.authorization.authorize(
            context, action, resource_type, _access_target(resource_type, stored.id, stored.indexed)
        )
        return stored
