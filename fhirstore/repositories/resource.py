"""Versioned resource repository.

Single entry point for resource persistence. Every public operation runs
in its own database transaction: the current-state row, its indexed
columns and the history record are written together or not at all.

Concurrency is optimistic. update() and delete() lock the current row,
compare its version with the caller's expected version and then apply a
version-guarded UPDATE, so of two writers holding the same stale version
exactly one succeeds and the other gets ConflictError. Nothing is retried
here; retry policy belongs to the caller.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import false, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fhirstore.errors import ConflictError, ResourceNotFoundError, TransactionTimeoutError
from fhirstore.projections.projector import project
from fhirstore.projections.registry import ProjectionConfig, ProjectionRegistry
from fhirstore.repositories.search import build_filter_clauses
from fhirstore.schemas.resource import Operation, ResourceType
from fhirstore.utils.fhir_helpers import canonical_id

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StoredResource:
    """Current state of a resource, including its indexed columns."""

    id: uuid.UUID
    resource_type: ResourceType
    version_id: int
    last_updated: datetime
    body: dict[str, Any]
    indexed: dict[str, Any]
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class HistoryRecord:
    """One immutable version of a resource."""

    id: uuid.UUID
    resource_type: ResourceType
    version_id: int
    last_updated: datetime
    operation: Operation
    body: dict[str, Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stamp(
    resource_type: ResourceType,
    resource_id: uuid.UUID,
    version_id: int,
    last_updated: datetime,
    body: dict[str, Any],
) -> dict[str, Any]:
    """Copy a body and stamp identity and version metadata onto it."""
    stamped = copy.deepcopy(body)
    stamped["resourceType"] = resource_type.value
    stamped["id"] = str(resource_id)
    meta = stamped.get("meta")
    stamped["meta"] = {
        **(meta if isinstance(meta, dict) else {}),
        "versionId": str(version_id),
        "lastUpdated": last_updated.isoformat(),
    }
    return stamped


class ResourceRepository:
    """Versioned resource store.

    Maintains one current-state row per resource and an append-only history
    table per resource type. Rows are never hard-deleted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transaction_timeout: float | None = None,
        unique_natural_keys: bool = False,
    ):
        """Initialize repository.

        Args:
            session_factory: Factory producing one session per operation.
            transaction_timeout: Seconds before an operation is cancelled
                and rolled back. None disables the bound.
            unique_natural_keys: Reject creates whose natural key (Patient
                identifier) is already held by a live resource.
        """
        self._session_factory = session_factory
        self._timeout = transaction_timeout
        self._unique_natural_keys = unique_natural_keys

    async def _run(self, work: Callable[[], Awaitable[T]]) -> T:
        """Run one transactional unit under the configured time bound."""
        try:
            return await asyncio.wait_for(work(), timeout=self._timeout)
        except asyncio.TimeoutError:
            raise TransactionTimeoutError(
                f"Transaction exceeded {self._timeout} seconds and was rolled back"
            ) from None
        except IntegrityError as e:
            logger.warning("Integrity violation rolled back: %s", e.orig)
            raise ConflictError("Write conflicts with an existing record") from e

    @staticmethod
    def _parse_id(config: ProjectionConfig, resource_id: uuid.UUID | str) -> uuid.UUID:
        if isinstance(resource_id, uuid.UUID):
            return resource_id
        try:
            return uuid.UUID(str(resource_id))
        except ValueError:
            # A malformed id can never name a stored resource
            raise ResourceNotFoundError(config.resource_type.value, str(resource_id)) from None

    @staticmethod
    def _to_stored(config: ProjectionConfig, row: Any) -> StoredResource:
        return StoredResource(
            id=row.id,
            resource_type=config.resource_type,
            version_id=row.version_id,
            last_updated=row.last_updated,
            body=row.resource,
            indexed={column: getattr(row, column) for column in config.columns},
            deleted_at=row.deleted_at,
        )

    @staticmethod
    def _to_history(config: ProjectionConfig, row: Any) -> HistoryRecord:
        return HistoryRecord(
            id=row.id,
            resource_type=config.resource_type,
            version_id=row.version_id,
            last_updated=row.last_updated,
            operation=Operation(row.operation),
            body=row.resource,
        )

    async def create(
        self,
        resource_type: ResourceType | str,
        body: dict[str, Any],
    ) -> StoredResource:
        """Persist a new resource at version 1.

        Args:
            resource_type: Type of the resource.
            body: FHIR JSON document; any client-supplied id is replaced.

        Returns:
            The stored resource.

        Raises:
            ConflictError: If a configured uniqueness constraint is violated.
        """
        config = ProjectionRegistry.require(resource_type)
        model, history = config.model_class, config.history_class

        async def work() -> StoredResource:
            resource_id = uuid.uuid4()
            now = _utcnow()
            stamped = _stamp(config.resource_type, resource_id, 1, now, body)
            indexed = project(config.resource_type, stamped)

            async with self._session_factory() as session:
                async with session.begin():
                    await self._check_natural_key(session, config, indexed)
                    session.add(
                        model(
                            id=resource_id,
                            version_id=1,
                            last_updated=now,
                            resource=stamped,
                            deleted_at=None,
                            **indexed,
                        )
                    )
                    session.add(
                        history(
                            id=resource_id,
                            version_id=1,
                            resource=stamped,
                            last_updated=now,
                            operation=Operation.CREATE.value,
                        )
                    )

            logger.info("Created %s/%s version 1", config.resource_type.value, resource_id)
            return StoredResource(
                id=resource_id,
                resource_type=config.resource_type,
                version_id=1,
                last_updated=now,
                body=stamped,
                indexed=indexed,
            )

        return await self._run(work)

    async def _check_natural_key(
        self,
        session: AsyncSession,
        config: ProjectionConfig,
        indexed: dict[str, Any],
    ) -> None:
        if not self._unique_natural_keys or config.natural_key_column is None:
            return
        key = indexed.get(config.natural_key_column)
        if key is None:
            return
        model = config.model_class
        column = getattr(model, config.natural_key_column)
        existing = await session.execute(
            select(model.id).where(column == key, model.deleted_at.is_(None)).limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(
                f"{config.resource_type.value} with {config.natural_key_column} "
                f"'{key}' already exists"
            )

    async def read(
        self,
        resource_type: ResourceType | str,
        resource_id: uuid.UUID | str,
        include_deleted: bool = False,
    ) -> StoredResource:
        """Get the current state of a resource.

        Args:
            resource_type: Type of the resource.
            resource_id: Resource UUID.
            include_deleted: Return soft-deleted rows instead of NotFound.

        Returns:
            The stored resource.

        Raises:
            ResourceNotFoundError: If absent, or deleted and not requested.
        """
        config = ProjectionRegistry.require(resource_type)
        rid = self._parse_id(config, resource_id)
        model = config.model_class

        async def work() -> StoredResource:
            async with self._session_factory() as session:
                result = await session.execute(select(model).where(model.id == rid))
                row = result.scalar_one_or_none()
                if row is None or (row.deleted_at is not None and not include_deleted):
                    raise ResourceNotFoundError(config.resource_type.value, str(rid))
                return self._to_stored(config, row)

        return await self._run(work)

    async def exists(self, resource_type: ResourceType | str, resource_id: str) -> bool:
        """Check whether a live (non-deleted) resource exists.

        Args:
            resource_type: Type of the resource.
            resource_id: Resource id as found in a reference.

        Returns:
            True if a non-deleted row with that id exists.
        """
        config = ProjectionRegistry.require(resource_type)
        try:
            rid = uuid.UUID(str(resource_id))
        except ValueError:
            return False
        model = config.model_class

        async def work() -> bool:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(func.count())
                    .select_from(model)
                    .where(model.id == rid, model.deleted_at.is_(None))
                )
                return (result.scalar() or 0) > 0

        return await self._run(work)

    async def find_by_natural_key(
        self,
        resource_type: ResourceType | str,
        key: str,
    ) -> list[uuid.UUID]:
        """Get ids of live resources holding a natural key.

        Args:
            resource_type: Type of the resource.
            key: Natural key value (e.g. "system|value" for Patient).

        Returns:
            Matching resource ids; empty if the type has no natural key.
        """
        config = ProjectionRegistry.require(resource_type)
        if config.natural_key_column is None:
            return []
        model = config.model_class
        column = getattr(model, config.natural_key_column)

        async def work() -> list[uuid.UUID]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(model.id).where(column == key, model.deleted_at.is_(None))
                )
                return list(result.scalars().all())

        return await self._run(work)

    async def update(
        self,
        resource_type: ResourceType | str,
        resource_id: uuid.UUID | str,
        expected_version_id: int,
        body: dict[str, Any],
    ) -> StoredResource:
        """Replace a resource body if the caller's version is current.

        Args:
            resource_type: Type of the resource.
            resource_id: Resource UUID.
            expected_version_id: Version the caller based the change on.
            body: New FHIR JSON document.

        Returns:
            The stored resource at the incremented version.

        Raises:
            ResourceNotFoundError: If absent or deleted.
            ConflictError: If expected_version_id is not the current version.
        """
        config = ProjectionRegistry.require(resource_type)
        rid = self._parse_id(config, resource_id)
        return await self._run(
            lambda: self._write_version(config, rid, expected_version_id, body, Operation.UPDATE)
        )

    async def delete(
        self,
        resource_type: ResourceType | str,
        resource_id: uuid.UUID | str,
        expected_version_id: int,
    ) -> StoredResource:
        """Soft-delete a resource if the caller's version is current.

        The version is incremented and a DELETE history record holding the
        pre-delete body is appended. The row itself is kept.

        Raises:
            ResourceNotFoundError: If absent or already deleted.
            ConflictError: If expected_version_id is not the current version.
        """
        config = ProjectionRegistry.require(resource_type)
        rid = self._parse_id(config, resource_id)
        return await self._run(
            lambda: self._write_version(config, rid, expected_version_id, None, Operation.DELETE)
        )

    async def _write_version(
        self,
        config: ProjectionConfig,
        rid: uuid.UUID,
        expected_version_id: int,
        body: dict[str, Any] | None,
        operation: Operation,
    ) -> StoredResource:
        model, history = config.model_class, config.history_class
        type_name = config.resource_type.value

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(model).where(model.id == rid).with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None or row.deleted_at is not None:
                    raise ResourceNotFoundError(type_name, str(rid))
                if row.version_id != expected_version_id:
                    logger.warning(
                        "Version conflict on %s/%s: expected %s, current %s",
                        type_name,
                        rid,
                        expected_version_id,
                        row.version_id,
                    )
                    raise ConflictError(
                        f"Version conflict on {type_name}/{rid}: expected version "
                        f"{expected_version_id}, current version is {row.version_id}",
                        current_version_id=row.version_id,
                    )

                new_version = row.version_id + 1
                now = _utcnow()
                source = row.resource if body is None else body
                stamped = _stamp(config.resource_type, rid, new_version, now, source)
                indexed = project(config.resource_type, stamped)
                deleted_at = now if operation is Operation.DELETE else None

                guarded = await session.execute(
                    update(model)
                    .where(model.id == rid, model.version_id == expected_version_id)
                    .values(
                        version_id=new_version,
                        last_updated=now,
                        resource=stamped,
                        deleted_at=deleted_at,
                        **indexed,
                    )
                    .execution_options(synchronize_session=False)
                )
                if guarded.rowcount != 1:
                    current_version = await session.scalar(
                        select(model.version_id).where(model.id == rid)
                    )
                    logger.warning(
                        "Version conflict on %s/%s: version %s superseded by %s",
                        type_name,
                        rid,
                        expected_version_id,
                        current_version,
                    )
                    raise ConflictError(
                        f"Version conflict on {type_name}/{rid}: "
                        f"version {expected_version_id} was superseded",
                        current_version_id=current_version,
                    )

                session.add(
                    history(
                        id=rid,
                        version_id=new_version,
                        resource=stamped,
                        last_updated=now,
                        operation=operation.value,
                    )
                )

        logger.info("%s %s/%s version %s", operation.value.title(), type_name, rid, new_version)
        return StoredResource(
            id=rid,
            resource_type=config.resource_type,
            version_id=new_version,
            last_updated=now,
            body=stamped,
            indexed=indexed,
            deleted_at=deleted_at,
        )

    async def search(
        self,
        resource_type: ResourceType | str,
        filters: Mapping[str, Any] | None = None,
        offset: int = 0,
        count: int = 50,
        compartment_patient_id: str | None = None,
        include_deleted: bool = False,
    ) -> tuple[list[StoredResource], int]:
        """Search resources by indexed fields.

        Results are ordered by last_updated descending, ties broken by id,
        so pagination is stable.

        Args:
            resource_type: Type to search.
            filters: Search parameters (see fhirstore.repositories.search).
            offset: Number of matches to skip.
            count: Maximum number of matches to return.
            compartment_patient_id: Restrict to one patient's compartment.
            include_deleted: Include soft-deleted resources.

        Returns:
            Tuple of (page of resources, total matches).

        Raises:
            InvalidSearchError: For unknown parameters or malformed values.
        """
        config = ProjectionRegistry.require(resource_type)
        model = config.model_class
        clauses = build_filter_clauses(config, filters)

        if compartment_patient_id is not None:
            clauses.append(self._compartment_clause(config, compartment_patient_id))
        if not include_deleted:
            clauses.append(model.deleted_at.is_(None))

        logger.debug("Search %s with %d clauses", config.resource_type.value, len(clauses))
        query = select(model).where(*clauses)
        count_query = select(func.count()).select_from(query.subquery())
        page_query = (
            query.order_by(model.last_updated.desc(), model.id.asc())
            .offset(offset)
            .limit(count)
        )

        async def work() -> tuple[list[StoredResource], int]:
            async with self._session_factory() as session:
                total_result = await session.execute(count_query)
                total = total_result.scalar() or 0
                result = await session.execute(page_query)
                rows = result.scalars().all()
                return [self._to_stored(config, row) for row in rows], total

        return await self._run(work)

    @staticmethod
    def _compartment_clause(config: ProjectionConfig, patient_id: str):
        model = config.model_class
        if config.subject_column is not None:
            return getattr(model, config.subject_column) == canonical_id(patient_id)
        try:
            return model.id == uuid.UUID(patient_id)
        except ValueError:
            return false()

    async def history(
        self,
        resource_type: ResourceType | str,
        resource_id: uuid.UUID | str,
    ) -> list[HistoryRecord]:
        """Get every version of a resource, oldest first.

        Deleted resources keep their full history, including the DELETE
        record.

        Raises:
            ResourceNotFoundError: If the id was never written.
        """
        config = ProjectionRegistry.require(resource_type)
        rid = self._parse_id(config, resource_id)
        history = config.history_class

        async def work() -> list[HistoryRecord]:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(history).where(history.id == rid).order_by(history.version_id.asc())
                )
                rows = result.scalars().all()
                if not rows:
                    raise ResourceNotFoundError(config.resource_type.value, str(rid))
                return [self._to_history(config, row) for row in rows]

        return await self._run(work)

    async def read_version(
        self,
        resource_type: ResourceType | str,
        resource_id: uuid.UUID | str,
        version_id: int,
    ) -> HistoryRecord:
        """Get one historical version of a resource.

        Raises:
            ResourceNotFoundError: If the id or version does not exist.
        """
        config = ProjectionRegistry.require(resource_type)
        rid = self._parse_id(config, resource_id)
        history = config.history_class

        async def work() -> HistoryRecord:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(history).where(
                        history.id == rid,
                        history.version_id == version_id,
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise ResourceNotFoundError(
                        config.resource_type.value, str(rid), version_id=version_id
                    )
                return self._to_history(config, row)

        return await self._run(work)
