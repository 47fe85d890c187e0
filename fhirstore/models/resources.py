"""SQLAlchemy models for versioned clinical resources.

Each resource type has a current-state table (one row per resource, holding
the full document plus indexed search columns) and an append-only history
table keyed by (id, version_id).
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import Boolean, Date, Index, Integer, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from fhirstore.database import Base
from fhirstore.models.types import DocumentType, UTCDateTime


class CurrentResourceMixin:
    """Columns shared by every current-state resource table."""

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_updated: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Full FHIR resource - the source of truth for all non-indexed fields
    resource: Mapped[dict[str, Any]] = mapped_column(DocumentType, nullable=False)

    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(id={self.id}, version_id={self.version_id})>"


class HistoryMixin:
    """Columns shared by every history table. Rows are write-once."""

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    version_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    resource: Mapped[dict[str, Any]] = mapped_column(DocumentType, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # CREATE, UPDATE, DELETE
    operation: Mapped[str] = mapped_column(String(10), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(id={self.id}, version_id={self.version_id}, "
            f"operation={self.operation})>"
        )


def _live_index(table: str) -> Index:
    return Index(
        f"idx_{table}_live",
        "deleted_at",
        postgresql_where=text("deleted_at IS NULL"),
    )


def _document_index(table: str) -> Index:
    return Index(f"idx_{table}_resource_gin", "resource", postgresql_using="gin")


class PatientResource(CurrentResourceMixin, Base):
    """Current state of a Patient."""

    __tablename__ = "patients"

    active: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    family_name: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    given_name: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    gender: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    deceased: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    # First identifier as "system|value", the natural key for duplicate checks
    identifier: Mapped[str | None] = mapped_column(String(512), nullable=True, index=True)
    organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    __table_args__ = (
        _live_index("patients"),
        _document_index("patients"),
    )


class ObservationResource(CurrentResourceMixin, Base):
    """Current state of an Observation."""

    __tablename__ = "observations"

    status: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    subject_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    encounter_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category_code: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    code_code: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    code_system: Mapped[str | None] = mapped_column(String(255), nullable=True)
    effective_datetime: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )
    issued: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        _live_index("observations"),
        _document_index("observations"),
    )


class ConditionResource(CurrentResourceMixin, Base):
    """Current state of a Condition."""

    __tablename__ = "conditions"

    subject_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    encounter_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    clinical_status: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    verification_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    category_code: Mapped[str | None] = mapped_column(String(255), nullable=True)
    code_code: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    code_system: Mapped[str | None] = mapped_column(String(255), nullable=True)
    onset_datetime: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )
    recorded_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        _live_index("conditions"),
        _document_index("conditions"),
    )


class EncounterResource(CurrentResourceMixin, Base):
    """Current state of an Encounter."""

    __tablename__ = "encounters"

    status: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    class_code: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    subject_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    period_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)

    __table_args__ = (
        _live_index("encounters"),
        _document_index("encounters"),
    )


class PatientHistory(HistoryMixin, Base):
    __tablename__ = "patients_history"


class ObservationHistory(HistoryMixin, Base):
    __tablename__ = "observations_history"


class ConditionHistory(HistoryMixin, Base):
    __tablename__ = "conditions_history"


class EncounterHistory(HistoryMixin, Base):
    __tablename__ = "encounters_history"
