"""initial_resource_tables

Revision ID: 3f9c1a7d2b10
Revises:
Create Date: 2026-10-19 09:12:44.310512

Creates the current-state and history tables for Patient, Observation,
Condition and Encounter.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c1a7d2b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _current_columns() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resource", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _create_history_table(table: str) -> None:
    op.create_table(
        table,
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("resource", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.Column("operation", sa.String(10), nullable=False),
        sa.PrimaryKeyConstraint("id", "version_id"),
    )


def _create_common_indexes(table: str) -> None:
    op.create_index(
        f"idx_{table}_live",
        table,
        ["deleted_at"],
        postgresql_where=sa.text("deleted_at IS NULL"),
    )
    op.create_index(
        f"idx_{table}_resource_gin",
        table,
        ["resource"],
        postgresql_using="gin",
    )


def upgrade() -> None:
    """Create resource and history tables."""

    # Patient
    op.create_table(
        "patients",
        *_current_columns(),
        sa.Column("active", sa.Boolean(), nullable=True),
        sa.Column("family_name", sa.String(255), nullable=True),
        sa.Column("given_name", sa.String(255), nullable=True),
        sa.Column("gender", sa.String(20), nullable=True),
        sa.Column("birth_date", sa.Date(), nullable=True),
        sa.Column("deceased", sa.Boolean(), nullable=True),
        sa.Column("identifier", sa.String(512), nullable=True),
        sa.Column("organization_id", sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    patient_columns = (
        "family_name", "given_name", "gender", "birth_date", "identifier", "organization_id"
    )
    for column in patient_columns:
        op.create_index(f"ix_patients_{column}", "patients", [column])
    _create_common_indexes("patients")

    # Observation
    op.create_table(
        "observations",
        *_current_columns(),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("subject_id", sa.String(64), nullable=True),
        sa.Column("encounter_id", sa.String(64), nullable=True),
        sa.Column("category_code", sa.String(255), nullable=True),
        sa.Column("code_code", sa.String(255), nullable=True),
        sa.Column("code_system", sa.String(255), nullable=True),
        sa.Column("effective_datetime", sa.DateTime(timezone=True), nullable=True),
        sa.Column("issued", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("status", "subject_id", "category_code", "code_code", "effective_datetime"):
        op.create_index(f"ix_observations_{column}", "observations", [column])
    _create_common_indexes("observations")

    # Condition
    op.create_table(
        "conditions",
        *_current_columns(),
        sa.Column("subject_id", sa.String(64), nullable=True),
        sa.Column("encounter_id", sa.String(64), nullable=True),
        sa.Column("clinical_status", sa.String(50), nullable=True),
        sa.Column("verification_status", sa.String(50), nullable=True),
        sa.Column("category_code", sa.String(255), nullable=True),
        sa.Column("code_code", sa.String(255), nullable=True),
        sa.Column("code_system", sa.String(255), nullable=True),
        sa.Column("onset_datetime", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recorded_date", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("subject_id", "clinical_status", "code_code", "onset_datetime"):
        op.create_index(f"ix_conditions_{column}", "conditions", [column])
    _create_common_indexes("conditions")

    # Encounter
    op.create_table(
        "encounters",
        *_current_columns(),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("class_code", sa.String(50), nullable=True),
        sa.Column("subject_id", sa.String(64), nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("status", "class_code", "subject_id", "period_start", "period_end"):
        op.create_index(f"ix_encounters_{column}", "encounters", [column])
    _create_common_indexes("encounters")

    # Append-only history, one table per type
    for table in ("patients", "observations", "conditions", "encounters"):
        _create_history_table(f"{table}_history")


def downgrade() -> None:
    """Drop resource and history tables."""
    for table in ("patients", "observations", "conditions", "encounters"):
        op.drop_table(f"{table}_history")
        op.drop_table(table)
