"""create pipeline orchestration tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "products",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("current_phase", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("is_pipeline_running", sa.Boolean(), nullable=False),
        sa.Column("requires_manual_review", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("current_phase BETWEEN 1 AND 4", name="ck_products_current_phase"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_products_status", "products", ["status"], unique=False)

    op.create_table(
        "pipeline_phases",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("phase_number", sa.Integer(), nullable=False),
        sa.Column("phase_name", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("can_start", sa.Boolean(), nullable=False),
        sa.Column("progress_percentage", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("phase_number BETWEEN 1 AND 4", name="ck_pipeline_phases_phase_number"),
        sa.CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100",
            name="ck_pipeline_phases_progress",
        ),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", "phase_number", name="uq_pipeline_phases_product_phase"),
    )
    op.create_index("ix_pipeline_phases_status", "pipeline_phases", ["status"], unique=False)

    op.create_table(
        "background_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("phase_number", sa.Integer(), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("worker_id", sa.String(length=128), nullable=True, comment="Lease holder while running"),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_background_jobs_product_id", "background_jobs", ["product_id"], unique=False)
    op.create_index("ix_background_jobs_status", "background_jobs", ["status"], unique=False)
    op.create_index(
        "ix_background_jobs_claim_order",
        "background_jobs",
        ["status", "scheduled_at", "priority", "created_at"],
        unique=False,
    )
    op.create_index(
        "uq_background_jobs_active_phase",
        "background_jobs",
        ["product_id", "phase_number"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'running')"),
    )

    op.create_table(
        "pipeline_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("phase_number", sa.Integer(), nullable=True),
        sa.Column("level", sa.String(length=16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column(
            "action",
            sa.String(length=64),
            nullable=False,
            comment="start_phase, complete_phase, phase_error, timeout_cleanup, ...",
        ),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_pipeline_logs_product_created",
        "pipeline_logs",
        ["product_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_pipeline_logs_action", "pipeline_logs", ["action"], unique=False)

    op.create_table(
        "phase_outputs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("phase_number", sa.Integer(), nullable=False),
        sa.Column("output_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", "phase_number", name="uq_phase_outputs_product_phase"),
    )


def downgrade() -> None:
    op.drop_table("phase_outputs")
    op.drop_index("ix_pipeline_logs_action", table_name="pipeline_logs")
    op.drop_index("ix_pipeline_logs_product_created", table_name="pipeline_logs")
    op.drop_table("pipeline_logs")
    op.drop_index("uq_background_jobs_active_phase", table_name="background_jobs")
    op.drop_index("ix_background_jobs_claim_order", table_name="background_jobs")
    op.drop_index("ix_background_jobs_status", table_name="background_jobs")
    op.drop_index("ix_background_jobs_product_id", table_name="background_jobs")
    op.drop_table("background_jobs")
    op.drop_index("ix_pipeline_phases_status", table_name="pipeline_phases")
    op.drop_table("pipeline_phases")
    op.drop_index("ix_products_status", table_name="products")
    op.drop_table("products")
