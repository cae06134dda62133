"""
db/models/pipeline_phase.py

Per-product phase status row, unique on (product_id, phase_number).
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin, UTCDateTime
from db.models.enums import PhaseStatus, enum_type


class PipelinePhase(Base, TimestampMixin):
    __tablename__ = "pipeline_phases"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )
    phase_number: Mapped[int] = mapped_column(Integer, nullable=False)
    phase_name: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[PhaseStatus] = mapped_column(
        enum_type(PhaseStatus),
        nullable=False,
        default=PhaseStatus.PENDING,
    )
    can_start: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Display hint only; start guards derive readiness from the previous phase",
    )
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("product_id", "phase_number", name="uq_pipeline_phases_product_phase"),
        CheckConstraint("phase_number BETWEEN 1 AND 4", name="ck_pipeline_phases_phase_number"),
        CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100",
            name="ck_pipeline_phases_progress",
        ),
        Index("ix_pipeline_phases_status", "status"),
    )
