"""
db/models/background_job.py

Scheduled unit of phase work, claimed by workers through a guarded UPDATE.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin, UTCDateTime, utcnow
from db.models.enums import JobPriority, JobStatus, enum_type

# Predicate of the partial unique index; enqueue's ON CONFLICT clause must
# repeat it verbatim for the index to be inferred.
ACTIVE_JOB_PREDICATE = text("status IN ('pending', 'running')")


class BackgroundJob(Base, TimestampMixin):
    __tablename__ = "background_jobs"

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
    priority: Mapped[JobPriority] = mapped_column(
        enum_type(JobPriority, length=16),
        nullable=False,
        default=JobPriority.NORMAL,
    )
    status: Mapped[JobStatus] = mapped_column(
        enum_type(JobStatus),
        nullable=False,
        default=JobStatus.PENDING,
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    worker_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Lease holder while running",
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_background_jobs_product_id", "product_id"),
        Index("ix_background_jobs_status", "status"),
        Index("ix_background_jobs_claim_order", "status", "scheduled_at", "priority", "created_at"),
        Index(
            "uq_background_jobs_active_phase",
            "product_id",
            "phase_number",
            unique=True,
            postgresql_where=ACTIVE_JOB_PREDICATE,
            sqlite_where=ACTIVE_JOB_PREDICATE,
        ),
    )

    def __repr__(self) -> str:
        return (
            f"BackgroundJob(id={self.id}, product_id={self.product_id}, "
            f"phase={self.phase_number}, status={self.status.value})"
        )
