"""
Repository for pipeline products, phases, jobs, logs and phase outputs.

All methods operate inside the caller's session and never commit; the
caller owns the transaction. Every write that changes job ownership or
phase status is a single conditional UPDATE whose rows-affected count is
returned, so callers can tell a lost race from a successful transition.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, aliased

from db.base import utcnow
from db.models.background_job import ACTIVE_JOB_PREDICATE, BackgroundJob
from db.models.enums import (
    FIRST_PHASE,
    PHASE_NAMES,
    PHASE_NUMBERS,
    JobPriority,
    JobStatus,
    LogLevel,
    PhaseStatus,
    ProductStatus,
)
from db.models.phase_output import PhaseOutput
from db.models.pipeline_log import PipelineLog
from db.models.pipeline_phase import PipelinePhase
from db.models.product import Product

_ANY: Any = object()

_NO_SYNC = {"synchronize_session": False}


class PipelineRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def create_product(
        self,
        *,
        name: str | None = None,
        status: ProductStatus = ProductStatus.UPLOADING,
        is_pipeline_running: bool = False,
    ) -> Product:
        product = Product(
            name=name,
            status=status,
            current_phase=FIRST_PHASE,
            is_pipeline_running=is_pipeline_running,
            requires_manual_review=False,
        )
        self._session.add(product)
        self._session.flush()
        return product

    def get_product(self, product_id: uuid.UUID) -> Product | None:
        return self._session.get(Product, product_id, populate_existing=True)

    def update_product_status(
        self,
        product_id: uuid.UUID,
        status: ProductStatus | None = None,
        *,
        only_if_status: Iterable[ProductStatus] | None = None,
        **values: Any,
    ) -> bool:
        if status is not None:
            values["status"] = status
        if not values:
            return False
        stmt = update(Product).where(Product.id == product_id)
        if only_if_status is not None:
            stmt = stmt.where(Product.status.in_(list(only_if_status)))
        result = self._session.execute(
            stmt.values(**values).execution_options(**_NO_SYNC)
        )
        return result.rowcount > 0

    def advance_current_phase(self, product_id: uuid.UUID, phase_number: int) -> bool:
        """Raise ``current_phase`` to ``phase_number``; never lowers it."""
        result = self._session.execute(
            update(Product)
            .where(Product.id == product_id, Product.current_phase < phase_number)
            .values(current_phase=phase_number)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount > 0

    def list_product_ids_with_unreconciled_output(self, *, limit: int = 500) -> list[uuid.UUID]:
        """Products holding output for a phase that is not marked completed."""
        stmt = (
            select(PipelinePhase.product_id)
            .join(
                PhaseOutput,
                (PhaseOutput.product_id == PipelinePhase.product_id)
                & (PhaseOutput.phase_number == PipelinePhase.phase_number),
            )
            .where(PipelinePhase.status != PhaseStatus.COMPLETED)
            .group_by(PipelinePhase.product_id)
            .order_by(func.min(PipelinePhase.updated_at))
            .limit(max(1, limit))
        )
        return list(self._session.scalars(stmt).all())

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def create_phases(self, product_id: uuid.UUID) -> list[PipelinePhase]:
        phases = [
            PipelinePhase(
                product_id=product_id,
                phase_number=number,
                phase_name=PHASE_NAMES[number],
                status=PhaseStatus.PENDING,
                can_start=number == FIRST_PHASE,
                progress_percentage=0,
                retry_count=0,
            )
            for number in PHASE_NUMBERS
        ]
        self._session.add_all(phases)
        self._session.flush()
        return phases

    def get_phase(self, product_id: uuid.UUID, phase_number: int) -> PipelinePhase | None:
        stmt = (
            select(PipelinePhase)
            .where(
                PipelinePhase.product_id == product_id,
                PipelinePhase.phase_number == phase_number,
            )
            .execution_options(populate_existing=True)
        )
        return self._session.scalars(stmt).first()

    def list_phases(self, product_id: uuid.UUID) -> list[PipelinePhase]:
        stmt = (
            select(PipelinePhase)
            .where(PipelinePhase.product_id == product_id)
            .order_by(PipelinePhase.phase_number)
            .execution_options(populate_existing=True)
        )
        return list(self._session.scalars(stmt).all())

    def upsert_phase(self, product_id: uuid.UUID, phase_number: int, **values: Any) -> None:
        """Create the phase row if missing; apply ``values`` either way."""
        insert_values = {
            "id": uuid.uuid4(),
            "product_id": product_id,
            "phase_number": phase_number,
            "phase_name": PHASE_NAMES[phase_number],
            "status": PhaseStatus.PENDING,
            "can_start": phase_number == FIRST_PHASE,
            "progress_percentage": 0,
            "retry_count": 0,
            **values,
        }
        stmt = self._insert(PipelinePhase).values(**insert_values)
        conflict_target = [PipelinePhase.product_id, PipelinePhase.phase_number]
        if values:
            stmt = stmt.on_conflict_do_update(index_elements=conflict_target, set_=values)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=conflict_target)
        self._session.execute(stmt)

    def update_phase(
        self,
        product_id: uuid.UUID,
        phase_number: int,
        *,
        only_if_status: Iterable[PhaseStatus] | None = None,
        **values: Any,
    ) -> bool:
        stmt = update(PipelinePhase).where(
            PipelinePhase.product_id == product_id,
            PipelinePhase.phase_number == phase_number,
        )
        if only_if_status is not None:
            stmt = stmt.where(PipelinePhase.status.in_(list(only_if_status)))
        result = self._session.execute(stmt.values(**values).execution_options(**_NO_SYNC))
        return result.rowcount > 0

    def mark_phase_running(self, product_id: uuid.UUID, phase_number: int, now: datetime) -> bool:
        """
        Guarded start: the phase must be pending/failed, its predecessor
        completed, and no sibling phase running. Readiness is derived from
        the predecessor's status in the same statement, not from ``can_start``.
        """

        previous = aliased(PipelinePhase)
        sibling = aliased(PipelinePhase)
        stmt = update(PipelinePhase).where(
            PipelinePhase.product_id == product_id,
            PipelinePhase.phase_number == phase_number,
            PipelinePhase.status.in_([PhaseStatus.PENDING, PhaseStatus.FAILED]),
            ~select(sibling.id)
            .where(sibling.product_id == product_id, sibling.status == PhaseStatus.RUNNING)
            .exists(),
        )
        if phase_number > FIRST_PHASE:
            stmt = stmt.where(
                select(previous.id)
                .where(
                    previous.product_id == product_id,
                    previous.phase_number == phase_number - 1,
                    previous.status == PhaseStatus.COMPLETED,
                )
                .exists()
            )
        result = self._session.execute(
            stmt.values(
                status=PhaseStatus.RUNNING,
                started_at=now,
                completed_at=None,
                progress_percentage=0,
                can_start=True,
            ).execution_options(**_NO_SYNC)
        )
        return result.rowcount > 0

    def mark_phase_completed(self, product_id: uuid.UUID, phase_number: int, now: datetime) -> bool:
        return self.update_phase(
            product_id,
            phase_number,
            only_if_status=[PhaseStatus.PENDING, PhaseStatus.RUNNING, PhaseStatus.FAILED],
            status=PhaseStatus.COMPLETED,
            progress_percentage=100,
            completed_at=now,
            error_message=None,
        )

    def open_phase(self, product_id: uuid.UUID, phase_number: int) -> bool:
        result = self._session.execute(
            update(PipelinePhase)
            .where(
                PipelinePhase.product_id == product_id,
                PipelinePhase.phase_number == phase_number,
                PipelinePhase.can_start.is_(False),
            )
            .values(can_start=True)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount > 0

    def is_phase_completed(self, product_id: uuid.UUID, phase_number: int) -> bool:
        stmt = select(PipelinePhase.id).where(
            PipelinePhase.product_id == product_id,
            PipelinePhase.phase_number == phase_number,
            PipelinePhase.status == PhaseStatus.COMPLETED,
        )
        return self._session.scalars(stmt).first() is not None

    def reset_phases(self, product_id: uuid.UUID) -> int:
        result = self._session.execute(
            update(PipelinePhase)
            .where(PipelinePhase.product_id == product_id)
            .values(
                status=PhaseStatus.PENDING,
                can_start=PipelinePhase.phase_number == FIRST_PHASE,
                progress_percentage=0,
                started_at=None,
                completed_at=None,
                retry_count=0,
                error_message=None,
            )
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def insert_job(
        self,
        *,
        product_id: uuid.UUID,
        phase_number: int,
        priority: JobPriority,
        max_retries: int,
        scheduled_at: datetime,
    ) -> BackgroundJob | None:
        """
        Insert a pending job unless one is already pending/running for the
        same (product, phase). Returns ``None`` when deduplicated.
        """

        stmt = (
            self._insert(BackgroundJob)
            .values(
                id=uuid.uuid4(),
                product_id=product_id,
                phase_number=phase_number,
                priority=priority,
                status=JobStatus.PENDING,
                scheduled_at=scheduled_at,
                retry_count=0,
                max_retries=max_retries,
            )
            .on_conflict_do_nothing(
                index_elements=[BackgroundJob.product_id, BackgroundJob.phase_number],
                index_where=ACTIVE_JOB_PREDICATE,
            )
            .returning(BackgroundJob.id)
        )
        job_id = self._session.execute(stmt).scalar_one_or_none()
        if job_id is None:
            return None
        return self.get_job(job_id)

    def get_job(self, job_id: uuid.UUID) -> BackgroundJob | None:
        return self._session.get(BackgroundJob, job_id, populate_existing=True)

    def get_active_job(
        self,
        product_id: uuid.UUID,
        phase_number: int | None = None,
    ) -> BackgroundJob | None:
        stmt = select(BackgroundJob).where(
            BackgroundJob.product_id == product_id,
            BackgroundJob.status.in_([JobStatus.PENDING, JobStatus.RUNNING]),
        )
        if phase_number is not None:
            stmt = stmt.where(BackgroundJob.phase_number == phase_number)
        stmt = stmt.order_by(BackgroundJob.created_at).execution_options(populate_existing=True)
        return self._session.scalars(stmt).first()

    def list_jobs(
        self,
        *,
        product_id: uuid.UUID | None = None,
        status: JobStatus | None = None,
        limit: int = 100,
    ) -> list[BackgroundJob]:
        stmt = select(BackgroundJob)
        if product_id is not None:
            stmt = stmt.where(BackgroundJob.product_id == product_id)
        if status is not None:
            stmt = stmt.where(BackgroundJob.status == status)
        stmt = (
            stmt.order_by(BackgroundJob.created_at)
            .limit(max(1, limit))
            .execution_options(populate_existing=True)
        )
        return list(self._session.scalars(stmt).all())

    def find_next_claimable(self, now: datetime) -> BackgroundJob | None:
        """Oldest due pending job, high priority first, FIFO within a tier."""
        priority_rank = case(
            (BackgroundJob.priority == JobPriority.HIGH, JobPriority.HIGH.rank),
            (BackgroundJob.priority == JobPriority.NORMAL, JobPriority.NORMAL.rank),
            else_=JobPriority.LOW.rank,
        )
        stmt = (
            select(BackgroundJob)
            .where(
                BackgroundJob.status == JobStatus.PENDING,
                BackgroundJob.scheduled_at <= now,
            )
            .order_by(priority_rank, BackgroundJob.created_at, BackgroundJob.id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return self._session.scalars(stmt).first()

    def claim_job(self, job_id: uuid.UUID, worker_id: str, now: datetime) -> bool:
        """Compare-and-swap pending -> running; False means another worker won."""
        result = self._session.execute(
            update(BackgroundJob)
            .where(BackgroundJob.id == job_id, BackgroundJob.status == JobStatus.PENDING)
            .values(
                status=JobStatus.RUNNING,
                worker_id=worker_id,
                started_at=now,
                completed_at=None,
            )
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount == 1

    def update_job(
        self,
        job_id: uuid.UUID,
        *,
        expected_status: Iterable[JobStatus] | None = None,
        expected_worker_id: str | None = _ANY,
        **values: Any,
    ) -> bool:
        stmt = update(BackgroundJob).where(BackgroundJob.id == job_id)
        if expected_status is not None:
            stmt = stmt.where(BackgroundJob.status.in_(list(expected_status)))
        if expected_worker_id is not _ANY:
            if expected_worker_id is None:
                stmt = stmt.where(BackgroundJob.worker_id.is_(None))
            else:
                stmt = stmt.where(BackgroundJob.worker_id == expected_worker_id)
        result = self._session.execute(stmt.values(**values).execution_options(**_NO_SYNC))
        return result.rowcount == 1

    def list_stale_running_jobs(self, started_before: datetime, *, limit: int = 100) -> list[BackgroundJob]:
        stmt = (
            select(BackgroundJob)
            .where(
                BackgroundJob.status == JobStatus.RUNNING,
                BackgroundJob.started_at < started_before,
            )
            .order_by(BackgroundJob.started_at)
            .limit(max(1, limit))
            .execution_options(populate_existing=True)
        )
        return list(self._session.scalars(stmt).all())

    def cancel_jobs(
        self,
        product_id: uuid.UUID,
        *,
        statuses: Iterable[JobStatus],
        now: datetime,
        reason: str,
    ) -> int:
        result = self._session.execute(
            update(BackgroundJob)
            .where(
                BackgroundJob.product_id == product_id,
                BackgroundJob.status.in_(list(statuses)),
            )
            .values(
                status=JobStatus.CANCELLED,
                completed_at=now,
                worker_id=None,
                error_message=reason,
            )
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount

    def count_jobs_by_status(self) -> dict[JobStatus, int]:
        rows = self._session.execute(
            select(BackgroundJob.status, func.count(BackgroundJob.id)).group_by(BackgroundJob.status)
        ).all()
        counts = {status: 0 for status in JobStatus}
        for status, count in rows:
            counts[JobStatus(status)] = int(count)
        return counts

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def insert_log(
        self,
        *,
        product_id: uuid.UUID,
        phase_number: int | None,
        level: LogLevel,
        message: str,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> PipelineLog:
        entry = PipelineLog(
            product_id=product_id,
            phase_number=phase_number,
            level=level,
            message=message,
            action=action,
            details=details,
        )
        self._session.add(entry)
        self._session.flush()
        return entry

    def list_logs(self, product_id: uuid.UUID, *, action: str | None = None) -> list[PipelineLog]:
        stmt = select(PipelineLog).where(PipelineLog.product_id == product_id)
        if action is not None:
            stmt = stmt.where(PipelineLog.action == action)
        stmt = stmt.order_by(PipelineLog.created_at, PipelineLog.id)
        return list(self._session.scalars(stmt).all())

    # ------------------------------------------------------------------
    # Phase outputs
    # ------------------------------------------------------------------

    def save_phase_output(
        self,
        product_id: uuid.UUID,
        phase_number: int,
        output_data: dict[str, Any],
    ) -> None:
        stmt = (
            self._insert(PhaseOutput)
            .values(
                id=uuid.uuid4(),
                product_id=product_id,
                phase_number=phase_number,
                output_data=output_data,
            )
            .on_conflict_do_update(
                index_elements=[PhaseOutput.product_id, PhaseOutput.phase_number],
                set_={"output_data": output_data, "updated_at": utcnow()},
            )
        )
        self._session.execute(stmt)

    def get_phase_output(self, product_id: uuid.UUID, phase_number: int) -> PhaseOutput | None:
        stmt = (
            select(PhaseOutput)
            .where(
                PhaseOutput.product_id == product_id,
                PhaseOutput.phase_number == phase_number,
            )
            .execution_options(populate_existing=True)
        )
        return self._session.scalars(stmt).first()

    def has_phase_output(self, product_id: uuid.UUID, phase_number: int) -> bool:
        stmt = select(PhaseOutput.id).where(
            PhaseOutput.product_id == product_id,
            PhaseOutput.phase_number == phase_number,
        )
        return self._session.scalars(stmt).first() is not None

    def delete_phase_outputs(self, product_id: uuid.UUID) -> int:
        result = self._session.execute(
            delete(PhaseOutput)
            .where(PhaseOutput.product_id == product_id)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _insert(self, model: type) -> Any:
        dialect_name = self._session.get_bind().dialect.name
        if dialect_name == "postgresql":
            return postgresql.insert(model)
        if dialect_name == "sqlite":
            return sqlite.insert(model)
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect_name}")
