"""
pipeline/service.py

Product-level lifecycle operations used by the trigger surface: register a
product, pause / resume, manual retry after permanent failure, full reset,
on-demand stuck-phase repair and a read-only status snapshot.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from db.models.background_job import BackgroundJob
from db.models.enums import (
    FIRST_PHASE,
    PHASE_NUMBERS,
    JobPriority,
    JobStatus,
    LogLevel,
    PhaseStatus,
    ProductStatus,
)
from db.models.pipeline_phase import PipelinePhase
from db.models.product import Product
from db.repositories.pipeline_repository import PipelineRepository
from pipeline.errors import PipelineError, ProductNotFoundError
from pipeline.logging_utils import log_event
from pipeline.reconciler import ReconcileResult, StuckPhaseReconciler
from pipeline.scheduler import JobScheduler
from pipeline.store import PipelineStore

logger = logging.getLogger(__name__)

_ENQUEUEABLE_PRODUCT_STATUSES = (ProductStatus.UPLOADING, ProductStatus.PROCESSING)


class PhaseSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    phase_number: int
    phase_name: str
    status: PhaseStatus
    can_start: bool
    progress_percentage: int
    retry_count: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None


class JobSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    phase_number: int
    priority: JobPriority
    status: JobStatus
    scheduled_at: datetime
    started_at: datetime | None = None
    retry_count: int
    max_retries: int
    worker_id: str | None = None
    error_message: str | None = None


class PipelineStatusSnapshot(BaseModel):
    product_id: uuid.UUID
    name: str | None = None
    status: ProductStatus
    current_phase: int
    is_pipeline_running: bool
    requires_manual_review: bool
    error_message: str | None = None
    phases: list[PhaseSnapshot] = Field(default_factory=list)
    active_job: JobSnapshot | None = None


@dataclass(frozen=True)
class FixStuckResult:
    reconcile: ReconcileResult
    next_job: BackgroundJob | None = None


class PipelineService:
    def __init__(
        self,
        store: PipelineStore,
        scheduler: JobScheduler,
        reconciler: StuckPhaseReconciler,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._reconciler = reconciler

    def submit_product(
        self,
        *,
        name: str | None = None,
        priority: JobPriority | str = JobPriority.NORMAL,
    ) -> Product:
        """Create a product with its four phases and queue phase 1."""
        priority = JobPriority(priority)
        with self._store.transaction() as r:
            product = r.create_product(
                name=name,
                status=ProductStatus.PROCESSING,
                is_pipeline_running=True,
            )
            r.create_phases(product.id)
            job = self._scheduler.enqueue(product.id, FIRST_PHASE, priority, repo=r)
            r.insert_log(
                product_id=product.id,
                phase_number=FIRST_PHASE,
                level=LogLevel.INFO,
                message="Pipeline started",
                action="start_pipeline",
                details={"job_id": str(job.id) if job else None, "priority": priority.value},
            )
            product = r.get_product(product.id)

        log_event(logger, logging.INFO, "product_submitted", product_id=product.id, priority=priority.value)
        return product

    def pause_product(self, product_id: uuid.UUID) -> int:
        """
        Pause a product and cancel its pending jobs. A job already running
        finishes, but the next phase is not queued while paused.
        Returns the number of cancelled jobs.
        """

        with self._store.transaction() as r:
            product = self._require_product(r, product_id)
            paused = r.update_product_status(
                product_id,
                ProductStatus.PAUSED,
                only_if_status=[
                    ProductStatus.UPLOADING,
                    ProductStatus.PROCESSING,
                    ProductStatus.PAUSED,
                ],
                is_pipeline_running=False,
            )
            if not paused:
                raise PipelineError(
                    f"Product {product_id} is {product.status.value} and cannot be paused"
                )
            cancelled = r.cancel_jobs(
                product_id,
                statuses=[JobStatus.PENDING],
                now=self._store.now(),
                reason="Product paused",
            )
            r.insert_log(
                product_id=product_id,
                phase_number=None,
                level=LogLevel.INFO,
                message=f"Pipeline paused; {cancelled} pending jobs cancelled",
                action="pause_product",
                details={"cancelled_jobs": cancelled},
            )

        log_event(logger, logging.INFO, "product_paused", product_id=product_id, cancelled_jobs=cancelled)
        return cancelled

    def resume_product(
        self,
        product_id: uuid.UUID,
        *,
        priority: JobPriority | str = JobPriority.NORMAL,
    ) -> BackgroundJob | None:
        with self._store.transaction() as r:
            product = self._require_product(r, product_id)
            if product.status != ProductStatus.PAUSED:
                raise PipelineError(f"Product {product_id} is {product.status.value}, not paused")

            r.update_product_status(
                product_id,
                ProductStatus.PROCESSING,
                is_pipeline_running=True,
            )
            next_phase = self._first_open_phase(r.list_phases(product_id))
            job = None
            if next_phase is not None:
                job = self._scheduler.enqueue(product_id, next_phase.phase_number, priority, repo=r)
            r.insert_log(
                product_id=product_id,
                phase_number=next_phase.phase_number if next_phase else None,
                level=LogLevel.INFO,
                message="Pipeline resumed",
                action="resume_product",
                details={"job_id": str(job.id) if job else None},
            )

        log_event(logger, logging.INFO, "product_resumed", product_id=product_id, job_id=job.id if job else None)
        return job

    def retry_product(self, product_id: uuid.UUID) -> BackgroundJob | None:
        """
        Manual re-trigger after permanent failure: clear the error, reset the
        failed (or first unfinished) phase and queue it at high priority with
        a fresh retry budget.
        """

        with self._store.transaction() as r:
            self._require_product(r, product_id)
            phases = r.list_phases(product_id)
            target = next((p for p in phases if p.status == PhaseStatus.FAILED), None)
            if target is None:
                target = self._first_open_phase(phases)
            if target is None:
                raise PipelineError(f"Product {product_id} has no phase to retry")

            r.update_phase(
                product_id,
                target.phase_number,
                only_if_status=[PhaseStatus.FAILED, PhaseStatus.PENDING],
                status=PhaseStatus.PENDING,
                retry_count=0,
                error_message=None,
                progress_percentage=0,
            )
            r.update_product_status(
                product_id,
                ProductStatus.PROCESSING,
                is_pipeline_running=True,
                requires_manual_review=False,
                error_message=None,
            )
            job = self._scheduler.enqueue(
                product_id,
                target.phase_number,
                JobPriority.HIGH,
                repo=r,
            )
            r.insert_log(
                product_id=product_id,
                phase_number=target.phase_number,
                level=LogLevel.INFO,
                message=f"Manual retry of phase {target.phase_number}",
                action="retry_product",
                details={"job_id": str(job.id) if job else None},
            )

        log_event(
            logger,
            logging.INFO,
            "product_retry",
            product_id=product_id,
            phase_number=target.phase_number,
            job_id=job.id if job else None,
        )
        return job

    def reset_product(
        self,
        product_id: uuid.UUID,
        *,
        priority: JobPriority | str = JobPriority.NORMAL,
    ) -> BackgroundJob | None:
        """
        Discard all progress and restart from phase 1. This is the only
        operation that lowers ``current_phase``.
        """

        with self._store.transaction() as r:
            self._require_product(r, product_id)
            now = self._store.now()
            cancelled = r.cancel_jobs(
                product_id,
                statuses=[JobStatus.PENDING, JobStatus.RUNNING],
                now=now,
                reason="Product reset",
            )
            removed_outputs = r.delete_phase_outputs(product_id)
            r.reset_phases(product_id)
            for phase_number in PHASE_NUMBERS:
                r.upsert_phase(product_id, phase_number)
            r.update_product_status(
                product_id,
                ProductStatus.PROCESSING,
                current_phase=FIRST_PHASE,
                is_pipeline_running=True,
                requires_manual_review=False,
                error_message=None,
            )
            job = self._scheduler.enqueue(product_id, FIRST_PHASE, priority, repo=r)
            r.insert_log(
                product_id=product_id,
                phase_number=FIRST_PHASE,
                level=LogLevel.WARN,
                message="Pipeline reset to phase 1",
                action="reset_product",
                details={"cancelled_jobs": cancelled, "removed_outputs": removed_outputs},
            )

        log_event(logger, logging.WARNING, "product_reset", product_id=product_id, cancelled_jobs=cancelled)
        return job

    def fix_stuck_phases(
        self,
        product_id: uuid.UUID,
        *,
        resume: bool = True,
        priority: JobPriority | str = JobPriority.NORMAL,
    ) -> FixStuckResult:
        """
        Reconcile phase status with stored output, then queue the next
        unfinished phase unless the product is paused, finished or failed.
        """

        with self._store.transaction() as r:
            result = self._reconciler.reconcile(product_id, repo=r)
            next_job = None
            if resume:
                product = r.get_product(product_id)
                next_phase = self._first_open_phase(r.list_phases(product_id))
                if (
                    product.status in _ENQUEUEABLE_PRODUCT_STATUSES
                    and next_phase is not None
                    and next_phase.status == PhaseStatus.PENDING
                ):
                    next_job = self._scheduler.enqueue(
                        product_id, next_phase.phase_number, priority, repo=r
                    )
        return FixStuckResult(reconcile=result, next_job=next_job)

    def get_pipeline_status(self, product_id: uuid.UUID) -> PipelineStatusSnapshot:
        with self._store.transaction() as r:
            product = self._require_product(r, product_id)
            phases = r.list_phases(product_id)
            active_job = r.get_active_job(product_id)
            return PipelineStatusSnapshot(
                product_id=product.id,
                name=product.name,
                status=product.status,
                current_phase=product.current_phase,
                is_pipeline_running=product.is_pipeline_running,
                requires_manual_review=product.requires_manual_review,
                error_message=product.error_message,
                phases=[PhaseSnapshot.model_validate(phase) for phase in phases],
                active_job=JobSnapshot.model_validate(active_job) if active_job else None,
            )

    def _require_product(self, r: PipelineRepository, product_id: uuid.UUID) -> Product:
        product = r.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    @staticmethod
    def _first_open_phase(phases: list[PipelinePhase]) -> PipelinePhase | None:
        return next((p for p in phases if p.status != PhaseStatus.COMPLETED), None)
