"""
pipeline/state_machine.py

Phase ordering and completion.

Phase statuses move ``pending -> running -> completed | failed`` and
``failed -> pending`` while retries remain. A phase may start only when the
previous phase is completed; readiness is derived from the previous phase's
row inside the guarded UPDATE, never from the stored ``can_start`` flag.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from db.models.background_job import BackgroundJob
from db.models.enums import (
    FINAL_PHASE,
    FIRST_PHASE,
    JobPriority,
    PhaseStatus,
    ProductStatus,
    validate_phase_number,
)
from db.models.pipeline_phase import PipelinePhase
from db.repositories.pipeline_repository import PipelineRepository
from pipeline.errors import PhaseTransitionError, ProductNotFoundError
from pipeline.events import PipelineEvent, PipelineEventType
from pipeline.logging_utils import log_event
from pipeline.scheduler import JobScheduler
from pipeline.store import PipelineStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseCompletion:
    product_id: uuid.UUID
    phase_number: int
    changed: bool
    next_job: BackgroundJob | None = None
    product_completed: bool = False


class PhaseStateMachine:
    def __init__(self, store: PipelineStore, scheduler: JobScheduler) -> None:
        self._store = store
        self._scheduler = scheduler

    def can_start(
        self,
        product_id: uuid.UUID,
        phase_number: int,
        *,
        repo: PipelineRepository | None = None,
    ) -> bool:
        validate_phase_number(phase_number)
        if phase_number == FIRST_PHASE:
            return True
        with self._store.use(repo) as r:
            return r.is_phase_completed(product_id, phase_number - 1)

    def start_phase(
        self,
        product_id: uuid.UUID,
        phase_number: int,
        *,
        repo: PipelineRepository | None = None,
    ) -> PipelinePhase:
        validate_phase_number(phase_number)
        with self._store.use(repo) as r:
            product = r.get_product(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)

            now = self._store.now()
            if not r.mark_phase_running(product_id, phase_number, now):
                raise PhaseTransitionError(
                    product_id,
                    phase_number,
                    self._start_refusal_reason(r, product_id, phase_number),
                )

            r.update_product_status(
                product_id,
                ProductStatus.PROCESSING,
                is_pipeline_running=True,
            )
            r.advance_current_phase(product_id, phase_number)
            phase = r.get_phase(product_id, phase_number)

        log_event(
            logger,
            logging.INFO,
            "phase_started",
            product_id=product_id,
            phase_number=phase_number,
        )
        return phase

    def complete_phase(
        self,
        product_id: uuid.UUID,
        phase_number: int,
        *,
        priority: JobPriority | str = JobPriority.NORMAL,
        job_id: uuid.UUID | None = None,
        repo: PipelineRepository | None = None,
    ) -> PhaseCompletion:
        """
        Mark the phase completed and hand off to the next phase.

        Idempotent: a phase that is already completed is left untouched,
        but the next phase is still opened and enqueued (enqueue dedups).
        The next phase is not enqueued while the product is paused.
        """

        validate_phase_number(phase_number)
        with self._store.use(repo) as r:
            product = r.get_product(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)

            now = self._store.now()
            changed = r.mark_phase_completed(product_id, phase_number, now)
            if changed:
                self._store.publish(
                    r,
                    PipelineEvent(
                        event_type=PipelineEventType.PHASE_COMPLETED,
                        product_id=product_id,
                        phase_number=phase_number,
                        job_id=job_id,
                        occurred_at=now,
                    ),
                )

            if phase_number < FINAL_PHASE:
                next_phase = phase_number + 1
                r.open_phase(product_id, next_phase)
                next_job = None
                if product.status != ProductStatus.PAUSED:
                    next_job = self._scheduler.enqueue(
                        product_id, next_phase, priority, repo=r
                    )
                completion = PhaseCompletion(
                    product_id=product_id,
                    phase_number=phase_number,
                    changed=changed,
                    next_job=next_job,
                )
            else:
                product_completed = r.update_product_status(
                    product_id,
                    ProductStatus.COMPLETED,
                    only_if_status=[
                        ProductStatus.UPLOADING,
                        ProductStatus.PROCESSING,
                        ProductStatus.PAUSED,
                        ProductStatus.ERROR,
                    ],
                    is_pipeline_running=False,
                    requires_manual_review=False,
                    error_message=None,
                )
                if product_completed:
                    self._store.publish(
                        r,
                        PipelineEvent(
                            event_type=PipelineEventType.PRODUCT_COMPLETED,
                            product_id=product_id,
                            phase_number=phase_number,
                            job_id=job_id,
                            occurred_at=now,
                        ),
                    )
                completion = PhaseCompletion(
                    product_id=product_id,
                    phase_number=phase_number,
                    changed=changed,
                    product_completed=product_completed,
                )

        log_event(
            logger,
            logging.INFO,
            "phase_completed",
            product_id=product_id,
            phase_number=phase_number,
            changed=changed,
            next_job_id=completion.next_job.id if completion.next_job is not None else None,
            product_completed=completion.product_completed,
        )
        return completion

    def update_progress(
        self,
        product_id: uuid.UUID,
        phase_number: int,
        percentage: int,
        *,
        repo: PipelineRepository | None = None,
    ) -> bool:
        """Record executor progress; ignored unless the phase is running."""
        validate_phase_number(phase_number)
        clamped = max(0, min(100, int(percentage)))
        with self._store.use(repo) as r:
            return r.update_phase(
                product_id,
                phase_number,
                only_if_status=[PhaseStatus.RUNNING],
                progress_percentage=clamped,
            )

    def _start_refusal_reason(
        self,
        r: PipelineRepository,
        product_id: uuid.UUID,
        phase_number: int,
    ) -> str:
        phases = {phase.phase_number: phase for phase in r.list_phases(product_id)}
        phase = phases.get(phase_number)
        if phase is None:
            return "phase row does not exist"
        if phase.status not in (PhaseStatus.PENDING, PhaseStatus.FAILED):
            return f"phase is {phase.status.value}"
        previous = phases.get(phase_number - 1)
        if phase_number > FIRST_PHASE and (
            previous is None or previous.status != PhaseStatus.COMPLETED
        ):
            return f"phase {phase_number - 1} is not completed"
        running = [p.phase_number for p in phases.values() if p.status == PhaseStatus.RUNNING]
        if running:
            return f"phase {running[0]} is already running"
        return "start guard rejected the transition"
