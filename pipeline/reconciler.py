"""
pipeline/reconciler.py

Aligns phase status with phase output that is already persisted.

For one product, phases are walked 1 -> 4. A phase that has an output row
but is not completed is forced to completed from that output; the walk
stops at the first phase without output so ordering is never skipped. The
reconciler never calls an executor, never marks anything running and never
enqueues jobs, so it does not contend with ``claim_next``. A run that finds
nothing stuck writes nothing.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from db.models.enums import (
    FINAL_PHASE,
    PHASE_NUMBERS,
    LogLevel,
    PhaseStatus,
    ProductStatus,
)
from db.repositories.pipeline_repository import PipelineRepository
from pipeline.errors import ProductNotFoundError
from pipeline.events import PipelineEvent, PipelineEventType
from pipeline.logging_utils import log_event
from pipeline.store import PipelineStore

logger = logging.getLogger(__name__)

_STUCK_PHASE_STATUSES = (PhaseStatus.PENDING, PhaseStatus.RUNNING, PhaseStatus.FAILED)


@dataclass(frozen=True)
class ReconcileResult:
    product_id: uuid.UUID
    fixed_phases: list[int] = field(default_factory=list)
    completed_through: int = 0
    product_completed: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.fixed_phases) or self.product_completed


class StuckPhaseReconciler:
    def __init__(self, store: PipelineStore) -> None:
        self._store = store

    def reconcile(
        self,
        product_id: uuid.UUID,
        *,
        repo: PipelineRepository | None = None,
    ) -> ReconcileResult:
        with self._store.use(repo) as r:
            if r.get_product(product_id) is None:
                raise ProductNotFoundError(product_id)

            now = self._store.now()
            phases = {phase.phase_number: phase for phase in r.list_phases(product_id)}
            fixed: list[int] = []
            completed_through = 0

            for phase_number in PHASE_NUMBERS:
                phase = phases.get(phase_number)
                if phase is None or not r.has_phase_output(product_id, phase_number):
                    break

                if phase.status != PhaseStatus.COMPLETED:
                    forced = r.update_phase(
                        product_id,
                        phase_number,
                        only_if_status=_STUCK_PHASE_STATUSES,
                        status=PhaseStatus.COMPLETED,
                        progress_percentage=100,
                        completed_at=now,
                        error_message=None,
                    )
                    if forced:
                        fixed.append(phase_number)
                        if phase_number < FINAL_PHASE:
                            r.open_phase(product_id, phase_number + 1)
                            r.advance_current_phase(product_id, phase_number + 1)
                        self._store.publish(
                            r,
                            PipelineEvent(
                                event_type=PipelineEventType.PHASE_COMPLETED,
                                product_id=product_id,
                                phase_number=phase_number,
                                occurred_at=now,
                                details={"source": "reconciler"},
                            ),
                        )
                completed_through = phase_number

            product_completed = False
            if completed_through == FINAL_PHASE:
                product_completed = r.update_product_status(
                    product_id,
                    ProductStatus.COMPLETED,
                    only_if_status=[
                        ProductStatus.UPLOADING,
                        ProductStatus.PROCESSING,
                        ProductStatus.PAUSED,
                        ProductStatus.ERROR,
                    ],
                    current_phase=FINAL_PHASE,
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
                            phase_number=FINAL_PHASE,
                            occurred_at=now,
                            details={"source": "reconciler"},
                        ),
                    )

            result = ReconcileResult(
                product_id=product_id,
                fixed_phases=fixed,
                completed_through=completed_through,
                product_completed=product_completed,
            )
            if result.changed:
                r.insert_log(
                    product_id=product_id,
                    phase_number=fixed[-1] if fixed else FINAL_PHASE,
                    level=LogLevel.INFO,
                    message=f"Completed {len(fixed)} stuck phases",
                    action="fix_stuck_phases",
                    details={
                        "fixed_phases": fixed,
                        "completed_through": completed_through,
                        "product_completed": product_completed,
                    },
                )

        if result.changed:
            log_event(
                logger,
                logging.INFO,
                "fix_stuck_phases",
                product_id=product_id,
                fixed_phases=fixed,
                product_completed=product_completed,
            )
        return result

    def reconcile_all(self, *, limit: int = 500) -> list[ReconcileResult]:
        """Reconcile every product holding output for a non-completed phase."""
        with self._store.transaction() as r:
            product_ids = r.list_product_ids_with_unreconciled_output(limit=limit)

        results: list[ReconcileResult] = []
        for product_id in product_ids:
            try:
                result = self.reconcile(product_id)
            except Exception:
                logger.exception("Stuck-phase reconcile failed product_id=%s", product_id)
                continue
            if result.changed:
                results.append(result)
        return results
