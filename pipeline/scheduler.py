"""
pipeline/scheduler.py

Job queue over the ``background_jobs`` table.

``enqueue`` is a single INSERT that the partial unique index turns into a
no-op when the (product, phase) pair already has a pending or running job.
``claim_next`` selects the best due candidate and takes it with a
compare-and-swap UPDATE; when another worker wins the race the selection is
repeated, up to ``claim_attempts`` times. No in-process lock is involved, so
any number of worker processes can share the queue.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from db.models.background_job import BackgroundJob
from db.models.enums import JobPriority, JobStatus, LogLevel, PhaseStatus, validate_phase_number
from db.repositories.pipeline_repository import PipelineRepository
from pipeline.config import PipelineSettings, get_pipeline_settings
from pipeline.logging_utils import log_event
from pipeline.store import PipelineStore

logger = logging.getLogger(__name__)


class JobScheduler:
    def __init__(
        self,
        store: PipelineStore,
        *,
        settings: PipelineSettings | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_pipeline_settings()

    def enqueue(
        self,
        product_id: uuid.UUID,
        phase_number: int,
        priority: JobPriority | str = JobPriority.NORMAL,
        *,
        scheduled_at: datetime | None = None,
        max_retries: int | None = None,
        repo: PipelineRepository | None = None,
    ) -> BackgroundJob | None:
        """
        Queue work for one phase of a product.

        Returns the new job, or ``None`` when an active job already exists
        for the pair.
        """

        validate_phase_number(phase_number)
        priority = JobPriority(priority)

        with self._store.use(repo) as r:
            job = r.insert_job(
                product_id=product_id,
                phase_number=phase_number,
                priority=priority,
                max_retries=max_retries if max_retries is not None else self._settings.max_retries,
                scheduled_at=scheduled_at or self._store.now(),
            )

        if job is None:
            log_event(
                logger,
                logging.DEBUG,
                "job_deduplicated",
                product_id=product_id,
                phase_number=phase_number,
            )
            return None

        log_event(
            logger,
            logging.INFO,
            "job_enqueued",
            job_id=job.id,
            product_id=product_id,
            phase_number=phase_number,
            priority=priority.value,
        )
        return job

    def claim_next(
        self,
        worker_id: str,
        *,
        repo: PipelineRepository | None = None,
    ) -> BackgroundJob | None:
        """
        Take ownership of the next due job, or return ``None`` if none is due.
        """

        for _ in range(self._settings.claim_attempts):
            with self._store.use(repo) as r:
                now = self._store.now()
                candidate = r.find_next_claimable(now)
                if candidate is None:
                    return None
                if r.claim_job(candidate.id, worker_id, now):
                    job = r.get_job(candidate.id)
                    log_event(
                        logger,
                        logging.INFO,
                        "job_claimed",
                        job_id=candidate.id,
                        worker_id=worker_id,
                        product_id=candidate.product_id,
                        phase_number=candidate.phase_number,
                    )
                    return job

            log_event(
                logger,
                logging.DEBUG,
                "claim_race_lost",
                job_id=candidate.id,
                worker_id=worker_id,
            )

        return None

    def release(
        self,
        job_id: uuid.UUID,
        worker_id: str,
        *,
        reason: str,
        repo: PipelineRepository | None = None,
    ) -> bool:
        """
        Hand a running job back to the queue without consuming a retry.
        Only the worker holding the lease can release it.
        """

        with self._store.use(repo) as r:
            job = r.get_job(job_id)
            if job is None:
                return False
            now = self._store.now()
            released = r.update_job(
                job_id,
                expected_status=[JobStatus.RUNNING],
                expected_worker_id=worker_id,
                status=JobStatus.PENDING,
                worker_id=None,
                started_at=None,
                scheduled_at=now,
            )
            if not released:
                return False
            r.update_phase(
                job.product_id,
                job.phase_number,
                only_if_status=[PhaseStatus.RUNNING],
                status=PhaseStatus.PENDING,
                started_at=None,
                progress_percentage=0,
            )
            r.insert_log(
                product_id=job.product_id,
                phase_number=job.phase_number,
                level=LogLevel.WARN,
                message=f"Phase {job.phase_number} job released back to queue: {reason}",
                action="job_released",
                details={"job_id": str(job_id), "worker_id": worker_id},
            )

        log_event(
            logger,
            logging.WARNING,
            "job_released",
            job_id=job_id,
            worker_id=worker_id,
            reason=reason,
        )
        return True

    def queue_counts(self, *, repo: PipelineRepository | None = None) -> dict[str, int]:
        with self._store.use(repo) as r:
            counts = r.count_jobs_by_status()
        return {status.value: count for status, count in counts.items()}
