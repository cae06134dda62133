"""
pipeline/reaper.py

Recovers jobs abandoned by crashed or hung workers.

A running job whose ``started_at`` is older than the stale threshold is
forced to ``failed`` and then fed to the retry controller as if its
executor had raised, so the usual retry / terminal-failure rules apply.
Each job is handled in its own transaction; one bad job never stops a pass.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from db.models.background_job import BackgroundJob
from db.models.enums import JobStatus, LogLevel
from pipeline.config import PipelineSettings, get_pipeline_settings
from pipeline.errors import StaleJobError
from pipeline.logging_utils import log_event
from pipeline.retry import RetryController
from pipeline.store import PipelineStore

logger = logging.getLogger(__name__)


class StaleJobReaper:
    def __init__(
        self,
        store: PipelineStore,
        retry_controller: RetryController,
        *,
        settings: PipelineSettings | None = None,
        batch_size: int = 100,
    ) -> None:
        self._store = store
        self._retry = retry_controller
        self._settings = settings or get_pipeline_settings()
        self._batch_size = batch_size

    @property
    def threshold(self) -> timedelta:
        return timedelta(seconds=self._settings.stale_job_threshold_seconds)

    def reap(self) -> int:
        """Run one pass. Returns the number of jobs reaped."""
        cutoff = self._store.now() - self.threshold
        with self._store.transaction() as r:
            stale_jobs = r.list_stale_running_jobs(cutoff, limit=self._batch_size)

        reaped = 0
        for job in stale_jobs:
            try:
                if self._reap_job(job):
                    reaped += 1
            except Exception:
                logger.exception("Failed to reap stale job id=%s", job.id)

        if reaped:
            log_event(logger, logging.WARNING, "stale_jobs_reaped", count=reaped)
        return reaped

    def _reap_job(self, job: BackgroundJob) -> bool:
        error = StaleJobError(job.id, job.worker_id, self._settings.stale_job_threshold_seconds)
        with self._store.transaction() as r:
            now = self._store.now()
            forced = r.update_job(
                job.id,
                expected_status=[JobStatus.RUNNING],
                expected_worker_id=job.worker_id,
                status=JobStatus.FAILED,
                completed_at=now,
                error_message=str(error),
            )
            if not forced:
                return False

            r.insert_log(
                product_id=job.product_id,
                phase_number=job.phase_number,
                level=LogLevel.ERROR,
                message=f"Phase {job.phase_number} job timed out and was cleaned up: {error}",
                action="timeout_cleanup",
                details={
                    "job_id": str(job.id),
                    "worker_id": job.worker_id,
                    "started_at": job.started_at.isoformat() if job.started_at else None,
                    "threshold_seconds": self._settings.stale_job_threshold_seconds,
                },
            )
            decision = self._retry.handle_failure(
                job.id,
                worker_id=job.worker_id,
                error=error,
                expected_status=[JobStatus.FAILED],
                repo=r,
            )

        log_event(
            logger,
            logging.WARNING,
            "timeout_cleanup",
            job_id=job.id,
            product_id=job.product_id,
            phase_number=job.phase_number,
            worker_id=job.worker_id,
            outcome=decision.outcome.value,
        )
        return True
