"""
pipeline/retry.py

Retry & backoff for failed phase jobs.

A failure increments the job's ``retry_count``. While the count stays below
``max_retries`` the job is put back to ``pending`` with an exponential delay
(``base * 2 ** retry_count``); otherwise the job, its phase and the product
are marked failed and the product is flagged for manual review.

Every job write is guarded on the worker that owns the job, so a worker
that lost its lease (reaped, released) cannot overwrite a newer state.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from db.models.background_job import BackgroundJob
from db.models.enums import JobStatus, LogLevel, PhaseStatus, ProductStatus
from db.repositories.pipeline_repository import PipelineRepository
from pipeline.config import PipelineSettings, get_pipeline_settings
from pipeline.events import PipelineEvent, PipelineEventType
from pipeline.logging_utils import format_error, log_event
from pipeline.store import PipelineStore

logger = logging.getLogger(__name__)

_HELD_JOB_STATUSES: tuple[JobStatus, ...] = (JobStatus.RUNNING,)
_NOT_COMPLETED_PHASE_STATUSES = (PhaseStatus.PENDING, PhaseStatus.RUNNING, PhaseStatus.FAILED)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay_seconds=settings.retry_base_delay_seconds,
        )

    def delay_for(self, attempt: int) -> timedelta:
        """Backoff before retry ``attempt`` (1-based): ``base * 2 ** attempt``."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        return timedelta(seconds=self.base_delay_seconds * (2**attempt))

    def should_retry(self, retry_count: int, max_retries: int | None = None) -> bool:
        limit = self.max_retries if max_retries is None else max_retries
        return retry_count < limit


class RetryOutcome(str, Enum):
    RESCHEDULED = "rescheduled"
    PERMANENTLY_FAILED = "permanently_failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RetryDecision:
    outcome: RetryOutcome
    job_id: uuid.UUID
    retry_count: int
    error_message: str
    scheduled_at: datetime | None = None
    delay_seconds: float | None = None


class RetryController:
    def __init__(
        self,
        store: PipelineStore,
        *,
        policy: RetryPolicy | None = None,
        settings: PipelineSettings | None = None,
    ) -> None:
        self._store = store
        self.policy = policy or RetryPolicy.from_settings(settings or get_pipeline_settings())

    def handle_failure(
        self,
        job_id: uuid.UUID,
        *,
        worker_id: str | None,
        error: BaseException | str,
        expected_status: Sequence[JobStatus] = _HELD_JOB_STATUSES,
        repo: PipelineRepository | None = None,
    ) -> RetryDecision:
        """
        Record a failed attempt of ``job_id`` held by ``worker_id``.

        Only a job in ``expected_status`` is handled: ``running`` for a worker
        reporting its own failure, ``failed`` for the reaper hand-off made in
        the same transaction that forced the job to failed.

        Returns ``SKIPPED`` when the job no longer belongs to ``worker_id``
        or is not in an expected state.
        """

        expected = tuple(expected_status)

        error_message = format_error(error) if isinstance(error, BaseException) else str(error)

        with self._store.use(repo) as r:
            job = r.get_job(job_id)
            if (
                job is None
                or job.status not in expected
                or job.worker_id != worker_id
            ):
                log_event(
                    logger,
                    logging.WARNING,
                    "retry_skipped",
                    job_id=job_id,
                    worker_id=worker_id,
                    job_status=job.status.value if job is not None else None,
                    job_worker_id=job.worker_id if job is not None else None,
                )
                return RetryDecision(
                    outcome=RetryOutcome.SKIPPED,
                    job_id=job_id,
                    retry_count=job.retry_count if job is not None else 0,
                    error_message=error_message,
                )

            now = self._store.now()
            retry_count = job.retry_count + 1
            if self.policy.should_retry(retry_count, job.max_retries):
                return self._reschedule(
                    r, job, worker_id, expected, retry_count, error_message, now
                )
            return self._fail_permanently(
                r, job, worker_id, expected, retry_count, error_message, now
            )

    def _reschedule(
        self,
        r: PipelineRepository,
        job: BackgroundJob,
        worker_id: str | None,
        expected: tuple[JobStatus, ...],
        retry_count: int,
        error_message: str,
        now: datetime,
    ) -> RetryDecision:
        delay = self.policy.delay_for(retry_count)
        scheduled_at = now + delay

        updated = r.update_job(
            job.id,
            expected_status=expected,
            expected_worker_id=worker_id,
            status=JobStatus.PENDING,
            retry_count=retry_count,
            scheduled_at=scheduled_at,
            worker_id=None,
            started_at=None,
            completed_at=None,
            error_message=error_message,
        )
        if not updated:
            return RetryDecision(
                outcome=RetryOutcome.SKIPPED,
                job_id=job.id,
                retry_count=job.retry_count,
                error_message=error_message,
            )

        r.update_phase(
            job.product_id,
            job.phase_number,
            only_if_status=_NOT_COMPLETED_PHASE_STATUSES,
            status=PhaseStatus.PENDING,
            retry_count=retry_count,
            error_message=error_message,
        )
        r.insert_log(
            product_id=job.product_id,
            phase_number=job.phase_number,
            level=LogLevel.WARN,
            message=(
                f"Phase {job.phase_number} failed (attempt {retry_count}/{job.max_retries}), "
                f"retrying in {delay.total_seconds():g}s: {error_message}"
            ),
            action="retry_scheduled",
            details={
                "job_id": str(job.id),
                "retry_count": retry_count,
                "max_retries": job.max_retries,
                "delay_seconds": delay.total_seconds(),
                "scheduled_at": scheduled_at.isoformat(),
            },
        )
        log_event(
            logger,
            logging.WARNING,
            "retry_scheduled",
            job_id=job.id,
            product_id=job.product_id,
            phase_number=job.phase_number,
            retry_count=retry_count,
            delay_seconds=delay.total_seconds(),
        )
        return RetryDecision(
            outcome=RetryOutcome.RESCHEDULED,
            job_id=job.id,
            retry_count=retry_count,
            error_message=error_message,
            scheduled_at=scheduled_at,
            delay_seconds=delay.total_seconds(),
        )

    def _fail_permanently(
        self,
        r: PipelineRepository,
        job: BackgroundJob,
        worker_id: str | None,
        expected: tuple[JobStatus, ...],
        retry_count: int,
        error_message: str,
        now: datetime,
    ) -> RetryDecision:
        updated = r.update_job(
            job.id,
            expected_status=expected,
            expected_worker_id=worker_id,
            status=JobStatus.FAILED,
            retry_count=retry_count,
            completed_at=now,
            error_message=error_message,
        )
        if not updated:
            return RetryDecision(
                outcome=RetryOutcome.SKIPPED,
                job_id=job.id,
                retry_count=job.retry_count,
                error_message=error_message,
            )

        r.update_phase(
            job.product_id,
            job.phase_number,
            only_if_status=_NOT_COMPLETED_PHASE_STATUSES,
            status=PhaseStatus.FAILED,
            retry_count=retry_count,
            error_message=error_message,
        )
        r.update_product_status(
            job.product_id,
            ProductStatus.ERROR,
            is_pipeline_running=False,
            requires_manual_review=True,
            error_message=error_message,
        )
        r.insert_log(
            product_id=job.product_id,
            phase_number=job.phase_number,
            level=LogLevel.ERROR,
            message=(
                f"Phase {job.phase_number} failed after {retry_count} attempts; "
                f"manual review required: {error_message}"
            ),
            action="manual_review_required",
            details={
                "job_id": str(job.id),
                "retry_count": retry_count,
                "max_retries": job.max_retries,
            },
        )
        self._store.publish(
            r,
            PipelineEvent(
                event_type=PipelineEventType.PHASE_FAILED,
                product_id=job.product_id,
                phase_number=job.phase_number,
                job_id=job.id,
                error_message=error_message,
                occurred_at=now,
                details={"retry_count": retry_count},
            ),
        )
        log_event(
            logger,
            logging.ERROR,
            "manual_review_required",
            job_id=job.id,
            product_id=job.product_id,
            phase_number=job.phase_number,
            retry_count=retry_count,
            error=error_message,
        )
        return RetryDecision(
            outcome=RetryOutcome.PERMANENTLY_FAILED,
            job_id=job.id,
            retry_count=retry_count,
            error_message=error_message,
        )
