"""
pipeline/worker_pool.py

Bounded-concurrency worker pool.

``tick()`` fills idle capacity by claiming jobs and hands each claimed job
to the task executor. Processing a job runs in short transactions around
the executor call; no database transaction or lock is held while the
executor runs. Each executor call runs on its own daemon thread and is
bounded by ``executor_timeout_seconds``; on timeout or shutdown the call's
cancellation event is set, but the call is never preempted.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol

from db.models.background_job import BackgroundJob
from db.models.enums import JobStatus, LogLevel, PhaseStatus, ProductStatus
from db.repositories.pipeline_repository import PipelineRepository
from pipeline.config import PipelineSettings, generate_worker_id, get_pipeline_settings
from pipeline.errors import (
    JobValidationError,
    PhaseCancelledError,
    PhaseExecutionError,
    PhaseTimeoutError,
    PhaseTransitionError,
)
from pipeline.executors import ExecutorRegistry, PhaseExecutor
from pipeline.logging_utils import format_error, log_event
from pipeline.retry import RetryController, RetryOutcome
from pipeline.scheduler import JobScheduler
from pipeline.state_machine import PhaseStateMachine
from pipeline.store import PipelineStore

logger = logging.getLogger(__name__)

_UNSTARTABLE_PRODUCT_STATUSES = (
    ProductStatus.PAUSED,
    ProductStatus.COMPLETED,
    ProductStatus.PUBLISHED,
)


class TaskExecutor(Protocol):
    def submit(self, task: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        ...

    def shutdown(self, wait: bool = True) -> None:
        ...


class ThreadPoolTaskExecutor:
    def __init__(self, max_workers: int, thread_name_prefix: str = "pipeline-worker") -> None:
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix,
        )

    def submit(self, task: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        self._pool.submit(task, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


class InlineTaskExecutor:
    """Runs each task synchronously in the caller's thread."""

    def submit(self, task: Callable[..., None], *args: Any, **kwargs: Any) -> None:
        task(*args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        return None


@dataclass(frozen=True)
class WorkerPoolStats:
    worker_id: str
    running: bool
    max_concurrency: int
    in_flight: int
    processed_count: int
    error_count: int
    average_processing_seconds: float


class WorkerPool:
    def __init__(
        self,
        *,
        store: PipelineStore,
        scheduler: JobScheduler,
        state_machine: PhaseStateMachine,
        retry_controller: RetryController,
        executors: ExecutorRegistry,
        settings: PipelineSettings | None = None,
        task_executor: TaskExecutor | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._state_machine = state_machine
        self._retry = retry_controller
        self._executors = executors
        self._settings = settings or get_pipeline_settings()
        self.max_concurrency = self._settings.max_concurrency
        self.worker_id = worker_id or self._settings.worker_id or generate_worker_id()
        self._task_executor = task_executor or ThreadPoolTaskExecutor(self.max_concurrency)

        self._lock = threading.Lock()
        self._in_flight: dict[uuid.UUID, threading.Event] = {}
        self._stopping = threading.Event()
        self._processed_count = 0
        self._error_count = 0
        self._total_processing_seconds = 0.0

    @property
    def is_stopping(self) -> bool:
        return self._stopping.is_set()

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def tick(self) -> int:
        """Claim jobs up to the free capacity. Returns the number claimed."""
        if self._stopping.is_set():
            return 0

        with self._lock:
            capacity = self.max_concurrency - len(self._in_flight)

        claimed = 0
        for _ in range(max(0, capacity)):
            if self._stopping.is_set():
                break
            job = self._scheduler.claim_next(self.worker_id)
            if job is None:
                break

            cancel_event = threading.Event()
            with self._lock:
                self._in_flight[job.id] = cancel_event
            claimed += 1
            try:
                self._task_executor.submit(self._run_job, job, cancel_event)
            except RuntimeError:
                with self._lock:
                    self._in_flight.pop(job.id, None)
                self._scheduler.release(job.id, self.worker_id, reason="task executor unavailable")
                break

        return claimed

    def stop(self, *, wait: bool = True) -> None:
        """
        Stop claiming and signal cancellation to every in-flight executor call.
        """

        self._stopping.set()
        with self._lock:
            events = list(self._in_flight.values())
        for cancel_event in events:
            cancel_event.set()
        log_event(
            logger,
            logging.INFO,
            "worker_pool_stopping",
            worker_id=self.worker_id,
            in_flight=len(events),
        )
        self._task_executor.shutdown(wait=wait)

    def get_stats(self) -> WorkerPoolStats:
        with self._lock:
            processed = self._processed_count
            errors = self._error_count
            total_seconds = self._total_processing_seconds
            in_flight = len(self._in_flight)
        return WorkerPoolStats(
            worker_id=self.worker_id,
            running=not self._stopping.is_set(),
            max_concurrency=self.max_concurrency,
            in_flight=in_flight,
            processed_count=processed,
            error_count=errors,
            average_processing_seconds=total_seconds / processed if processed else 0.0,
        )

    # ------------------------------------------------------------------
    # Job processing
    # ------------------------------------------------------------------

    def _run_job(self, job: BackgroundJob, cancel_event: threading.Event) -> None:
        started = time.monotonic()
        succeeded = False
        try:
            succeeded = self._process_job(job, cancel_event)
        except Exception:
            logger.exception(
                "Unhandled error while processing job id=%s worker_id=%s",
                job.id,
                self.worker_id,
            )
        finally:
            elapsed = time.monotonic() - started
            with self._lock:
                self._in_flight.pop(job.id, None)
                self._processed_count += 1
                self._total_processing_seconds += elapsed
                if not succeeded:
                    self._error_count += 1

    def _process_job(self, job: BackgroundJob, cancel_event: threading.Event) -> bool:
        try:
            executor = self._start_job(job)
        except JobValidationError as exc:
            self._reject_job(job, exc)
            return False
        if executor is None:
            return True

        try:
            output = self._call_executor(executor, job, cancel_event)
        except PhaseCancelledError as exc:
            self._release_job(job, exc)
            return False
        except Exception as exc:
            self._fail_job(job, exc)
            return False

        try:
            if not self._save_output(job, output):
                return False
        except Exception as exc:
            logger.exception("Failed to persist phase output job_id=%s", job.id)
            self._fail_job(job, exc)
            return False

        return self._complete_job(job)

    def _start_job(self, job: BackgroundJob) -> PhaseExecutor | None:
        """
        Validate the claimed job and mark its phase running.

        Returns ``None`` when the phase was already completed from saved
        output (reconciler, or a crash after the output was persisted). The
        job is then settled and the next phase handed off without running
        the executor again.
        """

        try:
            with self._store.transaction() as r:
                product = r.get_product(job.product_id)
                if product is None:
                    raise JobValidationError(f"Product not found: {job.product_id}")
                if product.status in _UNSTARTABLE_PRODUCT_STATUSES:
                    raise JobValidationError(
                        f"Product {job.product_id} is {product.status.value}; phase cannot start"
                    )
                phase = r.get_phase(job.product_id, job.phase_number)
                if phase is None:
                    raise JobValidationError(
                        f"Phase {job.phase_number} of product {job.product_id} does not exist"
                    )
                if phase.status == PhaseStatus.COMPLETED:
                    self._settle_job(
                        r,
                        job,
                        message=f"Phase {job.phase_number} already completed; job settled",
                        action="complete_phase_recovered",
                    )
                    return None

                executor = self._executors.get(job.phase_number)
                if executor is None:
                    raise JobValidationError(f"No executor registered for phase {job.phase_number}")

                self._state_machine.start_phase(job.product_id, job.phase_number, repo=r)
                r.insert_log(
                    product_id=job.product_id,
                    phase_number=job.phase_number,
                    level=LogLevel.INFO,
                    message=f"Starting phase {job.phase_number}",
                    action="start_phase",
                    details={
                        "job_id": str(job.id),
                        "worker_id": self.worker_id,
                        "attempt": job.retry_count + 1,
                    },
                )
        except PhaseTransitionError as exc:
            raise JobValidationError(str(exc)) from exc

        log_event(
            logger,
            logging.INFO,
            "start_phase",
            job_id=job.id,
            product_id=job.product_id,
            phase_number=job.phase_number,
            worker_id=self.worker_id,
        )
        return executor

    def _call_executor(
        self,
        executor: PhaseExecutor,
        job: BackgroundJob,
        cancel_event: threading.Event,
    ) -> Mapping[str, Any]:
        outcome: dict[str, Any] = {}

        def _target() -> None:
            try:
                outcome["output"] = executor.execute(job.product_id, cancel_event)
            except Exception as exc:
                outcome["error"] = exc

        timeout = self._settings.executor_timeout_seconds
        thread = threading.Thread(
            target=_target,
            name=f"phase-{job.phase_number}-{job.id}",
            daemon=True,
        )
        thread.start()
        thread.join(timeout)
        if thread.is_alive():
            cancel_event.set()
            raise PhaseTimeoutError(job.phase_number, timeout)

        if "error" in outcome:
            raise outcome["error"]

        output = outcome.get("output")
        if not isinstance(output, Mapping):
            raise PhaseExecutionError(
                f"Phase {job.phase_number} executor returned {type(output).__name__}, expected a mapping"
            )
        return output

    def _save_output(self, job: BackgroundJob, output: Mapping[str, Any]) -> bool:
        """
        Persist the executor output while the lease is still held. Committed
        ahead of, and separately from, phase completion.
        """

        with self._store.transaction() as r:
            # Touching the job row under the lease guard also locks it until commit.
            owned = r.update_job(
                job.id,
                expected_status=[JobStatus.RUNNING],
                expected_worker_id=self.worker_id,
                error_message=None,
            )
            if not owned:
                log_event(
                    logger,
                    logging.WARNING,
                    "lease_lost",
                    job_id=job.id,
                    product_id=job.product_id,
                    phase_number=job.phase_number,
                    worker_id=self.worker_id,
                )
                return False
            r.save_phase_output(job.product_id, job.phase_number, dict(output))
        return True

    def _complete_job(self, job: BackgroundJob) -> bool:
        with self._store.transaction() as r:
            return self._settle_job(
                r,
                job,
                message=f"Completed phase {job.phase_number}",
                action="complete_phase",
            )

    def _settle_job(
        self,
        r: PipelineRepository,
        job: BackgroundJob,
        *,
        message: str,
        action: str,
    ) -> bool:
        """Mark the held job completed and hand off to the next phase."""
        now = self._store.now()
        owned = r.update_job(
            job.id,
            expected_status=[JobStatus.RUNNING],
            expected_worker_id=self.worker_id,
            status=JobStatus.COMPLETED,
            completed_at=now,
            error_message=None,
        )
        if not owned:
            log_event(
                logger,
                logging.WARNING,
                "lease_lost",
                job_id=job.id,
                product_id=job.product_id,
                phase_number=job.phase_number,
                worker_id=self.worker_id,
            )
            return False

        completion = self._state_machine.complete_phase(
            job.product_id,
            job.phase_number,
            priority=job.priority,
            job_id=job.id,
            repo=r,
        )
        r.insert_log(
            product_id=job.product_id,
            phase_number=job.phase_number,
            level=LogLevel.INFO,
            message=message,
            action=action,
            details={
                "job_id": str(job.id),
                "worker_id": self.worker_id,
                "next_job_id": str(completion.next_job.id) if completion.next_job else None,
            },
        )
        if completion.product_completed:
            r.insert_log(
                product_id=job.product_id,
                phase_number=job.phase_number,
                level=LogLevel.INFO,
                message="All phases completed",
                action="complete_product",
            )

        log_event(
            logger,
            logging.INFO,
            action,
            job_id=job.id,
            product_id=job.product_id,
            phase_number=job.phase_number,
            worker_id=self.worker_id,
        )
        return True

    def _fail_job(self, job: BackgroundJob, exc: Exception) -> None:
        error_message = format_error(exc)
        with self._store.transaction() as r:
            decision = self._retry.handle_failure(
                job.id,
                worker_id=self.worker_id,
                error=exc,
                repo=r,
            )
            if decision.outcome != RetryOutcome.SKIPPED:
                r.insert_log(
                    product_id=job.product_id,
                    phase_number=job.phase_number,
                    level=LogLevel.ERROR,
                    message=f"Phase {job.phase_number} error: {error_message}",
                    action="phase_error",
                    details={
                        "job_id": str(job.id),
                        "worker_id": self.worker_id,
                        "outcome": decision.outcome.value,
                        "retry_count": decision.retry_count,
                    },
                )

        log_event(
            logger,
            logging.ERROR,
            "phase_error",
            job_id=job.id,
            product_id=job.product_id,
            phase_number=job.phase_number,
            worker_id=self.worker_id,
            outcome=decision.outcome.value,
            error=error_message,
        )

    def _reject_job(self, job: BackgroundJob, exc: JobValidationError) -> None:
        error_message = format_error(exc)
        with self._store.transaction() as r:
            now = self._store.now()
            r.update_job(
                job.id,
                expected_status=[JobStatus.RUNNING],
                expected_worker_id=self.worker_id,
                status=JobStatus.FAILED,
                completed_at=now,
                error_message=error_message,
            )
            if r.get_product(job.product_id) is not None:
                r.insert_log(
                    product_id=job.product_id,
                    phase_number=job.phase_number,
                    level=LogLevel.ERROR,
                    message=f"Job rejected: {error_message}",
                    action="job_rejected",
                    details={"job_id": str(job.id), "worker_id": self.worker_id},
                )

        log_event(
            logger,
            logging.ERROR,
            "job_rejected",
            job_id=job.id,
            product_id=job.product_id,
            phase_number=job.phase_number,
            error=error_message,
        )

    def _release_job(self, job: BackgroundJob, exc: PhaseCancelledError) -> None:
        reason = str(exc) or "executor cancelled"
        if not self._scheduler.release(job.id, self.worker_id, reason=reason):
            log_event(
                logger,
                logging.WARNING,
                "lease_lost",
                job_id=job.id,
                worker_id=self.worker_id,
            )
