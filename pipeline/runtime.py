"""
pipeline/runtime.py

Process-level wiring of the engine.

``PipelineRuntime`` builds every component around one ``PipelineStore`` and
drives the periodic work from an APScheduler ``BackgroundScheduler``:

  worker_poll             - WorkerPool.tick, every poll_interval_seconds
  stale_job_reaper        - StaleJobReaper.reap, every reaper_interval_seconds
  stuck_phase_reconciler  - StuckPhaseReconciler.reconcile_all, every
                            reconcile_interval_seconds (disabled when 0)

Each job runs with ``max_instances=1`` and ``coalesce=True`` so a slow pass
never overlaps itself. ``stop()`` shuts the scheduler down and propagates
cancellation into every in-flight executor call.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session, sessionmaker

from db.base import utcnow
from pipeline.config import PipelineSettings, get_pipeline_settings
from pipeline.events import PipelineEventHub
from pipeline.executors import ExecutorRegistry
from pipeline.reaper import StaleJobReaper
from pipeline.reconciler import StuckPhaseReconciler
from pipeline.retry import RetryController
from pipeline.scheduler import JobScheduler
from pipeline.service import PipelineService
from pipeline.state_machine import PhaseStateMachine
from pipeline.store import Clock, PipelineStore
from pipeline.worker_pool import TaskExecutor, WorkerPool

logger = logging.getLogger(__name__)


class PipelineRuntime:
    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        executors: ExecutorRegistry,
        settings: PipelineSettings | None = None,
        events: PipelineEventHub | None = None,
        task_executor: TaskExecutor | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or get_pipeline_settings()
        self.store = PipelineStore(session_factory, clock=clock or utcnow, events=events)
        self.executors = executors
        self.events = self.store.events

        self.job_scheduler = JobScheduler(self.store, settings=self.settings)
        self.state_machine = PhaseStateMachine(self.store, self.job_scheduler)
        self.retry_controller = RetryController(self.store, settings=self.settings)
        self.worker_pool = WorkerPool(
            store=self.store,
            scheduler=self.job_scheduler,
            state_machine=self.state_machine,
            retry_controller=self.retry_controller,
            executors=executors,
            settings=self.settings,
            task_executor=task_executor,
        )
        self.reaper = StaleJobReaper(self.store, self.retry_controller, settings=self.settings)
        self.reconciler = StuckPhaseReconciler(self.store)
        self.service = PipelineService(self.store, self.job_scheduler, self.reconciler)

        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def build_scheduler(self) -> BackgroundScheduler:
        """
        Returns a configured but *not yet started* ``BackgroundScheduler``.
        """

        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self._run_worker_poll,
            trigger="interval",
            seconds=self.settings.poll_interval_seconds,
            id="worker_poll",
            name="Pipeline worker poll",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self._run_reaper,
            trigger="interval",
            seconds=self.settings.reaper_interval_seconds,
            id="stale_job_reaper",
            name="Stale job reaper",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self.settings.reconcile_enabled:
            scheduler.add_job(
                self._run_reconciler,
                trigger="interval",
                seconds=self.settings.reconcile_interval_seconds,
                id="stuck_phase_reconciler",
                name="Stuck-phase reconciler",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        return scheduler

    def start(self) -> None:
        if self.running:
            return
        missing = self.executors.missing_phases()
        if missing:
            logger.warning(
                "Pipeline runtime starting without executors for phases %s; "
                "their jobs will be rejected",
                missing,
            )
        self._scheduler = self.build_scheduler()
        self._scheduler.start()
        logger.info(
            "Pipeline runtime started worker_id=%s max_concurrency=%s",
            self.worker_pool.worker_id,
            self.worker_pool.max_concurrency,
        )

    def stop(self, *, wait: bool = True) -> None:
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=wait)
            self._scheduler = None
        self.worker_pool.stop(wait=wait)
        logger.info("Pipeline runtime stopped worker_id=%s", self.worker_pool.worker_id)

    def _run_worker_poll(self) -> None:
        try:
            self.worker_pool.tick()
        except Exception:
            logger.exception("Scheduler: worker_poll failed")

    def _run_reaper(self) -> None:
        try:
            self.reaper.reap()
        except Exception:
            logger.exception("Scheduler: stale_job_reaper failed")

    def _run_reconciler(self) -> None:
        try:
            results = self.reconciler.reconcile_all()
        except Exception:
            logger.exception("Scheduler: stuck_phase_reconciler failed")
            return
        if results:
            logger.info("Scheduler: stuck_phase_reconciler repaired %s products", len(results))
