"""
tests/conftest.py

Shared fixtures for pipeline engine tests.

Single-threaded tests run against an in-memory SQLite database shared
through ``StaticPool``. Tests that touch the database from several threads
use a file-backed SQLite database instead so each thread gets its own
connection. Time is driven by ``FakeClock`` so backoff and stale thresholds
can be crossed without sleeping.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterator
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.base import Base
from db.models import BackgroundJob, JobStatus, PipelinePhase, Product, ProductStatus
from db.session import create_session_factory
from pipeline.config import PipelineSettings
from pipeline.events import PipelineEvent, PipelineEventHub
from pipeline.executors import ExecutorRegistry
from pipeline.reaper import StaleJobReaper
from pipeline.reconciler import StuckPhaseReconciler
from pipeline.retry import RetryController
from pipeline.scheduler import JobScheduler
from pipeline.service import PipelineService
from pipeline.state_machine import PhaseStateMachine
from pipeline.store import PipelineStore
from pipeline.worker_pool import InlineTaskExecutor, TaskExecutor, WorkerPool


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


def make_settings(**overrides: Any) -> PipelineSettings:
    values: dict[str, Any] = {
        "max_concurrency": 3,
        "poll_interval_seconds": 0.1,
        "executor_timeout_seconds": 5.0,
        "max_retries": 3,
        "retry_base_delay_seconds": 1.0,
        "stale_job_threshold_seconds": 1800.0,
        "reaper_interval_seconds": 60.0,
        "reconcile_interval_seconds": 300.0,
        "claim_attempts": 5,
        "worker_id": "worker-test",
    }
    values.update(overrides)
    return PipelineSettings(**values)


class PipelineHarness:
    """Component graph built around one store, plus query shortcuts for assertions."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: FakeClock,
        settings: PipelineSettings,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.settings = settings
        self.events = PipelineEventHub()
        self.received: list[PipelineEvent] = []
        self.events.subscribe(self.received.append)
        self.store = PipelineStore(session_factory, clock=clock, events=self.events)
        self.scheduler = JobScheduler(self.store, settings=settings)
        self.state_machine = PhaseStateMachine(self.store, self.scheduler)
        self.retry = RetryController(self.store, settings=settings)
        self.reaper = StaleJobReaper(self.store, self.retry, settings=settings)
        self.reconciler = StuckPhaseReconciler(self.store)
        self.service = PipelineService(self.store, self.scheduler, self.reconciler)

    def settings_with(self, **overrides: Any) -> PipelineSettings:
        return replace(self.settings, **overrides)

    def worker_pool(
        self,
        executors: dict[int, Callable[..., Any]] | ExecutorRegistry,
        *,
        settings: PipelineSettings | None = None,
        task_executor: TaskExecutor | None = None,
        worker_id: str = "worker-test",
    ) -> WorkerPool:
        registry = executors if isinstance(executors, ExecutorRegistry) else ExecutorRegistry(executors)
        return WorkerPool(
            store=self.store,
            scheduler=self.scheduler,
            state_machine=self.state_machine,
            retry_controller=self.retry,
            executors=registry,
            settings=settings or self.settings,
            task_executor=task_executor or InlineTaskExecutor(),
            worker_id=worker_id,
        )

    def new_product(self, **kwargs: Any) -> uuid.UUID:
        return self.service.submit_product(**kwargs).id

    def bare_product(self, status: ProductStatus = ProductStatus.PROCESSING) -> uuid.UUID:
        """Product with its four phase rows but no queued job."""
        with self.store.transaction() as r:
            product = r.create_product(status=status, is_pipeline_running=True)
            r.create_phases(product.id)
            return product.id

    def drain(self, pool: WorkerPool, max_ticks: int = 20) -> int:
        """Tick until nothing is claimable; returns the total number claimed."""
        total = 0
        for _ in range(max_ticks):
            claimed = pool.tick()
            if claimed == 0:
                break
            total += claimed
        return total

    def job(self, job_id: uuid.UUID) -> BackgroundJob:
        with self.store.transaction() as r:
            job = r.get_job(job_id)
        assert job is not None
        return job

    def jobs(self, product_id: uuid.UUID, status: JobStatus | None = None) -> list[BackgroundJob]:
        with self.store.transaction() as r:
            return r.list_jobs(product_id=product_id, status=status)

    def phase(self, product_id: uuid.UUID, phase_number: int) -> PipelinePhase:
        with self.store.transaction() as r:
            return r.get_phase(product_id, phase_number)

    def product(self, product_id: uuid.UUID) -> Product:
        with self.store.transaction() as r:
            return r.get_product(product_id)

    def log_actions(self, product_id: uuid.UUID) -> list[str]:
        with self.store.transaction() as r:
            return [entry.action for entry in r.list_logs(product_id)]

    def save_output(self, product_id: uuid.UUID, phase_number: int, data: dict[str, Any] | None = None) -> None:
        with self.store.transaction() as r:
            r.save_phase_output(product_id, phase_number, data or {"phase": phase_number})

    def set_job_created_at(self, job_id: uuid.UUID, created_at: datetime) -> None:
        with self.store.transaction() as r:
            r.session.execute(
                update(BackgroundJob)
                .where(BackgroundJob.id == job_id)
                .values(created_at=created_at)
                .execution_options(synchronize_session=False)
            )


@pytest.fixture()
def memory_engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def file_engine(tmp_path: Path) -> Iterator[Engine]:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'pipeline.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> PipelineSettings:
    return make_settings()


@pytest.fixture()
def harness(memory_engine: Engine, clock: FakeClock, settings: PipelineSettings) -> PipelineHarness:
    return PipelineHarness(create_session_factory(memory_engine), clock, settings)


@pytest.fixture()
def threaded_harness(file_engine: Engine, clock: FakeClock, settings: PipelineSettings) -> PipelineHarness:
    return PipelineHarness(create_session_factory(file_engine), clock, settings)
