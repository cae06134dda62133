"""
tests/test_pipeline_service.py

Product lifecycle operations: submit, pause / resume, manual retry, reset,
on-demand stuck-phase repair and the status snapshot.
"""

from __future__ import annotations

import threading
import uuid

import pytest

from db.models import JobPriority, JobStatus, PhaseStatus, ProductStatus
from pipeline.errors import PipelineError, ProductNotFoundError


def _ok(phase_number: int):
    def _execute(product_id: uuid.UUID, cancel_event: threading.Event) -> dict:
        return {"phase": phase_number}

    return _execute


def _fail_permanently(harness, product_id: uuid.UUID) -> None:
    """Drive phase 1 of ``product_id`` into terminal failure."""
    with harness.store.transaction() as r:
        r.cancel_jobs(product_id, statuses=[JobStatus.PENDING], now=harness.clock(), reason="test")
    job = harness.scheduler.enqueue(product_id, 1, max_retries=1)
    harness.scheduler.claim_next("worker-a")
    harness.state_machine.start_phase(product_id, 1)
    harness.retry.handle_failure(job.id, worker_id="worker-a", error="supplier feed down")


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------


class TestSubmit:
    def test_creates_product_phases_and_first_job(self, harness) -> None:
        product = harness.service.submit_product(name="Oak shelf")

        assert product.name == "Oak shelf"
        assert product.status == ProductStatus.PROCESSING
        assert product.is_pipeline_running is True
        assert product.current_phase == 1

        phases = [harness.phase(product.id, number) for number in (1, 2, 3, 4)]
        assert [phase.status for phase in phases] == [PhaseStatus.PENDING] * 4
        assert [phase.can_start for phase in phases] == [True, False, False, False]
        assert phases[0].phase_name == "Product Analysis"

        jobs = harness.jobs(product.id)
        assert len(jobs) == 1
        assert jobs[0].phase_number == 1
        assert jobs[0].priority == JobPriority.NORMAL
        assert harness.log_actions(product.id) == ["start_pipeline"]

    def test_priority_is_applied_to_first_job(self, harness) -> None:
        product = harness.service.submit_product(priority="high")
        assert harness.jobs(product.id)[0].priority == JobPriority.HIGH


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------


class TestPauseResume:
    def test_pause_cancels_pending_jobs(self, harness) -> None:
        product_id = harness.new_product()

        cancelled = harness.service.pause_product(product_id)

        assert cancelled == 1
        assert harness.jobs(product_id)[0].status == JobStatus.CANCELLED
        product = harness.product(product_id)
        assert product.status == ProductStatus.PAUSED
        assert product.is_pipeline_running is False
        assert "pause_product" in harness.log_actions(product_id)

    def test_running_job_finishes_but_next_phase_waits(self, harness) -> None:
        product_id = harness.new_product()

        def _pause_mid_run(pid: uuid.UUID, cancel_event: threading.Event) -> dict:
            harness.service.pause_product(pid)
            return {"phase": 1}

        pool = harness.worker_pool({1: _pause_mid_run, 2: _ok(2)})
        pool.tick()

        assert harness.phase(product_id, 1).status == PhaseStatus.COMPLETED
        assert harness.phase(product_id, 2).can_start is True
        assert harness.jobs(product_id, JobStatus.PENDING) == []
        assert harness.product(product_id).status == ProductStatus.PAUSED

        job = harness.service.resume_product(product_id)

        assert job is not None
        assert job.phase_number == 2
        assert harness.product(product_id).status == ProductStatus.PROCESSING
        assert "resume_product" in harness.log_actions(product_id)

    def test_resume_requeues_unfinished_phase(self, harness) -> None:
        product_id = harness.new_product()
        harness.service.pause_product(product_id)

        job = harness.service.resume_product(product_id, priority=JobPriority.HIGH)

        assert job.phase_number == 1
        assert job.priority == JobPriority.HIGH
        product = harness.product(product_id)
        assert product.is_pipeline_running is True

    def test_pausing_completed_product_raises(self, harness) -> None:
        product_id = harness.bare_product(status=ProductStatus.COMPLETED)
        with pytest.raises(PipelineError):
            harness.service.pause_product(product_id)

    def test_resume_requires_paused_product(self, harness) -> None:
        product_id = harness.new_product()
        with pytest.raises(PipelineError):
            harness.service.resume_product(product_id)


# ---------------------------------------------------------------------------
# Manual retry
# ---------------------------------------------------------------------------


class TestRetry:
    def test_retry_after_permanent_failure(self, harness) -> None:
        product_id = harness.new_product()
        _fail_permanently(harness, product_id)
        assert harness.product(product_id).requires_manual_review is True

        job = harness.service.retry_product(product_id)

        assert job.phase_number == 1
        assert job.priority == JobPriority.HIGH
        assert job.retry_count == 0
        phase = harness.phase(product_id, 1)
        assert phase.status == PhaseStatus.PENDING
        assert phase.retry_count == 0
        assert phase.error_message is None
        product = harness.product(product_id)
        assert product.status == ProductStatus.PROCESSING
        assert product.requires_manual_review is False
        assert product.error_message is None
        assert "retry_product" in harness.log_actions(product_id)

    def test_retried_product_can_finish(self, harness) -> None:
        product_id = harness.new_product()
        _fail_permanently(harness, product_id)
        harness.service.retry_product(product_id)
        pool = harness.worker_pool({number: _ok(number) for number in (1, 2, 3, 4)})

        harness.drain(pool)

        assert harness.product(product_id).status == ProductStatus.COMPLETED

    def test_completed_product_has_nothing_to_retry(self, harness) -> None:
        product_id = harness.bare_product()
        for number in (1, 2, 3, 4):
            harness.state_machine.complete_phase(product_id, number)

        with pytest.raises(PipelineError):
            harness.service.retry_product(product_id)


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------


class TestReset:
    def test_reset_discards_progress(self, harness) -> None:
        product_id = harness.new_product()
        pool = harness.worker_pool(
            {1: _ok(1)},
            settings=harness.settings_with(max_concurrency=1),
        )
        pool.tick()
        assert harness.product(product_id).current_phase == 1
        assert harness.phase(product_id, 1).status == PhaseStatus.COMPLETED

        job = harness.service.reset_product(product_id)

        assert job.phase_number == 1
        statuses = [entry.status for entry in harness.jobs(product_id)]
        assert statuses.count(JobStatus.CANCELLED) == 1
        assert statuses.count(JobStatus.PENDING) == 1
        phases = [harness.phase(product_id, number) for number in (1, 2, 3, 4)]
        assert [phase.status for phase in phases] == [PhaseStatus.PENDING] * 4
        assert [phase.can_start for phase in phases] == [True, False, False, False]
        with harness.store.transaction() as r:
            assert r.has_phase_output(product_id, 1) is False
        product = harness.product(product_id)
        assert product.status == ProductStatus.PROCESSING
        assert product.current_phase == 1
        assert "reset_product" in harness.log_actions(product_id)

    def test_reset_lowers_current_phase(self, harness) -> None:
        product_id = harness.bare_product()
        harness.state_machine.complete_phase(product_id, 1)
        harness.state_machine.complete_phase(product_id, 2)
        harness.state_machine.start_phase(product_id, 3)
        assert harness.product(product_id).current_phase == 3

        harness.service.reset_product(product_id)

        assert harness.product(product_id).current_phase == 1

    def test_reset_recreates_missing_phase_rows(self, harness) -> None:
        product_id = harness.bare_product()
        with harness.store.transaction() as r:
            r.session.delete(r.get_phase(product_id, 4))

        harness.service.reset_product(product_id)

        assert harness.phase(product_id, 4) is not None
        assert harness.phase(product_id, 4).status == PhaseStatus.PENDING


# ---------------------------------------------------------------------------
# Stuck-phase repair
# ---------------------------------------------------------------------------


class TestFixStuckPhases:
    def test_repairs_and_resumes(self, harness) -> None:
        product_id = harness.bare_product()
        harness.save_output(product_id, 1)

        result = harness.service.fix_stuck_phases(product_id)

        assert result.reconcile.fixed_phases == [1]
        assert result.next_job is not None
        assert result.next_job.phase_number == 2

    def test_resume_can_be_disabled(self, harness) -> None:
        product_id = harness.bare_product()
        harness.save_output(product_id, 1)

        result = harness.service.fix_stuck_phases(product_id, resume=False)

        assert result.next_job is None
        assert harness.jobs(product_id) == []

    def test_paused_product_is_not_resumed(self, harness) -> None:
        product_id = harness.bare_product(status=ProductStatus.PAUSED)
        harness.save_output(product_id, 1)

        result = harness.service.fix_stuck_phases(product_id)

        assert result.reconcile.fixed_phases == [1]
        assert result.next_job is None

    def test_existing_job_is_not_duplicated(self, harness) -> None:
        product_id = harness.new_product()

        result = harness.service.fix_stuck_phases(product_id)

        assert result.reconcile.changed is False
        assert result.next_job is None
        assert len(harness.jobs(product_id)) == 1

    def test_unknown_product_raises(self, harness) -> None:
        with pytest.raises(ProductNotFoundError):
            harness.service.fix_stuck_phases(uuid.uuid4())


# ---------------------------------------------------------------------------
# Status snapshot
# ---------------------------------------------------------------------------


class TestStatusSnapshot:
    def test_snapshot_reflects_state(self, harness) -> None:
        product_id = harness.new_product(name="Linen throw")

        snapshot = harness.service.get_pipeline_status(product_id)

        assert snapshot.product_id == product_id
        assert snapshot.name == "Linen throw"
        assert snapshot.status == ProductStatus.PROCESSING
        assert snapshot.current_phase == 1
        assert [phase.phase_number for phase in snapshot.phases] == [1, 2, 3, 4]
        assert snapshot.active_job is not None
        assert snapshot.active_job.phase_number == 1
        assert snapshot.active_job.status == JobStatus.PENDING

    def test_snapshot_serialises_to_json(self, harness) -> None:
        product_id = harness.new_product()

        payload = harness.service.get_pipeline_status(product_id).model_dump(mode="json")

        assert payload["status"] == "processing"
        assert payload["phases"][0]["status"] == "pending"
        assert payload["active_job"]["priority"] == "normal"

    def test_unknown_product_raises(self, harness) -> None:
        with pytest.raises(ProductNotFoundError):
            harness.service.get_pipeline_status(uuid.uuid4())
