"""
tests/test_stale_job_reaper.py

Stale running jobs are forced to failed and fed back through retry.
"""

from __future__ import annotations

from datetime import timedelta

from db.models import JobStatus, PhaseStatus, ProductStatus
from pipeline.events import PipelineEventType
from pipeline.retry import RetryOutcome


def _abandoned_job(harness, *, max_retries: int | None = None, worker_id: str = "worker-dead"):
    product_id = harness.bare_product()
    job = harness.scheduler.enqueue(product_id, 1, max_retries=max_retries)
    harness.scheduler.claim_next(worker_id)
    harness.state_machine.start_phase(product_id, 1)
    return product_id, job


class TestReap:
    def test_stale_job_is_rescheduled(self, harness) -> None:
        product_id, job = _abandoned_job(harness)
        harness.clock.advance(harness.settings.stale_job_threshold_seconds + 1)

        assert harness.reaper.reap() == 1

        stored = harness.job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 1
        assert stored.worker_id is None
        assert stored.scheduled_at == harness.clock() + timedelta(seconds=2)
        assert "StaleJobError" in stored.error_message
        assert harness.phase(product_id, 1).status == PhaseStatus.PENDING

        actions = harness.log_actions(product_id)
        assert "timeout_cleanup" in actions
        assert "retry_scheduled" in actions

    def test_recent_job_is_left_alone(self, harness) -> None:
        product_id, job = _abandoned_job(harness)
        harness.clock.advance(harness.settings.stale_job_threshold_seconds - 60)

        assert harness.reaper.reap() == 0

        stored = harness.job(job.id)
        assert stored.status == JobStatus.RUNNING
        assert stored.worker_id == "worker-dead"
        assert "timeout_cleanup" not in harness.log_actions(product_id)

    def test_pending_jobs_are_ignored(self, harness) -> None:
        harness.scheduler.enqueue(harness.bare_product(), 1)
        harness.clock.advance(harness.settings.stale_job_threshold_seconds * 2)

        assert harness.reaper.reap() == 0

    def test_exhausted_job_fails_terminally(self, harness) -> None:
        product_id, job = _abandoned_job(harness, max_retries=1)
        harness.clock.advance(harness.settings.stale_job_threshold_seconds + 1)

        assert harness.reaper.reap() == 1

        assert harness.job(job.id).status == JobStatus.FAILED
        assert harness.phase(product_id, 1).status == PhaseStatus.FAILED
        product = harness.product(product_id)
        assert product.status == ProductStatus.ERROR
        assert product.requires_manual_review is True
        assert [event.event_type for event in harness.received] == [PipelineEventType.PHASE_FAILED]

    def test_reaped_job_is_claimable_after_backoff(self, harness) -> None:
        _, job = _abandoned_job(harness)
        harness.clock.advance(harness.settings.stale_job_threshold_seconds + 1)
        harness.reaper.reap()

        assert harness.scheduler.claim_next("worker-live") is None
        harness.clock.advance(2)
        claimed = harness.scheduler.claim_next("worker-live")
        assert claimed.id == job.id
        assert claimed.worker_id == "worker-live"

    def test_second_pass_finds_nothing(self, harness) -> None:
        _abandoned_job(harness)
        harness.clock.advance(harness.settings.stale_job_threshold_seconds + 1)

        assert harness.reaper.reap() == 1
        assert harness.reaper.reap() == 0

    def test_every_stale_job_is_reaped(self, harness) -> None:
        for index in range(3):
            _abandoned_job(harness, worker_id=f"worker-{index}")
        harness.clock.advance(harness.settings.stale_job_threshold_seconds + 1)

        assert harness.reaper.reap() == 3

    def test_late_failure_from_reaped_worker_keeps_manual_retry(self, harness) -> None:
        product_id, job = _abandoned_job(harness, max_retries=1)
        harness.clock.advance(harness.settings.stale_job_threshold_seconds + 1)
        harness.reaper.reap()
        retried = harness.service.retry_product(product_id)
        harness.received.clear()

        decision = harness.retry.handle_failure(
            job.id, worker_id="worker-dead", error=RuntimeError("late")
        )

        assert decision.outcome == RetryOutcome.SKIPPED
        assert harness.job(job.id).retry_count == 1
        assert harness.job(retried.id).status == JobStatus.PENDING
        assert harness.phase(product_id, 1).status == PhaseStatus.PENDING
        product = harness.product(product_id)
        assert product.status == ProductStatus.PROCESSING
        assert product.requires_manual_review is False
        assert harness.received == []
        assert harness.log_actions(product_id).count("manual_review_required") == 1
