"""
tests/test_stuck_phase_reconciler.py

Phase status is aligned with persisted output, in phase order, without
enqueueing work and without writing anything when nothing is stuck.
"""

from __future__ import annotations

import threading
import uuid

import pytest

from db.models import JobStatus, PhaseStatus, ProductStatus
from pipeline.errors import ProductNotFoundError
from pipeline.events import PipelineEventType


# ---------------------------------------------------------------------------
# Single product
# ---------------------------------------------------------------------------


class TestReconcile:
    def test_phases_with_output_are_completed(self, harness) -> None:
        product_id = harness.bare_product()
        with harness.store.transaction() as r:
            r.update_phase(product_id, 2, status=PhaseStatus.RUNNING)
        harness.save_output(product_id, 1)
        harness.save_output(product_id, 2)

        result = harness.reconciler.reconcile(product_id)

        assert result.fixed_phases == [1, 2]
        assert result.completed_through == 2
        assert result.product_completed is False
        assert result.changed is True
        for number in (1, 2):
            phase = harness.phase(product_id, number)
            assert phase.status == PhaseStatus.COMPLETED
            assert phase.progress_percentage == 100
            assert phase.completed_at == harness.clock()
        assert harness.phase(product_id, 3).status == PhaseStatus.PENDING
        assert harness.phase(product_id, 3).can_start is True
        assert harness.product(product_id).current_phase == 3
        assert harness.log_actions(product_id) == ["fix_stuck_phases"]

    def test_reconcile_never_enqueues(self, harness) -> None:
        product_id = harness.bare_product()
        harness.save_output(product_id, 1)

        harness.reconciler.reconcile(product_id)

        assert harness.jobs(product_id) == []

    def test_events_are_tagged_with_source(self, harness) -> None:
        product_id = harness.bare_product()
        harness.save_output(product_id, 1)

        harness.reconciler.reconcile(product_id)

        assert len(harness.received) == 1
        event = harness.received[0]
        assert event.event_type == PipelineEventType.PHASE_COMPLETED
        assert event.phase_number == 1
        assert event.details == {"source": "reconciler"}

    def test_second_run_is_a_no_op(self, harness) -> None:
        product_id = harness.bare_product()
        harness.save_output(product_id, 1)
        harness.reconciler.reconcile(product_id)
        phase_updated_at = harness.phase(product_id, 1).updated_at
        product_updated_at = harness.product(product_id).updated_at
        harness.clock.advance(600)

        again = harness.reconciler.reconcile(product_id)

        assert again.changed is False
        assert again.fixed_phases == []
        assert again.completed_through == 1
        assert harness.log_actions(product_id) == ["fix_stuck_phases"]
        assert harness.phase(product_id, 1).updated_at == phase_updated_at
        assert harness.product(product_id).updated_at == product_updated_at
        assert len(harness.received) == 1

    def test_walk_stops_at_first_gap(self, harness) -> None:
        product_id = harness.bare_product()
        harness.save_output(product_id, 1)
        harness.save_output(product_id, 3)

        result = harness.reconciler.reconcile(product_id)

        assert result.fixed_phases == [1]
        assert result.completed_through == 1
        assert harness.phase(product_id, 3).status == PhaseStatus.PENDING

    def test_nothing_stuck_writes_nothing(self, harness) -> None:
        product_id = harness.bare_product()

        result = harness.reconciler.reconcile(product_id)

        assert result.changed is False
        assert result.completed_through == 0
        assert harness.log_actions(product_id) == []

    def test_failed_phase_with_output_is_completed(self, harness) -> None:
        product_id = harness.bare_product(status=ProductStatus.ERROR)
        with harness.store.transaction() as r:
            r.update_phase(product_id, 1, status=PhaseStatus.FAILED, error_message="boom")
        harness.save_output(product_id, 1)

        result = harness.reconciler.reconcile(product_id)

        assert result.fixed_phases == [1]
        phase = harness.phase(product_id, 1)
        assert phase.status == PhaseStatus.COMPLETED
        assert phase.error_message is None

    def test_all_outputs_complete_the_product(self, harness) -> None:
        product_id = harness.bare_product()
        for number in (1, 2, 3, 4):
            harness.save_output(product_id, number)

        result = harness.reconciler.reconcile(product_id)

        assert result.fixed_phases == [1, 2, 3, 4]
        assert result.product_completed is True
        product = harness.product(product_id)
        assert product.status == ProductStatus.COMPLETED
        assert product.current_phase == 4
        assert product.is_pipeline_running is False
        event_types = [event.event_type for event in harness.received]
        assert event_types.count(PipelineEventType.PHASE_COMPLETED) == 4
        assert event_types[-1] == PipelineEventType.PRODUCT_COMPLETED

    def test_published_product_keeps_its_status(self, harness) -> None:
        product_id = harness.bare_product(status=ProductStatus.PUBLISHED)
        for number in (1, 2, 3, 4):
            harness.save_output(product_id, number)

        result = harness.reconciler.reconcile(product_id)

        assert result.fixed_phases == [1, 2, 3, 4]
        assert result.product_completed is False
        assert harness.product(product_id).status == ProductStatus.PUBLISHED

    def test_unknown_product_raises(self, harness) -> None:
        with pytest.raises(ProductNotFoundError):
            harness.reconciler.reconcile(uuid.uuid4())


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


class TestReconcileAll:
    def test_only_stuck_products_are_reported(self, harness) -> None:
        stuck_a = harness.bare_product()
        stuck_b = harness.bare_product()
        healthy = harness.bare_product()
        harness.save_output(stuck_a, 1)
        harness.save_output(stuck_b, 1)
        harness.save_output(stuck_b, 2)

        results = harness.reconciler.reconcile_all()

        by_product = {result.product_id: result for result in results}
        assert set(by_product) == {stuck_a, stuck_b}
        assert by_product[stuck_b].fixed_phases == [1, 2]
        assert harness.log_actions(healthy) == []

    def test_second_sweep_is_empty(self, harness) -> None:
        product_id = harness.bare_product()
        harness.save_output(product_id, 1)

        assert len(harness.reconciler.reconcile_all()) == 1
        assert harness.reconciler.reconcile_all() == []

    def test_gap_product_is_not_reported(self, harness) -> None:
        product_id = harness.bare_product()
        harness.save_output(product_id, 2)

        assert harness.reconciler.reconcile_all() == []
        assert harness.phase(product_id, 2).status == PhaseStatus.PENDING


# ---------------------------------------------------------------------------
# Hand-off to the worker pool
# ---------------------------------------------------------------------------


def _recording_executors(calls: list[int]) -> dict:
    def _make(number: int):
        def _execute(product_id: uuid.UUID, cancel_event: threading.Event) -> dict:
            calls.append(number)
            return {"phase": number}

        return _execute

    return {number: _make(number) for number in (1, 2, 3, 4)}


class TestWorkerHandOff:
    def test_pending_job_of_reconciled_phase_lets_product_finish(self, harness) -> None:
        calls: list[int] = []
        pool = harness.worker_pool(_recording_executors(calls))
        product_id = harness.new_product()
        harness.save_output(product_id, 1)
        harness.reconciler.reconcile_all()

        harness.drain(pool)

        assert calls == [2, 3, 4]
        product = harness.product(product_id)
        assert product.status == ProductStatus.COMPLETED
        assert product.is_pipeline_running is False
        first_job = next(job for job in harness.jobs(product_id) if job.phase_number == 1)
        assert first_job.status == JobStatus.COMPLETED
        assert first_job.retry_count == 0
        assert {job.status for job in harness.jobs(product_id)} == {JobStatus.COMPLETED}
        assert "complete_phase_recovered" in harness.log_actions(product_id)

    def test_reaped_job_of_reconciled_phase_lets_product_finish(self, harness) -> None:
        calls: list[int] = []
        pool = harness.worker_pool(_recording_executors(calls))
        product_id = harness.new_product()
        crashed = harness.scheduler.claim_next("worker-crashed")
        harness.state_machine.start_phase(product_id, 1)
        harness.save_output(product_id, 1)
        harness.reconciler.reconcile_all()
        harness.clock.advance(harness.settings.stale_job_threshold_seconds + 1)

        assert harness.reaper.reap() == 1
        assert harness.phase(product_id, 1).status == PhaseStatus.COMPLETED
        harness.clock.advance(10)
        harness.drain(pool)

        assert calls == [2, 3, 4]
        assert harness.job(crashed.id).status == JobStatus.COMPLETED
        assert harness.product(product_id).status == ProductStatus.COMPLETED
