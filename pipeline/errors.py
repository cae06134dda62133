"""
pipeline/errors.py

Exception taxonomy for the orchestration engine.

Transient errors (``PhaseExecutionError``, ``PhaseTimeoutError``,
``StaleJobError`` and any unexpected executor exception) go through retry
and backoff. ``JobValidationError`` drops the job without retry.
``PhaseCancelledError`` releases the job without consuming a retry.
"""

from __future__ import annotations

import uuid


class PipelineError(Exception):
    """Base exception for pipeline engine failures."""


class ProductNotFoundError(PipelineError):
    """Raised when a referenced product does not exist."""

    def __init__(self, product_id: uuid.UUID) -> None:
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class PhaseTransitionError(PipelineError):
    """Raised when a phase status change is not allowed from its current state."""

    def __init__(self, product_id: uuid.UUID, phase_number: int, reason: str) -> None:
        self.product_id = product_id
        self.phase_number = phase_number
        self.reason = reason
        super().__init__(f"Phase {phase_number} of product {product_id}: {reason}")


class JobValidationError(PipelineError):
    """Raised when a claimed job cannot be executed at all. Never retried."""


class PhaseExecutionError(PipelineError):
    """Raised by executors for retryable failures of an external call."""


class PhaseTimeoutError(PhaseExecutionError):
    """Raised when an executor call exceeds its per-call timeout."""

    def __init__(self, phase_number: int, timeout_seconds: float) -> None:
        self.phase_number = phase_number
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Phase {phase_number} executor timed out after {timeout_seconds:g}s"
        )


class PhaseCancelledError(PipelineError):
    """Raised by executors that abort because their cancellation event was set."""


class StaleJobError(PipelineError):
    """Failure recorded for a running job whose worker stopped reporting."""

    def __init__(self, job_id: uuid.UUID, worker_id: str | None, threshold_seconds: float) -> None:
        self.job_id = job_id
        self.worker_id = worker_id
        self.threshold_seconds = threshold_seconds
        super().__init__(
            f"Job {job_id} held by worker {worker_id or 'unknown'} exceeded "
            f"stale threshold of {threshold_seconds:g}s"
        )
