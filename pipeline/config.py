"""
pipeline/config.py

Runtime settings for the pipeline engine.
"""

from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass
from functools import lru_cache

from db.config import load_env_files


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading pipeline settings.
    """

    load_env_files()


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_optional_str_env(name: str) -> str | None:
    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def generate_worker_id() -> str:
    """
    Build a process-unique worker identity: ``<host>-<pid>-<random>``.
    """

    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class PipelineSettings:
    """
    Worker pool, retry and maintenance-timer settings.
    """

    max_concurrency: int = 3
    poll_interval_seconds: float = 2.0
    executor_timeout_seconds: float = 300.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    stale_job_threshold_seconds: float = 1800.0
    reaper_interval_seconds: float = 60.0
    reconcile_interval_seconds: float = 300.0
    claim_attempts: int = 5
    worker_id: str | None = None

    @property
    def reconcile_enabled(self) -> bool:
        return self.reconcile_interval_seconds > 0


@lru_cache(maxsize=1)
def get_pipeline_settings() -> PipelineSettings:
    """
    Return cached pipeline settings from environment variables.
    """

    return PipelineSettings(
        max_concurrency=max(1, _get_int_env("PIPELINE_MAX_CONCURRENCY", 3)),
        poll_interval_seconds=max(0.1, _get_float_env("PIPELINE_POLL_INTERVAL_SECONDS", 2.0)),
        executor_timeout_seconds=max(1.0, _get_float_env("PIPELINE_EXECUTOR_TIMEOUT_SECONDS", 300.0)),
        max_retries=max(1, _get_int_env("PIPELINE_MAX_RETRIES", 3)),
        retry_base_delay_seconds=max(0.0, _get_float_env("PIPELINE_RETRY_BASE_DELAY_SECONDS", 1.0)),
        stale_job_threshold_seconds=max(
            1.0, _get_float_env("PIPELINE_STALE_JOB_THRESHOLD_SECONDS", 1800.0)
        ),
        reaper_interval_seconds=max(1.0, _get_float_env("PIPELINE_REAPER_INTERVAL_SECONDS", 60.0)),
        reconcile_interval_seconds=max(
            0.0, _get_float_env("PIPELINE_RECONCILE_INTERVAL_SECONDS", 300.0)
        ),
        claim_attempts=max(1, _get_int_env("PIPELINE_CLAIM_ATTEMPTS", 5)),
        worker_id=_get_optional_str_env("PIPELINE_WORKER_ID") or generate_worker_id(),
    )
