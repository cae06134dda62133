"""
Run a pipeline worker process from CLI.

Executors are loaded from ``PIPELINE_EXECUTORS`` (or ``--executors``) as
comma-separated ``phase:module:attr`` specs. The process polls the job queue,
runs the stale-job reaper and the stuck-phase reconciler until SIGINT or
SIGTERM, then stops gracefully.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import threading

from db.session import get_session_factory
from pipeline.config import get_pipeline_settings
from pipeline.executors import ExecutorRegistry
from pipeline.runtime import PipelineRuntime

logger = logging.getLogger("pipeline.worker")


def _configure_logging() -> None:
    """
    Configure root logging level and format from LOG_LEVEL.
    """

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the listing pipeline worker.")
    parser.add_argument(
        "--executors",
        dest="executors",
        default=None,
        help="Override PIPELINE_EXECUTORS, e.g. '1:listing.phases:analyse,2:listing.phases:research'.",
    )
    parser.add_argument(
        "--reconcile-once",
        dest="reconcile_once",
        action="store_true",
        help="Run one stuck-phase reconcile pass, print the repaired products and exit.",
    )
    args = parser.parse_args()

    _configure_logging()

    specs = args.executors or os.getenv("PIPELINE_EXECUTORS", "")
    try:
        executors = ExecutorRegistry.from_specs(specs)
    except (ImportError, AttributeError, ValueError, TypeError) as exc:
        logger.error("Invalid executor configuration: %s", exc)
        return 2

    runtime = PipelineRuntime(
        session_factory=get_session_factory(),
        executors=executors,
        settings=get_pipeline_settings(),
    )

    if args.reconcile_once:
        results = runtime.reconciler.reconcile_all()
        payload = [
            {
                "product_id": str(result.product_id),
                "fixed_phases": result.fixed_phases,
                "product_completed": result.product_completed,
            }
            for result in results
        ]
        print(json.dumps(payload, indent=2))
        return 0

    shutdown = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:
        logger.info("Received signal %s, shutting down", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    runtime.start()
    try:
        while not shutdown.wait(timeout=1.0):
            pass
    finally:
        runtime.stop(wait=True)
        stats = runtime.worker_pool.get_stats()
        logger.info(
            "Worker stopped processed=%s errors=%s avg_seconds=%.2f",
            stats.processed_count,
            stats.error_count,
            stats.average_processing_seconds,
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
