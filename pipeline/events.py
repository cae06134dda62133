"""
pipeline/events.py

Observability hook. Subscribers receive a ``PipelineEvent`` after the
transaction that produced it has committed; a failing subscriber is logged
and never affects the engine.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from db.base import utcnow

logger = logging.getLogger(__name__)


class PipelineEventType(str, Enum):
    PHASE_COMPLETED = "phase_completed"
    PHASE_FAILED = "phase_failed"
    PRODUCT_COMPLETED = "product_completed"


class PipelineEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: PipelineEventType
    product_id: uuid.UUID
    phase_number: int | None = None
    job_id: uuid.UUID | None = None
    error_message: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)


EventCallback = Callable[[PipelineEvent], None]


class PipelineEventHub:
    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, event: PipelineEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Pipeline event subscriber failed event=%s product_id=%s",
                    event.event_type.value,
                    event.product_id,
                )
