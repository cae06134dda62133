"""
pipeline/store.py

Transaction boundary for engine components.

Each component call runs in its own short transaction unless the caller
passes an already-open ``PipelineRepository``, in which case the work joins
the caller's transaction and the caller decides when to commit. Events
published during a transaction are delivered only after it commits and are
dropped on rollback.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from db.base import utcnow
from db.repositories.pipeline_repository import PipelineRepository
from pipeline.events import PipelineEvent, PipelineEventHub

Clock = Callable[[], datetime]

_PENDING_EVENTS_KEY = "pipeline_pending_events"


class PipelineStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        *,
        clock: Clock = utcnow,
        events: PipelineEventHub | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self.events = events or PipelineEventHub()

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def transaction(self) -> Iterator[PipelineRepository]:
        """Yield a repository bound to a fresh session; commit on success."""
        session: Session = self._session_factory()
        try:
            yield PipelineRepository(session)
            session.commit()
        except Exception:
            session.rollback()
            session.info.pop(_PENDING_EVENTS_KEY, None)
            raise
        else:
            for event in session.info.pop(_PENDING_EVENTS_KEY, []):
                self.events.emit(event)
        finally:
            session.close()

    @contextmanager
    def use(self, repo: PipelineRepository | None) -> Iterator[PipelineRepository]:
        """Join ``repo`` when given, otherwise open a new transaction."""
        if repo is not None:
            yield repo
            return
        with self.transaction() as own_repo:
            yield own_repo

    def publish(self, repo: PipelineRepository, event: PipelineEvent) -> None:
        """Queue ``event`` for delivery once ``repo``'s transaction commits."""
        repo.session.info.setdefault(_PENDING_EVENTS_KEY, []).append(event)
