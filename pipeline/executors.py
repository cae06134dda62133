"""
pipeline/executors.py

Phase executor contract and the registry binding phase numbers to
executors.

Executors are implemented outside the engine. They receive the product id
and a ``threading.Event`` that is set when the call times out or the worker
shuts down; long-running executors should check it and raise
``PhaseCancelledError`` to abort. The returned mapping is stored verbatim
as the phase output.
"""

from __future__ import annotations

import importlib
import logging
import threading
import uuid
from collections.abc import Callable, Iterator, Mapping
from typing import Any, Protocol, runtime_checkable

from db.models.enums import PHASE_NUMBERS, validate_phase_number

logger = logging.getLogger(__name__)


@runtime_checkable
class PhaseExecutor(Protocol):
    def execute(self, product_id: uuid.UUID, cancel_event: threading.Event) -> Mapping[str, Any]:
        ...


class FunctionPhaseExecutor:
    """Adapt a plain ``fn(product_id, cancel_event)`` callable to ``PhaseExecutor``."""

    def __init__(self, fn: Callable[[uuid.UUID, threading.Event], Mapping[str, Any]]) -> None:
        self._fn = fn

    def execute(self, product_id: uuid.UUID, cancel_event: threading.Event) -> Mapping[str, Any]:
        return self._fn(product_id, cancel_event)

    def __repr__(self) -> str:
        name = getattr(self._fn, "__qualname__", repr(self._fn))
        return f"FunctionPhaseExecutor({name})"


class ExecutorRegistry:
    def __init__(self, executors: Mapping[int, PhaseExecutor | Callable[..., Any]] | None = None) -> None:
        self._executors: dict[int, PhaseExecutor] = {}
        for phase_number, executor in (executors or {}).items():
            self.register(phase_number, executor)

    def register(self, phase_number: int, executor: PhaseExecutor | Callable[..., Any]) -> None:
        validate_phase_number(phase_number)
        if not isinstance(executor, PhaseExecutor):
            if not callable(executor):
                raise TypeError(
                    f"Executor for phase {phase_number} must define execute() or be callable"
                )
            executor = FunctionPhaseExecutor(executor)
        self._executors[phase_number] = executor

    def get(self, phase_number: int) -> PhaseExecutor | None:
        return self._executors.get(phase_number)

    def __contains__(self, phase_number: object) -> bool:
        return phase_number in self._executors

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._executors))

    def __len__(self) -> int:
        return len(self._executors)

    def missing_phases(self) -> list[int]:
        return [number for number in PHASE_NUMBERS if number not in self._executors]

    @classmethod
    def from_specs(cls, specs: str) -> "ExecutorRegistry":
        """
        Build a registry from ``phase:module:attr`` entries separated by commas,
        e.g. ``1:listing.analysis:AnalysisExecutor,2:listing.market:run``.

        Classes are instantiated without arguments; functions and instances
        are used as-is.
        """

        registry = cls()
        for token in specs.split(","):
            token = token.strip()
            if not token:
                continue
            parts = token.split(":")
            if len(parts) != 3:
                raise ValueError(f"Malformed executor spec {token!r}; expected phase:module:attr")
            raw_phase, module_name, attr_name = (part.strip() for part in parts)
            try:
                phase_number = int(raw_phase)
            except ValueError as exc:
                raise ValueError(f"Executor spec {token!r} has a non-integer phase") from exc

            target = getattr(importlib.import_module(module_name), attr_name)
            if isinstance(target, type):
                target = target()
            registry.register(phase_number, target)
            logger.info("Registered phase executor phase=%s target=%s:%s", phase_number, module_name, attr_name)
        return registry
