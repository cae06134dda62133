"""
db/models/enums.py

Closed value sets for pipeline state columns.

Every status column is bound to one of these enums through ``enum_type`` so
an unknown value fails at construction/flush time instead of being written
as a free-form string.
"""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Enum as SAEnum

FIRST_PHASE = 1
FINAL_PHASE = 4
PHASE_NUMBERS: tuple[int, ...] = (1, 2, 3, 4)

PHASE_NAMES: dict[int, str] = {
    1: "Product Analysis",
    2: "Market Research",
    3: "Pricing",
    4: "SEO & Publishing",
}


class ProductStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    PUBLISHED = "published"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES: tuple[JobStatus, ...] = (JobStatus.PENDING, JobStatus.RUNNING)


class JobPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key: lower rank is claimed first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK: dict[JobPriority, int] = {
    JobPriority.HIGH: 0,
    JobPriority.NORMAL: 1,
    JobPriority.LOW: 2,
}


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def enum_type(enum_cls: type[Enum], length: int = 32) -> SAEnum:
    """
    Portable VARCHAR-backed enum column type that stores member values.
    """

    return SAEnum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=length,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
    )


def validate_phase_number(phase_number: int) -> int:
    if phase_number not in PHASE_NUMBERS:
        raise ValueError(
            f"phase_number must be one of {list(PHASE_NUMBERS)}, got {phase_number!r}"
        )
    return phase_number
