"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.background_job import BackgroundJob
from db.models.enums import (
    FINAL_PHASE,
    FIRST_PHASE,
    PHASE_NAMES,
    PHASE_NUMBERS,
    JobPriority,
    JobStatus,
    LogLevel,
    PhaseStatus,
    ProductStatus,
)
from db.models.phase_output import PhaseOutput
from db.models.pipeline_log import PipelineLog
from db.models.pipeline_phase import PipelinePhase
from db.models.product import Product

__all__ = [
    "BackgroundJob",
    "PhaseOutput",
    "PipelineLog",
    "PipelinePhase",
    "Product",
    "FINAL_PHASE",
    "FIRST_PHASE",
    "PHASE_NAMES",
    "PHASE_NUMBERS",
    "JobPriority",
    "JobStatus",
    "LogLevel",
    "PhaseStatus",
    "ProductStatus",
]
