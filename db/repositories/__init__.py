"""
Repository layer exports.
"""

from db.repositories.pipeline_repository import PipelineRepository

__all__ = [
    "PipelineRepository",
]
