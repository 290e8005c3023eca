"""
Picture-book generation: story planning, consistent illustrations and a durable stage pipeline.
"""

from .pipeline import (
    BookGenerationWorker,
    BookJobRunner,
    PipelineController,
    PipelineSettings,
    RegenerationService,
    SQLiteJobStore,
)

__all__ = [
    "BookGenerationWorker",
    "BookJobRunner",
    "PipelineController",
    "PipelineSettings",
    "RegenerationService",
    "SQLiteJobStore",
]
