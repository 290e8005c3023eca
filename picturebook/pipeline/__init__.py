"""
Durable, stage-by-stage picture-book generation.
"""

from .book import Book, BookPage
from .continuity import CharacterConsistencyCache
from .identity import CharacterDescription, CharacterDescriptionGenerator
from .pipeline import PipelineController, build_default_services, load_intake_file
from .progress import JobStatus, Progress, StageName, overall_progress
from .regeneration import RegenerationService
from .runner import BookGenerationWorker, BookJobRunner
from .settings import PipelineSettings
from .stages import StageServices
from .store import BookJob, SQLiteJobStore

__all__ = [
    "Book",
    "BookPage",
    "CharacterConsistencyCache",
    "CharacterDescription",
    "CharacterDescriptionGenerator",
    "PipelineController",
    "build_default_services",
    "load_intake_file",
    "JobStatus",
    "Progress",
    "StageName",
    "overall_progress",
    "RegenerationService",
    "BookGenerationWorker",
    "BookJobRunner",
    "PipelineSettings",
    "StageServices",
    "BookJob",
    "SQLiteJobStore",
]
