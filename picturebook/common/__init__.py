"""
Common utilities shared across picture-book pipeline modules.
"""

from .errors import (
    CreditExhaustedError,
    NotFoundError,
    PersistenceInconsistencyError,
    PictureBookError,
    StageBusyError,
    StageOrderViolationError,
    StageTimeoutError,
    UpstreamGenerationError,
    ValidationError,
)
from .llm import ChatResult, CompletionCallable, call_chat_completion, extract_json_object
from .retry import RetryPolicy, calculate_delay

__all__ = [
    "ChatResult",
    "CompletionCallable",
    "call_chat_completion",
    "extract_json_object",
    "PictureBookError",
    "NotFoundError",
    "ValidationError",
    "UpstreamGenerationError",
    "StageTimeoutError",
    "PersistenceInconsistencyError",
    "CreditExhaustedError",
    "StageOrderViolationError",
    "StageBusyError",
    "RetryPolicy",
    "calculate_delay",
]
