"""
Story generation: job intake models, text prompts and the text-generation services.
"""

from .page_writer import BackCoverWriter, PageText, PageTextGenerator
from .profile import AvatarReference, BookIntake, Character, JobSettings, split_subject
from .prompting import AGE_RANGE_LABELS, TEXT_COMPLEXITY, StoryPrompt
from .story_service import Outline, SceneSpec, StoryOutlineGenerator

__all__ = [
    "AvatarReference",
    "BookIntake",
    "Character",
    "JobSettings",
    "split_subject",
    "AGE_RANGE_LABELS",
    "TEXT_COMPLEXITY",
    "StoryPrompt",
    "Outline",
    "SceneSpec",
    "StoryOutlineGenerator",
    "PageText",
    "PageTextGenerator",
    "BackCoverWriter",
]
