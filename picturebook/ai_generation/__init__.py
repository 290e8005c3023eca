"""
Illustration prompt synthesis and the image/storage collaborators.
"""

from .prompting import (
    AgeDescriptors,
    CastMember,
    SceneContext,
    StyleContext,
    SynthesizedPrompt,
    build_cover_prompt,
    build_scene_prompt,
    get_age_physical_descriptors,
    load_prompt_rules,
    resolve_reference_images,
    synthesize,
)
from .replicate_service import ReplicateImageGenerator, normalize_image_outputs
from .storage import LocalObjectStore

__all__ = [
    "AgeDescriptors",
    "CastMember",
    "SceneContext",
    "StyleContext",
    "SynthesizedPrompt",
    "build_cover_prompt",
    "build_scene_prompt",
    "get_age_physical_descriptors",
    "load_prompt_rules",
    "resolve_reference_images",
    "synthesize",
    "ReplicateImageGenerator",
    "normalize_image_outputs",
    "LocalObjectStore",
]
