"""
Prompt construction utilities for outline, page text and back-cover generation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .profile import BookIntake, Character


@dataclass(frozen=True)
class TextComplexity:
    words_per_page: int
    style: str
    instructions: tuple[str, ...]


AGE_RANGE_LABELS: dict[str, str] = {
    "0-2": "Baby",
    "2-4": "Toddler",
    "5-8": "Kids",
    "9-12": "Pre-teen",
}

TEXT_COMPLEXITY: dict[str, TextComplexity] = {
    "0-2": TextComplexity(
        words_per_page=5,
        style='Very simple words, sounds like "boom", "splash", "whoosh", repetition',
        instructions=(
            "Use 1-5 simple words or short phrases.",
            'Include sound words like "splash!", "boom!", "whoosh!".',
            "Repetition is great; focus on sensory experiences.",
        ),
    ),
    "2-4": TextComplexity(
        words_per_page=20,
        style="Simple sentences, rhyming optional, familiar concepts",
        instructions=(
            "Use 15-25 simple words in short, complete sentences.",
            "Stick to familiar, everyday vocabulary.",
            "Light rhyming is nice but not required.",
        ),
    ),
    "5-8": TextComplexity(
        words_per_page=100,
        style="Rich sentences, engaging plot, dialogue, vivid descriptions",
        instructions=(
            "Write 80-120 words so the page feels like a real published picture book.",
            "Include engaging dialogue between characters.",
            "Show emotions through actions and expressions; vary sentence length for rhythm.",
        ),
    ),
    "9-12": TextComplexity(
        words_per_page=180,
        style="Rich vocabulary, complex plot, character introspection, immersive narrative",
        instructions=(
            "Write 150-200 words with immersive descriptions of setting and atmosphere.",
            "Show character introspection: thoughts, doubts, hopes and fears.",
            "Balance action with reflection; let dialogue reveal personality.",
        ),
    ),
}

_OUTLINE_FOCUS: dict[str, str] = {
    "0-2": "Use lots of sound words, repetition, and simple concepts.",
    "2-4": "Use simple sentences, familiar concepts, and gentle rhythm.",
    "5-8": "Include dialogue, adventure elements, and clear plot progression.",
    "9-12": "Include character development, richer vocabulary, and meaningful themes.",
}

SAFETY_GUARDRAILS = (
    "Safety guardrails:\n"
    "- Avoid frightening peril, violence, or mature themes.\n"
    "- Keep language inclusive, kind, and safe for children.\n"
    "- Do not mention you are an AI and do not add meta commentary."
)


@dataclass(frozen=True)
class StoryPrompt:
    """
    Container for the system and user prompts passed to the text model.
    """

    system: str
    user: str


def _character_line(character: Character) -> str:
    details = [character.entity_type]
    if character.gender:
        details.append(character.gender)
    if character.age and character.entity_type == "human":
        details.append(f"age {character.age}")
    line = f"- {character.name} ({', '.join(details)})"
    if character.is_main:
        line += " - main character"
    if character.story_role:
        line += f": {character.story_role}"
    return line


def build_outline_prompt(intake: BookIntake, *, scene_count: int) -> StoryPrompt:
    """
    Build the prompt pair that asks for a JSON outline with exactly ``scene_count`` scenes.
    """
    settings = intake.settings
    complexity = TEXT_COMPLEXITY[settings.age_range]
    main = intake.main_character
    main_name = main.name if main else "the hero"
    cast = "\n".join(_character_line(character) for character in intake.characters)

    title_hint = settings.title or "Create an engaging title"
    subject_line = f"\nSUBJECT: {settings.subject}" if settings.subject else ""
    notes_line = (
        f"\nFAMILY NOTES: {settings.free_text_description}"
        if settings.free_text_description
        else ""
    )

    system_prompt = f"""You are a children's picture-book story planner.
You design heartwarming stories that fit a personalized gift book, with one clear visual moment per scene.

{SAFETY_GUARDRAILS}
"""

    user_prompt = f"""Create a children's storybook outline with exactly {scene_count} scenes.

TARGET AUDIENCE: Children aged {settings.age_range} years old ({AGE_RANGE_LABELS[settings.age_range]})
WRITING STYLE: {complexity.style}
WORDS PER PAGE: Maximum {complexity.words_per_page} words

THEME: {settings.theme}{subject_line}{notes_line}
MAIN CHARACTER: {main_name}

CHARACTERS:
{cast}

STORY REQUIREMENTS:
- Create a heartwarming {settings.theme}-themed story.
- Each scene should have a clear visual moment for illustration.
- End with a positive, loving conclusion.
- {_OUTLINE_FOCUS[settings.age_range]}

Respond in strict JSON format:
{{
  "title": "{title_hint}",
  "dedication": "A short, heartfelt dedication message (1 sentence)",
  "scenes": [
    {{
      "number": 1,
      "title": "Scene title",
      "summary": "What happens in this scene (1-2 sentences)",
      "sceneDescription": "Visual description for illustration",
      "emotionalTone": "happy/excited/curious/loving/brave/peaceful"
    }}
  ]
}}

Create exactly {scene_count} scenes numbered 1 to {scene_count}. Make sure the story flows naturally from scene to scene."""

    return StoryPrompt(system=system_prompt, user=user_prompt)


def build_page_prompt(
    intake: BookIntake,
    *,
    scene_number: int,
    scene_title: str,
    scene_summary: str,
    emotional_tone: str | None,
    previous_texts: Sequence[str] = (),
) -> StoryPrompt:
    """
    Build the prompt pair for one page of narrative text plus its refreshed visual description.
    """
    settings = intake.settings
    complexity = TEXT_COMPLEXITY[settings.age_range]
    names = ", ".join(character.name for character in intake.characters)
    instructions = "\n".join(f"- {line}" for line in complexity.instructions)

    if previous_texts:
        tail = previous_texts[-1][-150:]
        continuity = f'PREVIOUS PAGE ENDED WITH: "{tail}..."'
    else:
        continuity = "This is the opening of the story."

    system_prompt = f"""You write the text for a single page of a children's storybook.
Keep every page consistent with the pages before it and with the scene you are given.

{SAFETY_GUARDRAILS}
"""

    user_prompt = f"""TARGET AUDIENCE: Children aged {settings.age_range} years old ({AGE_RANGE_LABELS[settings.age_range]})
WRITING STYLE: {complexity.style}
TARGET WORD COUNT: {complexity.words_per_page} words

SCENE {scene_number}: {scene_title}
{scene_summary}
EMOTIONAL TONE: {emotional_tone or "warm"}
CHARACTERS IN SCENE: {names}

{continuity}

INSTRUCTIONS:
{instructions}

Respond in JSON format:
{{
  "text": "The page text exactly as it should appear in the book",
  "visualPrompt": "Updated visual description for the illustration based on the text"
}}"""

    return StoryPrompt(system=system_prompt, user=user_prompt)


def build_back_cover_prompt(
    intake: BookIntake,
    *,
    title: str,
    scene_summaries: Sequence[str],
) -> StoryPrompt:
    """Build the prompt pair for the plain-text back cover summary."""
    settings = intake.settings
    complexity = TEXT_COMPLEXITY[settings.age_range]
    main = intake.main_character
    max_words = min(complexity.words_per_page * 2, 100)
    overview = " ".join(scene_summaries[:3])

    system_prompt = f"""You write back cover blurbs for personalized children's storybooks.

{SAFETY_GUARDRAILS}
"""

    user_prompt = f"""Write a brief back cover summary for this children's storybook.

TITLE: {title}
MAIN CHARACTER: {main.name if main else "the hero"}
STORY OVERVIEW: {overview}

TARGET AUDIENCE: Children aged {settings.age_range}
MAXIMUM WORDS: {max_words}

Write an engaging summary that introduces the main character, hints at the adventure without spoilers,
and ends with an inviting question or statement.

Return ONLY the summary text, no JSON."""

    return StoryPrompt(system=system_prompt, user=user_prompt)
