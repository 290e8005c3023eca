"""
Prompt synthesis for character-consistent illustrations.

Every function here is pure: identical inputs produce byte-identical prompt
strings. The image seed is never part of the prompt. Ordered token lists and
descriptor tables live in ``prompt_rules.yaml``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from typing import Any, Mapping, Sequence

import yaml

from picturebook.common import ValidationError
from picturebook.story_generation import Character

_AGE_NUMBER_PATTERN = re.compile(r"\d+")
_LEADING_ARTICLE = re.compile(r"^(a|an|the)\s+", re.IGNORECASE)


@lru_cache(maxsize=1)
def load_prompt_rules() -> Mapping[str, Any]:
    """Load and cache the bundled prompt rule tables."""
    text = resources.files(__package__).joinpath("prompt_rules.yaml").read_text(encoding="utf-8")
    rules = yaml.safe_load(text)
    if not isinstance(rules, Mapping):
        raise ValidationError("prompt_rules.yaml must deserialize to a mapping.")
    return rules


@dataclass(frozen=True)
class AgeDescriptors:
    """Numeric label plus the proportion clause for an age bracket."""

    label: str
    proportions: str
    bracket: str
    is_child: bool
    years: int | None = None


@dataclass(frozen=True)
class SceneContext:
    """What is happening around the subject in this picture."""

    description: str | None = None
    action: str | None = None
    expression: str | None = None


@dataclass(frozen=True)
class StyleContext:
    """Art style key (or free-text style) plus optional lighting note."""

    art_style: str = "pixar-3d"
    lighting: str | None = None

    def style_entry(self) -> tuple[str, tuple[str, ...]]:
        rules = load_prompt_rules()
        styles = rules["art_styles"]
        key = (self.art_style or rules["default_art_style"]).strip().lower()
        entry = styles.get(key)
        if entry is None:
            # Free-text style: use it verbatim with the default style's negatives.
            default = styles[rules["default_art_style"]]
            return self.art_style.strip(), tuple(default["negative"])
        return entry["prompt"], tuple(entry["negative"])


@dataclass(frozen=True)
class SynthesizedPrompt:
    """Positive prompt, negative prompt and the ordered reference images for one image call."""

    positive: str
    negative: str
    reference_images: tuple[str, ...] = ()


@dataclass(frozen=True)
class CastMember:
    """A character as it appears in one picture."""

    character: Character
    visual_description: str | None = None
    action: str | None = None


def get_age_physical_descriptors(age: str | int | None) -> AgeDescriptors:
    """
    Map a free-text age to its bracket's label and proportion clause.

    Missing or unparseable ages fall back to the adult bracket.
    """
    rules = load_prompt_rules()
    brackets = rules["age_brackets"]

    years: int | None = None
    if age is not None:
        match = _AGE_NUMBER_PATTERN.search(str(age))
        if match is not None:
            years = int(match.group(0))

    if years is None:
        default = next(item for item in brackets if item["name"] == rules["default_bracket"])
        return AgeDescriptors(
            label=default["name"],
            proportions=default["proportions"],
            bracket=default["name"],
            is_child=bool(default["child"]),
        )

    for bracket in brackets:
        limit = bracket["max_age"]
        if limit is None or years <= limit:
            return AgeDescriptors(
                label=f"{years}-year-old",
                proportions=bracket["proportions"],
                bracket=bracket["name"],
                is_child=bool(bracket["child"]),
                years=years,
            )
    raise ValidationError("prompt_rules.yaml must end with an open-ended age bracket.")


def resolve_reference_images(character: Character, *, multi: bool = False) -> tuple[str, ...]:
    """
    Avatar image(s) if present, else the uploaded photo, else the placeholder marker.

    Scene illustrations use exactly one image per character; covers may pass ``multi=True``.
    """
    if character.avatar is not None:
        return character.avatar.urls if multi else (character.avatar.primary,)
    if character.photo_url:
        return (character.photo_url,)
    return (load_prompt_rules()["placeholder_reference"],)


def _bracket_rules(descriptors: AgeDescriptors) -> Mapping[str, Any]:
    return next(
        item for item in load_prompt_rules()["age_brackets"] if item["name"] == descriptors.bracket
    )


def _gender_key(gender: str | None) -> str:
    normalized = (gender or "").strip().lower()
    if normalized in {"male", "boy", "man", "m"}:
        return "male"
    if normalized in {"female", "girl", "woman", "f"}:
        return "female"
    return "other"


def _join_tokens(tokens: Sequence[str]) -> str:
    return ", ".join(tokens)


def _negative_prompt(entity_key: str, sections: Sequence[str], style: StyleContext) -> str:
    rules = load_prompt_rules()["negative"]
    table = rules[entity_key]
    ordered: list[str] = []
    for section in rules["order"][entity_key]:
        if section in sections:
            ordered.append(_join_tokens(table[section]))
    _, style_negative = style.style_entry()
    ordered.append(_join_tokens([*rules["quality"], *style_negative]))
    return ", ".join(ordered)


def _style_block(style: StyleContext) -> str:
    style_prompt, _ = style.style_entry()
    block = f"STYLE: {style_prompt}."
    if style.lighting:
        block += f" Lighting: {style.lighting}."
    return block


def _scene_block(scene: SceneContext | None) -> str | None:
    if scene is None:
        return None
    parts: list[str] = []
    if scene.description:
        parts.append(scene.description.rstrip("."))
    if scene.action:
        parts.append(scene.action.rstrip("."))
    if not parts:
        return None
    return "SCENE: " + ". ".join(parts) + "."


def _human_noun(character: Character, descriptors: AgeDescriptors) -> str:
    return _bracket_rules(descriptors)["nouns"][_gender_key(character.gender)]


def _with_article(phrase: str) -> str:
    if phrase[:1].lower() in "aeiou" or re.match(r"(8|11|18)\b|8\d\b", phrase):
        return f"an {phrase}"
    return f"a {phrase}"


def _age_noun_phrase(noun: str, descriptors: AgeDescriptors) -> str:
    if descriptors.years is None:
        return _with_article(noun)
    return _with_article(f"{descriptors.label} {noun}")


def _species_phrase(character: Character) -> str:
    animal_rules = load_prompt_rules()["animal"]
    species = _LEADING_ARTICLE.sub("", (character.description or "").strip()).rstrip(".")
    if not species:
        species = animal_rules["species_fallback"]
    gender_word = animal_rules["gender_words"].get(_gender_key(character.gender))
    return f"{gender_word} {species}" if gender_word else species


def _has_personality(character: Character) -> bool:
    text = " ".join(filter(None, [character.description, character.story_role])).lower()
    words = set(re.findall(r"[a-z]+", text))
    return any(cue in words for cue in load_prompt_rules()["object"]["personality_cues"])


def _human_positive(
    character: Character,
    scene: SceneContext | None,
    style: StyleContext,
    visual_description: str | None,
) -> tuple[str, AgeDescriptors]:
    descriptors = get_age_physical_descriptors(character.age)
    noun = _human_noun(character, descriptors)
    sections = [
        f"SOLO: exactly one {noun} alone in the frame, the only person in the picture.",
        f"SUBJECT: {character.name}, {_age_noun_phrase(noun, descriptors)}.",
    ]
    if character.clothing_style:
        sections.append(
            f"CLOTHING: wearing exactly {character.clothing_style}; keep every garment, color and "
            "pattern as described."
        )
    else:
        sections.append(f"CLOTHING: wearing {_bracket_rules(descriptors)['fallback_clothing']}.")
    if character.story_role:
        sections.append(f"ROLE: {character.story_role}.")
    sections.append(
        "FACE MATCH: match the reference image exactly: same face shape, eye shape and eye color, "
        "eyebrows, nose, lips, skin tone, hairline, hair color and hair texture."
    )
    sections.append(f"BODY: {descriptors.label} with {descriptors.proportions}.")
    details = [text for text in (character.description, visual_description) if text]
    if details:
        sections.append("DETAILS: " + "; ".join(item.rstrip(".") for item in details) + ".")
    scene_block = _scene_block(scene)
    if scene_block:
        sections.append(scene_block)
    sections.append(
        f"COMPOSITION: {character.name} is the clear focal point, full figure visible, "
        "face readable and well lit."
    )
    sections.append(_style_block(style))
    return "\n".join(sections), descriptors


def _animal_positive(
    character: Character,
    scene: SceneContext | None,
    style: StyleContext,
    visual_description: str | None,
) -> str:
    animal_rules = load_prompt_rules()["animal"]
    species = _species_phrase(character)
    sections = [
        f"SOLO ANIMAL: exactly one {species} alone in the frame, no humans, no people.",
        f"SPECIES: a real {species} with natural animal anatomy.",
        f"NAME: this animal is called {character.name}.",
    ]
    if character.clothing_style:
        sections.append(
            f"ACCESSORIES: wearing exactly {character.clothing_style}; nothing else."
        )
    else:
        sections.append(
            "NO CLOTHING: no clothing, no costume, no accessories; natural fur or feathers only."
        )
    sections.append(
        "REFERENCE MATCH: match the reference image exactly: same markings, coat colors and "
        "pattern, ear shape, tail, and body size."
    )
    if visual_description:
        sections.append(f"DETAILS: {visual_description.rstrip('.')}.")
    pose = (scene.action if scene and scene.action else None) or animal_rules["default_pose"]
    expression = (scene.expression if scene and scene.expression else None) or animal_rules[
        "default_expression"
    ]
    sections.append(f"POSE: {pose.rstrip('.')}, {expression.rstrip('.')}.")
    if scene is not None and scene.description:
        sections.append(f"SETTING: {scene.description.rstrip('.')}.")
    sections.append(_style_block(style))
    return "\n".join(sections)


def _object_positive(
    character: Character,
    scene: SceneContext | None,
    style: StyleContext,
    visual_description: str | None,
) -> str:
    subject = (character.description or "").strip().rstrip(".") or "a cherished object"
    sections = [
        "SOLO OBJECT: exactly one object alone in the frame, no humans, no animals.",
        f"SUBJECT: {subject}, known as {character.name}.",
        "REFERENCE MATCH: match the reference image exactly: same shape, colors, materials, "
        "and markings.",
    ]
    if visual_description:
        sections.append(f"DETAILS: {visual_description.rstrip('.')}.")
    if scene is not None and scene.description:
        sections.append(f"SETTING: {scene.description.rstrip('.')}.")
    if _has_personality(character):
        sections.append(
            f"CHARACTER FRAMING: {character.name} is a beloved storybook character; convey "
            "personality through tilt, placement and gentle highlights, hero composition."
        )
    else:
        sections.append(
            "PRODUCT FRAMING: clean presentation, object centered, true-to-life proportions, "
            "no added face or limbs."
        )
    sections.append(_style_block(style))
    return "\n".join(sections)


def synthesize(
    entity_type: str,
    attributes: Character,
    scene_context: SceneContext | None = None,
    style_context: StyleContext | None = None,
    *,
    visual_description: str | None = None,
) -> SynthesizedPrompt:
    """
    Build the single-subject prompt for one character.

    Parameters
    ----------
    entity_type:
        ``human``, ``animal`` or ``object``; selects the fixed template.
    attributes:
        The character being drawn.
    scene_context:
        Optional scene description, action and expression.
    style_context:
        Art style and lighting; defaults to the default art style.
    visual_description:
        Cached consistency description for this character, reused verbatim.
    """
    style = style_context or StyleContext()
    references = resolve_reference_images(attributes)

    if entity_type == "human":
        positive, descriptors = _human_positive(attributes, scene_context, style, visual_description)
        sections = ["anatomy", "multi_subject", "species_leakage", "clothing_override"]
        if descriptors.is_child:
            sections.append("child_proportion")
        negative = _negative_prompt("human", sections, style)
    elif entity_type == "animal":
        positive = _animal_positive(attributes, scene_context, style, visual_description)
        sections = ["human_presence", "anthropomorphism", "multi_subject"]
        if not attributes.clothing_style:
            sections.append("clothing_override")
        negative = _negative_prompt("animal", sections, style)
    elif entity_type == "object":
        positive = _object_positive(attributes, scene_context, style, visual_description)
        negative = _negative_prompt("object", ["human_presence", "animal_presence", "clutter"], style)
    else:
        raise ValidationError(f"Unsupported entity type {entity_type!r}.")

    return SynthesizedPrompt(positive=positive, negative=negative, reference_images=references)


def _ensemble_clause(member: CastMember) -> str:
    character = member.character
    if character.entity_type == "human":
        descriptors = get_age_physical_descriptors(character.age)
        noun = _human_noun(character, descriptors)
        identity = f"{character.name}, {_age_noun_phrase(noun, descriptors)} ({descriptors.proportions})"
        if character.clothing_style:
            identity += f", wearing exactly {character.clothing_style}"
    elif character.entity_type == "animal":
        identity = f"{character.name}, a real {_species_phrase(character)}"
        if character.clothing_style:
            identity += f", wearing exactly {character.clothing_style}"
        else:
            identity += ", no clothing, natural fur or feathers only"
    else:
        subject = (character.description or "").strip().rstrip(".") or "a cherished object"
        identity = f"{character.name}, {subject}"

    if member.visual_description:
        identity += f" ({member.visual_description.rstrip('.')})"

    action = member.action or load_prompt_rules()["action_defaults"][character.role]
    return f"{identity} - {action.rstrip('.')}"


def build_scene_prompt(
    cast: Sequence[CastMember],
    scene: SceneContext,
    style: StyleContext,
) -> SynthesizedPrompt:
    """
    Prompt for one scene illustration with exactly one reference image per character.

    A single-character cast uses that character's entity template; larger casts
    are listed as ``Character i: [reference image i]`` clauses in reference order.
    """
    if not cast:
        raise ValidationError("A scene needs at least one character.")

    if len(cast) == 1:
        member = cast[0]
        default_action = load_prompt_rules()["action_defaults"][member.character.role]
        context = SceneContext(
            description=scene.description,
            action=member.action or scene.action or default_action,
            expression=scene.expression,
        )
        return synthesize(
            member.character.entity_type,
            member.character,
            context,
            style,
            visual_description=member.visual_description,
        )

    references: list[str] = []
    lines = []
    if scene.description:
        lines.append(f"SCENE: {scene.description.rstrip('.')}.")
    lines.append(
        f"CAST: exactly {len(cast)} characters, each appearing once, each matching their own "
        "reference image."
    )
    for index, member in enumerate(cast, start=1):
        references.append(resolve_reference_images(member.character)[0])
        lines.append(f"Character {index}: [reference image {index}] {_ensemble_clause(member)}")
    lines.append(_style_block(style))

    negative = _negative_prompt("ensemble", ["anatomy", "duplicates"], style)
    return SynthesizedPrompt(
        positive="\n".join(lines),
        negative=negative,
        reference_images=tuple(references),
    )


def build_cover_prompt(
    cast: Sequence[CastMember],
    *,
    title: str,
    theme: str,
    style: StyleContext,
) -> SynthesizedPrompt:
    """
    Cover illustration prompt; every available avatar image of each character is supplied.
    """
    if not cast:
        raise ValidationError("A cover needs at least one character.")

    cover_scene = SceneContext(
        description=(
            f"book cover illustration for the {theme} story '{title}', inviting and magical, "
            "clean space at the top for the title, no lettering"
        ),
    )
    base = build_scene_prompt(cast, cover_scene, style)

    references: list[str] = []
    for member in cast:
        for url in resolve_reference_images(member.character, multi=True):
            if url not in references:
                references.append(url)
    return SynthesizedPrompt(
        positive=base.positive,
        negative=base.negative,
        reference_images=tuple(references),
    )
