from __future__ import annotations

import pytest

from picturebook.ai_generation import (
    CastMember,
    SceneContext,
    StyleContext,
    build_cover_prompt,
    build_scene_prompt,
    get_age_physical_descriptors,
    load_prompt_rules,
    resolve_reference_images,
    synthesize,
)
from picturebook.common import ValidationError
from picturebook.story_generation import AvatarReference, Character


def _human(**overrides) -> Character:
    values = {"id": "mia", "name": "Mia", "entity_type": "human", "gender": "female", "age": "6", "role": "main"}
    values.update(overrides)
    return Character(**values)


def test_age_descriptors_use_numeric_label_and_bracket():
    toddler = get_age_physical_descriptors("2")
    assert toddler.label == "2-year-old"
    assert toddler.bracket == "toddler"
    assert "1:4 head-to-body" in toddler.proportions
    assert toddler.is_child

    preteen = get_age_physical_descriptors("12 years")
    assert preteen.bracket == "preteen"

    teen = get_age_physical_descriptors(13)
    assert teen.bracket == "teenager"
    assert not teen.is_child


@pytest.mark.parametrize("age", [None, "", "unknown"])
def test_age_descriptors_fall_back_to_adult(age):
    descriptors = get_age_physical_descriptors(age)
    assert descriptors.bracket == "adult"
    assert descriptors.years is None
    assert not descriptors.is_child


def test_human_prompt_is_deterministic():
    character = _human(clothing_style="a yellow raincoat")
    scene = SceneContext(description="a rainy park", action="jumping in puddles")
    first = synthesize("human", character, scene, StyleContext("watercolor"), visual_description="freckles")
    second = synthesize("human", character, scene, StyleContext("watercolor"), visual_description="freckles")
    assert first == second


def test_human_child_prompt_carries_proportions_and_child_negative():
    prompt = synthesize("human", _human())
    assert "SOLO: exactly one girl alone in the frame" in prompt.positive
    assert "SUBJECT: Mia, a 6-year-old girl." in prompt.positive
    assert "1:6 head-to-body" in prompt.positive
    assert "adult body on child" in prompt.negative


def test_human_adult_prompt_omits_child_proportion_negative():
    prompt = synthesize("human", _human(age="40", gender="male"))
    assert "SUBJECT: Mia, a 40-year-old man." in prompt.positive
    assert "adult body on child" not in prompt.negative


def test_human_negative_sections_follow_fixed_order():
    negative = synthesize("human", _human()).negative
    positions = [
        negative.index("bad anatomy"),
        negative.index("two people"),
        negative.index("animal ears"),
        negative.index("different outfit"),
        negative.index("adult body on child"),
        negative.index("blurry"),
    ]
    assert positions == sorted(positions)


def test_human_clothing_is_verbatim_when_given():
    prompt = synthesize("human", _human(clothing_style="a red polka-dot dress"))
    assert "wearing exactly a red polka-dot dress" in prompt.positive


def test_human_without_clothing_uses_bracket_fallback():
    prompt = synthesize("human", _human())
    assert "a casual long-sleeve top, jeans and sneakers" in prompt.positive


def test_animal_prompt_forbids_humans_and_clothing_by_default():
    puppy = Character(id="b", name="Biscuit", entity_type="animal", description="a golden retriever puppy")
    prompt = synthesize("animal", puppy)
    assert "SOLO ANIMAL: exactly one golden retriever puppy alone in the frame, no humans" in prompt.positive
    assert "NO CLOTHING" in prompt.positive
    negative = prompt.negative
    assert negative.index("human") < negative.index("anthropomorphic") < negative.index("two animals")
    assert "clothing, clothes" in negative


def test_animal_anthropomorphism_terms_precede_quality_terms():
    puppy = Character(id="b", name="Biscuit", entity_type="animal", description="a golden retriever puppy")
    negative = synthesize("animal", puppy).negative
    assert negative.index("anthropomorphic") < negative.index("blurry")
    assert negative.index("standing upright like a human") < negative.index("low quality")


def test_animal_without_description_uses_species_fallback():
    stray = Character(id="s", name="Pip", entity_type="animal", description=None)
    positive = synthesize("animal", stray).positive
    fallback = load_prompt_rules()["animal"]["species_fallback"]
    assert positive.startswith("SOLO ANIMAL")
    assert f"SPECIES: a real {fallback} with natural animal anatomy." in positive
    assert positive.index("SPECIES:") < positive.index("NAME: this animal is called Pip.")
    assert not positive.startswith("Pip")


def test_five_year_old_proportions_differ_from_adult_fallback():
    five = get_age_physical_descriptors("5")
    adult = get_age_physical_descriptors(None)
    assert "5" in five.label
    assert five.bracket == "young child"
    assert five.is_child
    assert five.proportions != adult.proportions
    assert "1:5 head-to-body" in five.proportions


def test_animal_with_accessories_keeps_them_and_drops_clothing_negative():
    cat = Character(
        id="c", name="Luna", entity_type="animal", description="tabby cat", clothing_style="a blue collar"
    )
    prompt = synthesize("animal", cat)
    assert "ACCESSORIES: wearing exactly a blue collar" in prompt.positive
    assert "costume, outfit" not in prompt.negative


def test_object_framing_depends_on_personality_cues():
    plain = Character(id="o", name="Lamp", entity_type="object", description="a brass lamp")
    lively = Character(id="t", name="Teddy", entity_type="object", description="a brave teddy bear")
    assert "PRODUCT FRAMING" in synthesize("object", plain).positive
    assert "CHARACTER FRAMING" in synthesize("object", lively).positive
    assert synthesize("object", plain).negative.startswith("human, person, people")


def test_unknown_entity_type_is_rejected():
    with pytest.raises(ValidationError):
        synthesize("robot", _human())


def test_unknown_art_style_is_used_verbatim():
    prompt = synthesize("human", _human(), style_context=StyleContext("linocut print, bold ink"))
    assert "STYLE: linocut print, bold ink." in prompt.positive


def test_reference_images_prefer_avatar_then_photo_then_placeholder():
    avatar = AvatarReference.parse(["https://a.test/1.png", "https://a.test/2.png"])
    with_avatar = _human(avatar=avatar, photo_url="https://p.test/mia.jpg")
    assert resolve_reference_images(with_avatar) == ("https://a.test/1.png",)
    assert resolve_reference_images(with_avatar, multi=True) == ("https://a.test/1.png", "https://a.test/2.png")
    assert resolve_reference_images(_human(photo_url="https://p.test/mia.jpg")) == ("https://p.test/mia.jpg",)
    assert resolve_reference_images(_human()) == (load_prompt_rules()["placeholder_reference"],)


def test_ensemble_scene_lists_one_reference_per_character_in_order():
    mia = _human(photo_url="https://p.test/mia.jpg")
    biscuit = Character(
        id="b",
        name="Biscuit",
        entity_type="animal",
        description="a golden retriever puppy",
        avatar=AvatarReference.parse(["https://a.test/b1.png", "https://a.test/b2.png"]),
    )
    prompt = build_scene_prompt(
        [CastMember(mia, "brown eyes"), CastMember(biscuit, "golden fur")],
        SceneContext(description="a sunny meadow"),
        StyleContext(),
    )
    assert prompt.reference_images == ("https://p.test/mia.jpg", "https://a.test/b1.png")
    assert "CAST: exactly 2 characters" in prompt.positive
    assert "Character 1: [reference image 1] Mia" in prompt.positive
    assert "Character 2: [reference image 2] Biscuit" in prompt.positive
    assert "nearby, reacting to the main action" in prompt.positive
    assert "duplicate character" in prompt.negative


def test_single_character_scene_uses_entity_template_with_default_action():
    prompt = build_scene_prompt([CastMember(_human())], SceneContext(description="a castle"), StyleContext())
    assert prompt.positive.startswith("SOLO:")
    assert "engaged in the main action" in prompt.positive


def test_cover_uses_all_avatar_images_without_duplicates():
    shared = AvatarReference.parse(["https://a.test/1.png", "https://a.test/2.png"])
    mia = _human(avatar=shared)
    leo = _human(id="leo", name="Leo", gender="male", role="supporting", avatar=shared)
    prompt = build_cover_prompt(
        [CastMember(mia), CastMember(leo)], title="Moon Garden", theme="adventure", style=StyleContext()
    )
    assert prompt.reference_images == ("https://a.test/1.png", "https://a.test/2.png")
    assert "Moon Garden" in prompt.positive


def test_seed_never_appears_in_prompt():
    prompt = synthesize("human", _human())
    assert "seed" not in prompt.positive.lower()
