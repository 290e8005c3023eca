from __future__ import annotations

import pytest

from picturebook.common import ValidationError
from picturebook.story_generation import AvatarReference, BookIntake, JobSettings, Outline, split_subject


def test_avatar_reference_normalizes_every_accepted_shape():
    assert AvatarReference.parse(None) is None
    assert AvatarReference.parse("") is None
    assert AvatarReference.parse("[]") is None

    single = AvatarReference.parse("https://a.test/1.png")
    assert single.kind == "single"
    assert single.primary == "https://a.test/1.png"

    encoded = AvatarReference.parse('["https://a.test/1.png", "https://a.test/2.png"]')
    assert encoded.kind == "multi"
    assert encoded.urls == ("https://a.test/1.png", "https://a.test/2.png")
    assert encoded.to_value() == ["https://a.test/1.png", "https://a.test/2.png"]

    assert AvatarReference.parse(["https://a.test/1.png"]).kind == "single"


def test_malformed_avatar_json_is_rejected():
    with pytest.raises(ValidationError):
        AvatarReference.parse('["https://a.test/1.png"')


def test_intake_promotes_first_character_when_no_main(intake_data):
    for character in intake_data["characters"]:
        character.pop("role", None)
    intake = BookIntake.from_mapping(intake_data)
    assert intake.main_character.name == "Mia"
    assert [c.role for c in intake.characters] == ["main", "supporting"]


def test_intake_rejects_two_main_characters(intake_data):
    intake_data["characters"][1]["role"] = "main"
    with pytest.raises(ValidationError):
        BookIntake.from_mapping(intake_data)


def test_intake_requires_a_character(intake_data):
    intake_data["characters"] = []
    with pytest.raises(ValidationError):
        BookIntake.from_mapping(intake_data)


def test_intake_rejects_unknown_entity_type(intake_data):
    intake_data["characters"][0]["entityType"] = "robot"
    with pytest.raises(ValidationError):
        BookIntake.from_mapping(intake_data)


def test_main_character_art_style_wins(intake_data):
    intake_data["characters"][0]["artStyle"] = "watercolor"
    assert BookIntake.from_mapping(intake_data).art_style == "watercolor"


def test_settings_split_subject_prefix():
    settings = JobSettings.from_mapping({"description": "Subject: dinosaurs. Mia loves fossils."})
    assert settings.subject == "dinosaurs"
    assert settings.free_text_description == "Mia loves fossils."
    assert split_subject("No prefix here") == (None, "No prefix here")


def test_settings_reject_unknown_age_range():
    with pytest.raises(ValidationError):
        JobSettings.from_mapping({"ageRange": "13-15"})


def test_intake_round_trips_through_store_shape(intake):
    restored = BookIntake.from_mapping(
        {
            "settings": intake.settings.to_dict(),
            "characters": [character.to_dict() for character in intake.characters],
        }
    )
    assert restored == intake


def test_outline_truncates_extra_scenes_and_rejects_short_ones():
    payload = {
        "title": "T",
        "scenes": [{"summary": f"s{n}"} for n in range(1, 5)],
    }
    outline = Outline.from_dict(payload, scene_count=3)
    assert [scene.number for scene in outline.scenes] == [1, 2, 3]
    with pytest.raises(ValueError):
        Outline.from_dict(payload, scene_count=5)
