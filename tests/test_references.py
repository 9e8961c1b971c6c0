import pytest
from pydantic import ValidationError

from beatworks.pipeline.errors import InvalidReferenceError
from beatworks.pipeline.models import CharacterProfile, GeneratedSource, ReferenceType
from beatworks.pipeline.references import CharacterReferenceLibrary, resolve_reference

from conftest import make_reference


def test_exact_view_match(mara):
    resolved = resolve_reference(mara, "three-quarter-right")
    assert resolved.match == "exact"
    assert resolved.reference.id == "ref_mara_3q_right"


def test_tag_match(mara):
    resolved = resolve_reference(mara, "smile")
    assert resolved.match == "exact"
    assert resolved.reference.id == "ref_mara_smile"


def test_base_reference_can_match_its_own_view(mara):
    resolved = resolve_reference(mara, "front")
    assert resolved.match == "exact"
    assert resolved.reference.id == "ref_mara_base"


def test_unmatched_view_falls_back_to_base(mara):
    for view in ("profile-left", None, ""):
        resolved = resolve_reference(mara, view)
        assert resolved.match == "base"
        assert resolved.reference.id == "ref_mara_base"


def test_unknown_character_resolves_to_none():
    resolved = resolve_reference(None, "front")
    assert resolved.match == "none"
    assert not resolved.has_reference


def test_newest_matching_reference_wins(library):
    library.add_reference(
        "char_mara",
        make_reference("ref_mara_3q_right_v2", ReferenceType.ANGLE, view="three-quarter-right"),
    )

    resolved = library.resolve_reference("char_mara", "three-quarter-right")

    assert resolved.reference.id == "ref_mara_3q_right_v2"
    assert library.find_reference("ref_mara_3q_right") is not None


def test_new_base_supersedes_without_removal(library):
    profile = library.add_reference("char_jun", make_reference("ref_jun_base_v2", view="front"))

    assert profile.base_reference.id == "ref_jun_base_v2"
    assert [r.id for r in profile.superseded_base_references] == ["ref_jun_base"]
    assert library.find_reference("ref_jun_base").image_url.endswith("ref_jun_base.png")
    assert library.resolve_reference("char_jun", "back").reference.id == "ref_jun_base_v2"


def test_reference_ids_are_owned_once(library):
    with pytest.raises(InvalidReferenceError):
        library.add_reference("char_jun", make_reference("ref_mara_smile", ReferenceType.EXPRESSION))

    jun = library.get_profile("char_jun")
    assert [r.id for r in jun.expression_references] == []


def test_add_reference_to_unknown_character(library):
    with pytest.raises(InvalidReferenceError):
        library.add_reference("char_nobody", make_reference("ref_x", ReferenceType.ANGLE))


def test_register_rejects_duplicates(library, mara):
    with pytest.raises(ValueError):
        library.register_profile(mara)

    thief = CharacterProfile(
        id="char_thief",
        name="Thief",
        base_reference=make_reference("ref_mara_base"),
    )
    with pytest.raises(InvalidReferenceError):
        library.register_profile(thief)
    assert library.get_profile("char_thief") is None


def test_library_hands_out_copies(library):
    profile = library.get_profile("char_mara")
    profile.angle_references.clear()

    assert len(library.get_profile("char_mara").angle_references) == 2


def test_unknown_character_lookup(library):
    resolved = library.resolve_reference("char_nobody", "front")
    assert resolved.character_id == "char_nobody"
    assert resolved.match == "none"
    assert library.find_reference("ref_missing") is None


def test_profile_validation():
    with pytest.raises(ValidationError):
        CharacterProfile(name="Bad", base_reference=make_reference("ref_a", ReferenceType.ANGLE))

    with pytest.raises(ValidationError):
        CharacterProfile(
            name="Dup",
            base_reference=make_reference("ref_a"),
            angle_references=[make_reference("ref_a", ReferenceType.ANGLE)],
        )


def test_references_are_immutable_and_record_their_source():
    ref = make_reference("ref_gen", ReferenceType.ANGLE, view="back").model_copy(
        update={"source": GeneratedSource(method="nano-banana", prompt="back view", seed=7)}
    )
    assert ref.generation_method == "nano-banana"
    with pytest.raises(ValidationError):
        ref.view = "front"
