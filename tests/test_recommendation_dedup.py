import pytest

from bf_recommendation_dedup import (
    MERGED_CONFLICT_NOTE, MERGED_DESCRIPTION, deduplicate_recommendations, parse_change_direction,
)

from conftest import make_change, make_rec


@pytest.mark.parametrize("text,expected", [
    ("+5%", (1, 0.05)),
    ("-0.3", (-1, 0.3)),
    ("32", (0, 32.0)),
    (" +10 ", (1, 10.0)),
])
def test_parse_change_direction(text, expected):
    sign, magnitude = parse_change_direction(text)
    assert sign == expected[0]
    assert magnitude == pytest.approx(expected[1])


def test_parse_change_direction_rejects_garbage():
    assert parse_change_direction("abc") is None
    assert parse_change_direction("+") is None


def test_title_only_collapse_by_title():
    recs = [
        make_rec("a", issue_id="i1", title="Check props"),
        make_rec("b", issue_id="i2", title="Check props"),
        make_rec("c", issue_id="i3", title="Check props", related=["i1", "i9"]),
        make_rec("d", issue_id="i4", title="Check motors"),
    ]
    out = deduplicate_recommendations(recs)
    assert [r.id for r in out] == ["a", "d"]
    assert out[0].related_issue_ids == ["i2", "i3", "i9"]
    assert out[1].related_issue_ids == []


def test_opposing_changes_are_blended():
    recs = [
        make_rec("a", issue_id="i1", priority=5, confidence=0.8,
                 changes=[make_change("pidDGain", "+0.3", "roll")]),
        make_rec("b", issue_id="i2", priority=3, confidence=0.8,
                 changes=[make_change("pidDGain", "-0.1", "roll")]),
    ]
    out = deduplicate_recommendations(recs)

    assert len(out) == 1
    merged = out[0]
    assert merged.id == "a"
    assert merged.changes[0].recommended_change == "+0.10"
    assert merged.title == "Adjust D gain on roll"
    assert merged.description == MERGED_DESCRIPTION
    assert merged.conflict_context == MERGED_CONFLICT_NOTE
    assert merged.related_issue_ids == ["i2"]


def test_opposing_percentages_stay_percentages():
    recs = [
        make_rec("a", changes=[make_change("dynamicNotchQ", "+10%", None)]),
        make_rec("b", changes=[make_change("dynamicNotchQ", "-20%", None)]),
    ]
    out = deduplicate_recommendations(recs)
    assert out[0].changes[0].recommended_change == "-5%"


def test_cancelling_changes_drop_recommendations():
    recs = [
        make_rec("a", changes=[make_change("pidPGain", "+10%", "pitch")]),
        make_rec("b", changes=[make_change("pidPGain", "-10%", "pitch")]),
    ]
    assert deduplicate_recommendations(recs) == []


def test_cancel_threshold_is_configurable():
    recs = [
        make_rec("a", confidence=0.5, changes=[make_change("pidPGain", "+10%", "pitch")]),
        make_rec("b", confidence=0.6, changes=[make_change("pidPGain", "-10%", "pitch")]),
    ]
    assert deduplicate_recommendations(recs) == []
    out = deduplicate_recommendations(recs, threshold=0.001)
    assert out[0].changes[0].recommended_change == "-1%"


def test_winner_keeps_other_changes():
    recs = [
        make_rec("a", priority=4, changes=[make_change("pidPGain", "+10%", "roll"),
                                           make_change("pidIGain", "+5%", "roll")]),
        make_rec("b", priority=6, changes=[make_change("pidPGain", "+5%", "roll")]),
    ]
    out = deduplicate_recommendations(recs)
    by_id = {r.id: r for r in out}

    assert [c.recommended_change for c in by_id["b"].changes] == ["+5%"]
    assert by_id["b"].conflict_context is None
    assert by_id["b"].title == "Rec b"
    assert "issue-a" in by_id["b"].related_issue_ids
    assert [c.parameter for c in by_id["a"].changes] == ["pidIGain"]


def test_priority_tie_broken_by_confidence_then_order():
    recs = [
        make_rec("a", priority=5, confidence=0.5, changes=[make_change("pidDGain", "+0.1", "yaw")]),
        make_rec("b", priority=5, confidence=0.9, changes=[make_change("pidDGain", "+0.2", "yaw")]),
    ]
    assert [r.id for r in deduplicate_recommendations(recs)] == ["b"]

    recs[1].confidence = 0.5
    assert [r.id for r in deduplicate_recommendations(recs)] == ["a"]


def test_axis_and_global_keys_do_not_collide():
    recs = [
        make_rec("a", changes=[make_change("pidPGain", "+10%", "roll")]),
        make_rec("b", changes=[make_change("pidPGain", "-10%", None)]),
    ]
    out = deduplicate_recommendations(recs)
    assert [r.id for r in out] == ["a", "b"]


def test_absolute_and_relative_are_not_blended():
    recs = [
        make_rec("a", priority=2, changes=[make_change("dynamicNotchCount", "2", None)]),
        make_rec("b", priority=3, changes=[make_change("dynamicNotchCount", "+1", None)]),
    ]
    out = deduplicate_recommendations(recs)
    assert len(out) == 1
    assert out[0].changes[0].recommended_change == "+1"
    assert out[0].conflict_context is None


def test_input_is_not_modified():
    change = make_change("pidDGain", "+0.3", "roll")
    recs = [
        make_rec("a", changes=[change]),
        make_rec("b", priority=1, changes=[make_change("pidDGain", "-0.2", "roll")]),
        make_rec("c", title="Same"),
        make_rec("d", title="Same"),
    ]
    before = [r.to_dict() for r in recs]
    out = deduplicate_recommendations(recs)
    assert [r.to_dict() for r in recs] == before
    assert out[0].changes[0] is not change


def test_empty_input():
    assert deduplicate_recommendations([]) == []
