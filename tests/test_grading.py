import pytest

import grading


def _mcq(qtype="MCQ_SINGLE", points=2, correct=("b",)):
    return {
        "type": qtype,
        "points": points,
        "options": [{"id": oid, "is_correct": oid in correct} for oid in ("a", "b", "c", "d")],
    }


def test_mcq_single_right_and_wrong():
    q = _mcq()
    assert grading.grade(q, {"selected_option_ids": ["b"]}) == {"points_awarded": 2.0, "needs_manual_grade": False}
    assert grading.grade(q, {"selected_option_ids": ["a"]})["points_awarded"] == 0.0
    assert grading.grade(q, {"selected_option_ids": []})["points_awarded"] == 0.0


def test_mcq_grading_is_deterministic():
    q = _mcq("MCQ_MULTI", correct=("a", "c"))
    answer = {"selected_option_ids": ["c", "a"]}
    results = {tuple(sorted(grading.grade(q, answer).items())) for _ in range(5)}
    assert len(results) == 1


def test_mcq_multi_is_all_or_nothing():
    q = _mcq("MCQ_MULTI", points=3, correct=("a", "c"))
    assert grading.grade(q, {"selected_option_ids": ["a", "c"]})["points_awarded"] == 3.0
    assert grading.grade(q, {"selected_option_ids": ["a"]})["points_awarded"] == 0.0
    assert grading.grade(q, {"selected_option_ids": ["a", "b", "c"]})["points_awarded"] == 0.0


def test_mcq_without_correct_options_scores_zero():
    q = _mcq(correct=())
    assert grading.grade(q, {"selected_option_ids": []})["points_awarded"] == 0.0


@pytest.mark.parametrize(
    "value, earned",
    [(9.5, 1.0), (10.5, 1.0), (10, 1.0), (9.49, 0.0), (10.51, 0.0)],
)
def test_numeric_tolerance_is_inclusive(value, earned):
    q = {"type": "NUMERIC", "points": 1, "correct_numeric": 10, "numeric_tolerance": 0.5}
    assert grading.grade(q, {"numeric_answer": value})["points_awarded"] == earned


def test_numeric_defaults_to_exact_match():
    q = {"type": "NUMERIC", "points": 1, "correct_numeric": 3.14, "numeric_tolerance": None}
    assert grading.grade(q, {"numeric_answer": 3.14})["points_awarded"] == 1.0
    assert grading.grade(q, {"numeric_answer": 3.15})["points_awarded"] == 0.0
    assert grading.grade(q, {"numeric_answer": None})["points_awarded"] == 0.0


def test_missing_answer_scores_zero_without_manual_flag():
    q = {"type": "LONG_TEXT", "points": 5}
    assert grading.grade(q, None) == {"points_awarded": 0.0, "needs_manual_grade": False}


def test_free_response_needs_manual_grading():
    q = {"type": "LONG_TEXT", "points": 5, "prompt_md": "Explain osmosis."}
    assert grading.grade(q, {"answer_text": "water moves"}) == {"points_awarded": 0.0, "needs_manual_grade": True}


def _blank_q(**fields):
    q = {
        "type": "SHORT_TEXT",
        "points": 4,
        "prompt_md": "The [blank1] pumps blood into the [blank2].",
        "blank_answers": ["heart", ["aorta", "arteries"]],
    }
    q.update(fields)
    return q


def test_fill_blank_partial_credit():
    q = _blank_q()
    assert grading.grade(q, {"answer_parts": ["Heart", "veins"]})["points_awarded"] == 2.0
    assert grading.grade(q, {"answer_parts": ["heart", "arteries"]})["points_awarded"] == 4.0


def test_fill_blank_legacy_delimited_text():
    q = _blank_q()
    out = grading.grade(q, {"answer_text": "heart | aorta"})
    assert out == {"points_awarded": 4.0, "needs_manual_grade": False}


def test_fill_blank_case_and_whitespace_options():
    q = _blank_q(blank_answers=["left  ventricle", "aorta"])
    answer = {"answer_parts": ["Left ventricle", "aorta"]}
    assert grading.grade(q, answer)["points_awarded"] == 4.0
    assert grading.grade(q, answer, case_sensitive=True)["points_awarded"] == 2.0
    assert grading.grade(q, answer, collapse_whitespace=False)["points_awarded"] == 2.0


def test_fill_blank_custom_points():
    q = _blank_q(points=5, blank_points=[4, None])
    assert grading.grade(q, {"answer_parts": ["heart", ""]})["points_awarded"] == 4.0
    assert grading.grade(q, {"answer_parts": ["", "aorta"]})["points_awarded"] == 1.0


def test_blank_prompt_without_key_goes_to_manual():
    q = _blank_q(blank_answers=None)
    assert grading.grade(q, {"answer_parts": ["heart", "aorta"]})["needs_manual_grade"] is True


def test_blank_weights():
    assert grading.blank_weights(6, 3, None) == [2.0, 2.0, 2.0]
    assert grading.blank_weights(6, 3, [3, None, None]) == [3, 1.5, 1.5]
    assert grading.blank_weights(6, 0, None) == []
    assert grading.blank_weights(2, 2, ["1", None]) == [1.0, 1.0]


def test_number_blanks_and_count():
    out = grading.number_blanks("A [blank] and [blank] and [blank7]")
    assert out == "A [blank1] and [blank2] and [blank3]"
    assert grading.blank_count(out) == 3


def test_parse_blank_key_variants():
    assert grading.parse_blank_key('{"answers": ["x", "y"], "points": [1, null]}') == (["x", "y"], [1.0, None])
    assert grading.parse_blank_key('["x"]') == (["x"], [])
    assert grading.parse_blank_key("free text rubric") == ([], [])
    assert grading.parse_blank_key(None) == ([], [])


def test_parse_frq_prompt():
    prompt = (
        "A patient presents with chest pain.\n\n"
        "---FRQ_PARTS---\n\n"
        "[PART:a:2]\nName the vessel.\n\n"
        "[PART:b:3.5]\nExplain the mechanism."
    )
    stem, parts = grading.parse_frq_prompt(prompt)
    assert stem == "A patient presents with chest pain."
    assert parts == [
        {"label": "a", "points": 2.0, "prompt": "Name the vessel."},
        {"label": "b", "points": 3.5, "prompt": "Explain the mechanism."},
    ]


def test_parse_frq_prompt_without_parts():
    assert grading.parse_frq_prompt("Just a question") == ("Just a question", [])


def test_split_part_answers_pads_and_truncates():
    assert grading.split_part_answers("one | two", 3) == ["one", "two", ""]
    assert grading.split_part_answers("one | two | three", 2) == ["one", "two"]
    assert grading.split_part_answers(None, 2) == ["", ""]


def test_part_points_helpers():
    parts = [{"label": "a", "points": 2}, {"label": "b", "points": 3}]
    merged = grading.merge_part_points({"0": 1.5}, {1: 2})
    assert merged == {"0": 1.5, "1": 2}
    assert grading.part_total(merged) == 3.5
    assert grading.all_parts_graded(merged, parts) is True
    assert grading.all_parts_graded({"0": 1.5}, parts) is False
    assert grading.part_total({}) is None


def test_merge_part_suggestions_keeps_earlier_parts():
    parts = [{"label": "a", "points": 2}, {"label": "b", "points": 3}, {"label": "c", "points": 1}]
    earlier = [{"part_index": 0, "part_label": "a", "suggested_score": 1.5, "summary": "ok"}]
    fresh = {1: {"part_index": 1, "part_label": "b", "suggested_score": 2.0, "summary": "good"}}
    merged = grading.merge_part_suggestions(earlier, fresh, parts)
    assert [p["part_index"] for p in merged] == [0, 1, 2]
    assert merged[0]["suggested_score"] == 1.5
    assert merged[1]["suggested_score"] == 2.0
    assert merged[2] == grading.part_placeholder(2, parts[2])
    assert grading.suggested_total(merged) == 3.5
