import pytest

from campus_quiz import grading
from campus_quiz.grading import Answer, MultipleCorrect, Option, SingleCorrect


def _single(marks=2):
    return SingleCorrect(1, "Q", (Option("A", True), Option("B", False), Option("C", False)), marks)


def _multiple(marks=3):
    return MultipleCorrect(2, "Q", (Option("A", True), Option("B", True), Option("C", False)), marks)


@pytest.mark.parametrize("selected, expected", [
    ({0}, 2),
    ({1}, 0),
    ({0, 1}, 0),
    (set(), 0),
])
def test_single_correct_is_all_or_nothing(selected, expected):
    scored = grading.score(_single(), Answer.of(1, selected))
    assert scored.marks_obtained == expected
    assert scored.is_correct is (expected > 0)


@pytest.mark.parametrize("selected, expected", [
    ({0, 1}, 3),
    ({1, 0}, 3),
    ({0}, 0),
    ({0, 1, 2}, 0),
    ({2}, 0),
])
def test_multiple_correct_requires_exact_set(selected, expected):
    assert grading.score(_multiple(), Answer.of(2, selected)).marks_obtained == expected


def test_repeated_indices_collapse_to_one_selection():
    scored = grading.score(_single(), Answer.of(1, [0, 0]))
    assert scored.is_correct
    assert scored.selected == (0,)


def test_out_of_range_selection_never_matches():
    assert grading.score(_single(), Answer.of(1, [7])).marks_obtained == 0
    assert grading.score(_multiple(), Answer.of(2, [0, 1, 9])).marks_obtained == 0


def test_single_uses_first_flagged_option_when_several_are_flagged():
    q = SingleCorrect(3, "Q", (Option("A", False), Option("B", True), Option("C", True)), 1)
    assert grading.score(q, Answer.of(3, [1])).is_correct
    assert not grading.score(q, Answer.of(3, [2])).is_correct


def test_snapshot_records_variant_and_flags():
    snap = grading.snapshot(_multiple())
    assert snap["question_type"] == "multiple"
    assert snap["marks"] == 3
    assert [o["is_correct"] for o in snap["options"]] == [True, True, False]
