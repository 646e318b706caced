"""Exact-match scoring for quiz answers.

Stored questions are converted into one of two variants,
`SingleCorrect` or `MultipleCorrect`, and `score` dispatches on the
variant. Marks are all-or-nothing: there is no partial credit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Union

from . import models


@dataclass(frozen=True)
class Option:
    text: str
    is_correct: bool


@dataclass(frozen=True)
class SingleCorrect:
    """Exactly one selection, and it must be the flagged option."""
    question_id: int
    prompt: str
    options: tuple[Option, ...]
    marks: int

    @property
    def correct_index(self) -> Optional[int]:
        # the first flagged option is the answer if an author flagged several
        for idx, opt in enumerate(self.options):
            if opt.is_correct:
                return idx
        return None


@dataclass(frozen=True)
class MultipleCorrect:
    """The selected set must equal the flagged set."""
    question_id: int
    prompt: str
    options: tuple[Option, ...]
    marks: int

    @property
    def correct_indices(self) -> frozenset[int]:
        return frozenset(idx for idx, opt in enumerate(self.options) if opt.is_correct)


GradableQuestion = Union[SingleCorrect, MultipleCorrect]


@dataclass(frozen=True)
class Answer:
    question_id: int
    selected: frozenset[int]

    @classmethod
    def of(cls, question_id: int, selected: Iterable[int]) -> "Answer":
        return cls(question_id=question_id, selected=frozenset(selected))


@dataclass(frozen=True)
class ScoredAnswer:
    question_id: int
    selected: tuple[int, ...]
    is_correct: bool
    marks_obtained: int


def from_model(question: models.Question, options: Iterable[models.QuestionOption]) -> GradableQuestion:
    """Build the scoring variant for a stored question and its ordered options."""
    opts = tuple(Option(text=o.text, is_correct=bool(o.is_correct)) for o in options)
    if question.question_type == models.QUESTION_MULTIPLE:
        return MultipleCorrect(question.id, question.prompt, opts, question.marks)
    return SingleCorrect(question.id, question.prompt, opts, question.marks)


def score(question: GradableQuestion, answer: Answer) -> ScoredAnswer:
    """Score one answer against its question."""
    match question:
        case SingleCorrect():
            is_correct = len(answer.selected) == 1 and question.correct_index in answer.selected
        case MultipleCorrect():
            is_correct = answer.selected == question.correct_indices
        case _:
            raise TypeError(f"unsupported question variant: {type(question).__name__}")
    return ScoredAnswer(
        question_id=question.question_id,
        selected=tuple(sorted(answer.selected)),
        is_correct=is_correct,
        marks_obtained=question.marks if is_correct else 0,
    )


def snapshot(question: GradableQuestion) -> dict:
    """Serialisable copy of what a question looked like when it was scored."""
    kind = models.QUESTION_MULTIPLE if isinstance(question, MultipleCorrect) else models.QUESTION_SINGLE
    return {
        'prompt': question.prompt,
        'question_type': kind,
        'marks': question.marks,
        'options': [{'text': o.text, 'is_correct': o.is_correct} for o in question.options],
    }
