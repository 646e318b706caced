"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. Domain rules (at least two options, a
correct option, open before close) are checked by the services so the
same rules apply outside HTTP.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class RegisterIn(BaseModel):
    """Payload for user registration."""
    username: str
    password: str
    role: Literal["student", "faculty"] = "student"


class LoginIn(BaseModel):
    username: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str
    role: str


class CourseIn(BaseModel):
    code: str
    name: str
    faculty_id: Optional[int] = None


class EnrollmentIn(BaseModel):
    student_id: int


class OptionIn(BaseModel):
    """One option of a question; `is_correct` flags the right answer(s)."""
    text: str
    is_correct: bool = False


class QuestionIn(BaseModel):
    """Request format for authoring a single question."""
    prompt: str
    options: List[OptionIn]
    question_type: Literal["single", "multiple"] = "single"
    marks: Optional[int] = Field(default=None, ge=1)
    difficulty: Optional[Literal["easy", "medium", "hard"]] = None
    tags: List[str] = Field(default_factory=list)
    explanation: Optional[str] = None


class QuizIn(BaseModel):
    """Request format for scheduling a quiz."""
    title: str
    course_id: int
    question_ids: List[int]
    duration_minutes: int = Field(ge=1)
    open_at: datetime
    close_at: datetime
    description: Optional[str] = None
    is_active: bool = True


class QuizUpdateIn(BaseModel):
    """Partial update; omitted fields keep their current value."""
    title: Optional[str] = None
    description: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1)
    open_at: Optional[datetime] = None
    close_at: Optional[datetime] = None
    is_active: Optional[bool] = None
    question_ids: Optional[List[int]] = None


class QuizCreatedOut(BaseModel):
    id: int
    code: str
    total_marks: int


class VerifyCodeIn(BaseModel):
    code: str


class AnswerIn(BaseModel):
    """A submitted answer: the indices of the selected options."""
    question_id: int
    selected_options: List[int] = Field(default_factory=list)


class SubmissionIn(BaseModel):
    answers: List[AnswerIn] = Field(default_factory=list)


class EvaluationItemIn(BaseModel):
    """Faculty correction for one answered question."""
    question_id: int
    is_correct: bool
    marks_obtained: int


class EvaluationIn(BaseModel):
    evaluated_answers: List[EvaluationItemIn]
