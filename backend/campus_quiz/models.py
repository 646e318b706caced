"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table and uses relationships where appropriate.
Timestamps are stored as naive UTC (see `utcnow`).
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship

ROLE_STUDENT = "student"
ROLE_FACULTY = "faculty"
ROLE_ADMIN = "admin"
ROLES = (ROLE_STUDENT, ROLE_FACULTY, ROLE_ADMIN)

QUESTION_SINGLE = "single"
QUESTION_MULTIPLE = "multiple"
QUESTION_TYPES = (QUESTION_SINGLE, QUESTION_MULTIPLE)

DIFFICULTIES = ("easy", "medium", "hard")

ATTEMPT_IN_PROGRESS = "in-progress"
ATTEMPT_COMPLETED = "completed"
ATTEMPT_EVALUATED = "evaluated"


def utcnow() -> datetime:
    """Current time as naive UTC, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `role`: one of `student`, `faculty`, `admin`
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    role: str = Field(default=ROLE_STUDENT, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Course(SQLModel, table=True):
    """A course owned by one faculty member; quizzes are scoped to it."""
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    name: str
    faculty_id: int = Field(foreign_key='user.id', index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Enrollment(SQLModel, table=True):
    """Membership of a student in a course."""
    __table_args__ = (UniqueConstraint('course_id', 'student_id', name='uq_enrollment_course_student'),)

    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(foreign_key='course.id', index=True)
    student_id: int = Field(foreign_key='user.id', index=True)
    enrolled_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Question(SQLModel, table=True):
    """A graded question in the bank, owned by its author."""
    id: Optional[int] = Field(default=None, primary_key=True)
    prompt: str
    question_type: str = Field(default=QUESTION_SINGLE, index=True)
    marks: int = 1
    difficulty: str = Field(default="medium", index=True)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    explanation: Optional[str] = None
    created_by: int = Field(foreign_key='user.id', index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    options: List['QuestionOption'] = Relationship(
        back_populates='question',
        sa_relationship_kwargs={'order_by': 'QuestionOption.position'},
    )


class QuestionOption(SQLModel, table=True):
    """One option of a `Question`; `position` is the index students select by.

    `is_correct` marks whether this option is part of the correct answer.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    question_id: int = Field(foreign_key='question.id', index=True)
    position: int
    text: str
    is_correct: bool = False
    question: Optional[Question] = Relationship(back_populates='options')


class Quiz(SQLModel, table=True):
    """A scheduled, timed assessment scoped to a course."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: Optional[str] = None
    course_id: int = Field(foreign_key='course.id', index=True)
    creator_id: int = Field(foreign_key='user.id', index=True)
    duration_minutes: int
    total_marks: int
    open_at: datetime = Field(sa_type=DateTime)
    close_at: datetime = Field(sa_type=DateTime)
    is_active: bool = True
    code: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class QuizQuestion(SQLModel, table=True):
    """Ordered reference from a quiz to a bank question."""
    id: Optional[int] = Field(default=None, primary_key=True)
    quiz_id: int = Field(foreign_key='quiz.id', index=True)
    question_id: int = Field(foreign_key='question.id', index=True)
    position: int


class QuizAttempt(SQLModel, table=True):
    """A student's single attempt at a quiz.

    The (student, quiz) unique constraint is what actually enforces the
    single-attempt rule when two starts race each other.
    """
    __table_args__ = (UniqueConstraint('student_id', 'quiz_id', name='uq_attempt_student_quiz'),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key='user.id', index=True)
    quiz_id: int = Field(foreign_key='quiz.id', index=True)
    start_time: datetime = Field(sa_type=DateTime)
    end_time: Optional[datetime] = Field(default=None, sa_type=DateTime)
    status: str = Field(default=ATTEMPT_IN_PROGRESS, index=True)
    total_marks_obtained: int = 0
    percentage: float = 0.0
    evaluated_by: Optional[int] = Field(default=None, foreign_key='user.id')
    evaluated_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    answers: List['AttemptAnswer'] = Relationship(
        back_populates='attempt',
        sa_relationship_kwargs={'order_by': 'AttemptAnswer.id'},
    )


class AttemptAnswer(SQLModel, table=True):
    """A scored answer inside a `QuizAttempt`.

    `question_snapshot` holds the question content as it was when the
    answer was scored, so later edits to the bank do not rewrite history.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key='quizattempt.id', index=True)
    question_id: int = Field(foreign_key='question.id', index=True)
    selected_options: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    is_correct: bool = False
    marks_obtained: int = 0
    question_snapshot: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    attempt: Optional[QuizAttempt] = Relationship(back_populates='answers')


class Notification(SQLModel, table=True):
    """An in-app notification written by the default dispatcher."""
    id: Optional[int] = Field(default=None, primary_key=True)
    recipient_id: int = Field(foreign_key='user.id', index=True)
    title: str
    message: str
    quiz_id: Optional[int] = Field(default=None, foreign_key='quiz.id')
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
