"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
courses, questions, quizzes, attempts). Repositories return SQLModel
objects and perform commits/refreshes where appropriate. Inserts that
are guarded by a unique constraint translate `IntegrityError` into
`ConflictError` after rolling the session back.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Sequence
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select, or_
from . import models
from .errors import ConflictError


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError(f"username already exists: {user.username}")
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class CourseRegistry:
    """Course lookups the quiz engine depends on, plus minimal course setup."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, course_id: int) -> Optional[models.Course]:
        return self.session.get(models.Course, course_id)

    def course_exists(self, course_id: int) -> bool:
        return self.get(course_id) is not None

    def owns_course(self, course_id: int, faculty_id: int) -> bool:
        course = self.get(course_id)
        return course is not None and course.faculty_id == faculty_id

    def is_enrolled(self, course_id: int, student_id: int) -> bool:
        stmt = select(models.Enrollment.id).where(
            models.Enrollment.course_id == course_id,
            models.Enrollment.student_id == student_id,
        )
        return self.session.exec(stmt).first() is not None

    def enrolled_student_ids(self, course_id: int) -> List[int]:
        stmt = select(models.Enrollment.student_id).where(models.Enrollment.course_id == course_id)
        return list(self.session.exec(stmt).all())

    def course_ids_for_student(self, student_id: int) -> List[int]:
        stmt = select(models.Enrollment.course_id).where(models.Enrollment.student_id == student_id)
        return list(self.session.exec(stmt).all())

    def create(self, course: models.Course) -> models.Course:
        """Persist a course; a duplicate code raises `ConflictError`."""
        self.session.add(course)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError(f"course code already exists: {course.code}")
        self.session.refresh(course)
        return course

    def enroll(self, course_id: int, student_id: int) -> models.Enrollment:
        """Enroll a student; enrolling twice returns the existing row."""
        existing = self.session.exec(
            select(models.Enrollment).where(
                models.Enrollment.course_id == course_id,
                models.Enrollment.student_id == student_id,
            )
        ).first()
        if existing:
            return existing
        enrollment = models.Enrollment(course_id=course_id, student_id=student_id)
        self.session.add(enrollment)
        self.session.commit()
        self.session.refresh(enrollment)
        return enrollment


class QuestionRepository:
    """CRUD operations for `Question` and related `QuestionOption` records."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, question: models.Question, options: List[models.QuestionOption]) -> models.Question:
        """Create a question and attach provided options.

        The question is flushed first to obtain an id, then that id is
        assigned to the options before everything is committed together.
        """
        self.session.add(question)
        self.session.flush()
        for position, opt in enumerate(options):
            opt.question_id = question.id
            opt.position = position
            self.session.add(opt)
        self.session.commit()
        self.session.refresh(question)
        return question

    def get(self, question_id: int) -> Optional[models.Question]:
        """Fetch a question by id."""
        return self.session.get(models.Question, question_id)

    def get_many(self, question_ids: Iterable[int]) -> dict:
        """Return `{id: Question}` for the ids that exist."""
        ids = set(question_ids)
        if not ids:
            return {}
        stmt = select(models.Question).where(models.Question.id.in_(ids))
        return {q.id: q for q in self.session.exec(stmt).all()}

    def options_for(self, question_id: int) -> List[models.QuestionOption]:
        """List the options of a question in position order."""
        stmt = (
            select(models.QuestionOption)
            .where(models.QuestionOption.question_id == question_id)
            .order_by(models.QuestionOption.position)
        )
        return list(self.session.exec(stmt).all())

    def list_visible(
        self,
        author_id: Optional[int] = None,
        include_admin_authored: bool = False,
        difficulty: Optional[str] = None,
        question_type: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> List[models.Question]:
        """List questions newest first, optionally restricted by author.

        With `author_id` set, only that author's questions are returned,
        plus every admin-authored question when `include_admin_authored`
        is True. Admin ids come from a subquery in the same statement.
        """
        stmt = select(models.Question)
        if author_id is not None:
            if include_admin_authored:
                admin_ids = select(models.User.id).where(models.User.role == models.ROLE_ADMIN)
                stmt = stmt.where(or_(models.Question.created_by == author_id, models.Question.created_by.in_(admin_ids)))
            else:
                stmt = stmt.where(models.Question.created_by == author_id)
        if difficulty:
            stmt = stmt.where(models.Question.difficulty == difficulty)
        if question_type:
            stmt = stmt.where(models.Question.question_type == question_type)
        stmt = stmt.order_by(models.Question.created_at.desc(), models.Question.id.desc())
        questions = list(self.session.exec(stmt).all())
        # tags live in a JSON column; filter in Python to stay backend-neutral
        if tag:
            questions = [q for q in questions if tag in (q.tags or [])]
        return questions


class QuizRepository:
    """Persist quizzes and their ordered question references."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, quiz_id: int) -> Optional[models.Quiz]:
        return self.session.get(models.Quiz, quiz_id)

    def get_by_code(self, code: str) -> Optional[models.Quiz]:
        stmt = select(models.Quiz).where(models.Quiz.code == code)
        return self.session.exec(stmt).first()

    def code_exists(self, code: str) -> bool:
        stmt = select(models.Quiz.id).where(models.Quiz.code == code)
        return self.session.exec(stmt).first() is not None

    def create(self, quiz: models.Quiz, question_ids: Sequence[int]) -> models.Quiz:
        """Store a quiz with its question references in one transaction.

        A code collision caught by the unique constraint raises `ConflictError`.
        """
        self.session.add(quiz)
        try:
            self.session.flush()
            self._add_references(quiz.id, question_ids)
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError(f"access code already in use: {quiz.code}")
        self.session.refresh(quiz)
        return quiz

    def save(self, quiz: models.Quiz, question_ids: Optional[Sequence[int]] = None) -> models.Quiz:
        """Commit changes to an existing quiz, replacing its questions if given."""
        self.session.add(quiz)
        try:
            if question_ids is not None:
                for ref in self._references(quiz.id):
                    self.session.delete(ref)
                self.session.flush()
                self._add_references(quiz.id, question_ids)
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError(f"access code already in use: {quiz.code}")
        self.session.refresh(quiz)
        return quiz

    def question_ids(self, quiz_id: int) -> List[int]:
        """Referenced question ids in quiz order (duplicates preserved)."""
        return [ref.question_id for ref in self._references(quiz_id)]

    def find(
        self,
        creator_id: Optional[int] = None,
        course_ids: Optional[Sequence[int]] = None,
        course_id: Optional[int] = None,
        active: Optional[bool] = None,
        open_at: Optional[datetime] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[models.Quiz]:
        """Newest first. `open_at` keeps only quizzes whose window contains that instant."""
        stmt = select(models.Quiz)
        if creator_id is not None:
            stmt = stmt.where(models.Quiz.creator_id == creator_id)
        if course_ids is not None:
            if not course_ids:
                return []
            stmt = stmt.where(models.Quiz.course_id.in_(list(course_ids)))
        if course_id is not None:
            stmt = stmt.where(models.Quiz.course_id == course_id)
        if active is not None:
            stmt = stmt.where(models.Quiz.is_active == active)
        if open_at is not None:
            stmt = stmt.where(models.Quiz.open_at <= open_at, models.Quiz.close_at > open_at)
        stmt = stmt.order_by(models.Quiz.created_at.desc(), models.Quiz.id.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.exec(stmt).all())

    def _references(self, quiz_id: int) -> List[models.QuizQuestion]:
        stmt = (
            select(models.QuizQuestion)
            .where(models.QuizQuestion.quiz_id == quiz_id)
            .order_by(models.QuizQuestion.position)
        )
        return list(self.session.exec(stmt).all())

    def _add_references(self, quiz_id: int, question_ids: Sequence[int]):
        for position, qid in enumerate(question_ids):
            self.session.add(models.QuizQuestion(quiz_id=quiz_id, question_id=qid, position=position))


class AttemptRepository:
    """Persist quiz attempts and their scored answers."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, attempt_id: int) -> Optional[models.QuizAttempt]:
        return self.session.get(models.QuizAttempt, attempt_id)

    def get_for_student(self, quiz_id: int, student_id: int) -> Optional[models.QuizAttempt]:
        stmt = select(models.QuizAttempt).where(
            models.QuizAttempt.quiz_id == quiz_id,
            models.QuizAttempt.student_id == student_id,
        )
        return self.session.exec(stmt).first()

    def exists_for_quiz(self, quiz_id: int) -> bool:
        stmt = select(models.QuizAttempt.id).where(models.QuizAttempt.quiz_id == quiz_id)
        return self.session.exec(stmt).first() is not None

    def create(self, attempt: models.QuizAttempt) -> models.QuizAttempt:
        """Insert a new attempt.

        The (student, quiz) unique constraint decides the winner when two
        starts race; the loser gets `ConflictError`.
        """
        self.session.add(attempt)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError("You have already attempted this quiz")
        self.session.refresh(attempt)
        return attempt

    def answers_for(self, attempt_id: int) -> List[models.AttemptAnswer]:
        stmt = (
            select(models.AttemptAnswer)
            .where(models.AttemptAnswer.attempt_id == attempt_id)
            .order_by(models.AttemptAnswer.id)
        )
        return list(self.session.exec(stmt).all())

    def save(self, attempt: models.QuizAttempt, answers: Iterable[models.AttemptAnswer] = ()) -> models.QuizAttempt:
        """Commit attempt changes together with new or modified answers."""
        self.session.add(attempt)
        for ans in answers:
            ans.attempt_id = attempt.id
            self.session.add(ans)
        self.session.commit()
        self.session.refresh(attempt)
        return attempt

    def list_for_quiz(self, quiz_id: int) -> List[models.QuizAttempt]:
        stmt = (
            select(models.QuizAttempt)
            .where(models.QuizAttempt.quiz_id == quiz_id)
            .order_by(models.QuizAttempt.created_at.desc(), models.QuizAttempt.id.desc())
        )
        return list(self.session.exec(stmt).all())

    def list_for_student(self, student_id: int) -> List[models.QuizAttempt]:
        stmt = (
            select(models.QuizAttempt)
            .where(models.QuizAttempt.student_id == student_id)
            .order_by(models.QuizAttempt.created_at.desc(), models.QuizAttempt.id.desc())
        )
        return list(self.session.exec(stmt).all())


class NotificationRepository:
    """Storage for in-app notifications."""
    def __init__(self, session: Session):
        self.session = session

    def add_many(self, notifications: List[models.Notification]) -> int:
        for n in notifications:
            self.session.add(n)
        self.session.commit()
        return len(notifications)

    def list_for_user(self, user_id: int, limit: int = 50) -> List[models.Notification]:
        stmt = (
            select(models.Notification)
            .where(models.Notification.recipient_id == user_id)
            .order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
            .limit(limit)
        )
        return list(self.session.exec(stmt).all())
