"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
scoring and notification dispatch. Services are intentionally thin:
they validate input, check the caller's role or ownership, execute
domain logic and persist aggregates via repositories. Every expected
failure is raised as one of the `errors` kinds.

Callers are passed as `models.User` rows (the identity layer has
already authenticated them). Time comes from an injectable `clock`
returning naive UTC, so window and duration rules are testable.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Sequence

import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from . import access_codes, grading, models, repositories
from .config import settings
from .errors import (
    AuthorizationError,
    CapacityError,
    ConflictError,
    NotFoundError,
    ValidationError,
    WindowError,
)
from .models import as_utc, utcnow
from .notifications import NotificationDispatcher, dispatch_safely

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
JWT_SECRET = settings.JWT_SECRET
JWT_ALGORITHM = settings.JWT_ALGORITHM
JWT_EXPIRE_HOURS = settings.JWT_EXPIRE_HOURS

logger = logging.getLogger("campus_quiz.services")

Clock = Callable[[], datetime]


def _is_admin(user: models.User) -> bool:
    return user.role == models.ROLE_ADMIN


def _require_staff(user: models.User, action: str):
    if user.role not in (models.ROLE_FACULTY, models.ROLE_ADMIN):
        raise AuthorizationError(f"Not authorized to {action}")


def _can_manage_quiz(quiz: models.Quiz, user: models.User) -> bool:
    return _is_admin(user) or quiz.creator_id == user.id


def _percentage(obtained: int, total: int) -> float:
    return round(obtained / total * 100, 2) if total else 0.0


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str, role: str = models.ROLE_STUDENT) -> models.User:
        """Create a new user with a hashed password.

        Returns the persisted `User` instance.
        """
        if role not in models.ROLES:
            raise ValidationError(f"unknown role: {role}")
        if not username or not username.strip() or not password:
            raise ValidationError("username and password are required")
        hashed = PWD_CTX.hash(password)
        u = models.User(username=username.strip(), password_hash=hashed, role=role)
        return self.user_repo.create(u)

    def authenticate(self, username: str, password: str):
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        return self.issue_token(user)

    @staticmethod
    def issue_token(user: models.User) -> str:
        expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
        payload = {
            "user_id": user.id,
            "username": user.username,
            "role": user.role,
            "exp": int(expire.timestamp()),
        }
        return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


class CourseService:
    """Minimal course setup backing the course registry."""
    def __init__(self, session: Session):
        self.session = session
        self.registry = repositories.CourseRegistry(session)
        self.user_repo = repositories.UserRepository(session)

    def create_course(self, caller: models.User, code: str, name: str, faculty_id: Optional[int] = None) -> models.Course:
        """Create a course owned by the caller (admins may name another faculty)."""
        _require_staff(caller, "create courses")
        code = (code or "").strip().upper()
        if not code or not (name or "").strip():
            raise ValidationError("course code and name are required")
        owner_id = caller.id
        if faculty_id is not None and faculty_id != caller.id:
            if not _is_admin(caller):
                raise AuthorizationError("Only admins can create courses for other faculty")
            owner = self.user_repo.get(faculty_id)
            if not owner or owner.role not in (models.ROLE_FACULTY, models.ROLE_ADMIN):
                raise NotFoundError("Faculty not found")
            owner_id = owner.id
        return self.registry.create(models.Course(code=code, name=name.strip(), faculty_id=owner_id))

    def enroll(self, caller: models.User, course_id: int, student_id: int) -> models.Enrollment:
        course = self.registry.get(course_id)
        if not course:
            raise NotFoundError("Course not found")
        if course.faculty_id != caller.id and not _is_admin(caller):
            raise AuthorizationError("Not authorized to manage this course")
        student = self.user_repo.get(student_id)
        if not student or student.role != models.ROLE_STUDENT:
            raise NotFoundError("Student not found")
        return self.registry.enroll(course_id, student_id)


def question_view(question: models.Question, options: Sequence[models.QuestionOption], include_answers: bool = True) -> dict:
    """Serialise a question; `include_answers=False` strips correctness and explanation."""
    out = {
        'id': question.id,
        'prompt': question.prompt,
        'question_type': question.question_type,
        'marks': question.marks,
        'difficulty': question.difficulty,
        'tags': list(question.tags or []),
        'options': [],
    }
    for o in options:
        item = {'index': o.position, 'text': o.text}
        if include_answers:
            item['is_correct'] = bool(o.is_correct)
        out['options'].append(item)
    if include_answers:
        out['explanation'] = question.explanation
        out['created_by'] = question.created_by
    return out


class QuestionBankService:
    """Author and list graded questions."""
    def __init__(self, session: Session):
        self.session = session
        self.q_repo = repositories.QuestionRepository(session)

    def create_question(
        self,
        author: models.User,
        prompt: str,
        options: List[dict],
        question_type: str = models.QUESTION_SINGLE,
        marks: Optional[int] = None,
        difficulty: Optional[str] = None,
        tags: Optional[List[str]] = None,
        explanation: Optional[str] = None,
    ) -> models.Question:
        """Validate and persist a question with its ordered options.

        `options` is a list of `{text, is_correct}` dicts. Raises
        `ValidationError` when fewer than two options are given or none
        is marked correct.
        """
        _require_staff(author, "create questions")
        if not prompt or not prompt.strip():
            raise ValidationError("Question text is required")
        if not options or not isinstance(options, list) or len(options) < 2:
            raise ValidationError("At least two options are required")
        for opt in options:
            if not (opt.get('text') or '').strip():
                raise ValidationError("Every option needs text")
        if not any(bool(opt.get('is_correct')) for opt in options):
            raise ValidationError("At least one option must be marked as correct")
        if question_type not in models.QUESTION_TYPES:
            raise ValidationError(f"question_type must be one of {', '.join(models.QUESTION_TYPES)}")
        marks = 1 if marks is None else marks
        if marks < 1:
            raise ValidationError("marks must be a positive integer")
        difficulty = difficulty or "medium"
        if difficulty not in models.DIFFICULTIES:
            raise ValidationError(f"difficulty must be one of {', '.join(models.DIFFICULTIES)}")

        q = models.Question(
            prompt=prompt.strip(),
            question_type=question_type,
            marks=marks,
            difficulty=difficulty,
            tags=[t.strip() for t in (tags or []) if t and t.strip()],
            explanation=explanation,
            created_by=author.id,
        )
        opts = [models.QuestionOption(text=o['text'].strip(), is_correct=bool(o.get('is_correct'))) for o in options]
        created = self.q_repo.create(q, opts)
        logger.info("question_created id=%s author=%s type=%s", created.id, author.id, question_type)
        return created

    def get_question(self, question_id: int, caller: models.User) -> dict:
        _require_staff(caller, "view the question bank")
        q = self.q_repo.get(question_id)
        if not q:
            raise NotFoundError("Question not found")
        return question_view(q, self.q_repo.options_for(q.id))

    def list_questions(
        self,
        caller: models.User,
        difficulty: Optional[str] = None,
        question_type: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> List[dict]:
        """Authoring view of the bank, correctness flags included.

        Faculty see their own questions plus those written by any admin;
        admins see everything.
        """
        _require_staff(caller, "view the question bank")
        if _is_admin(caller):
            qs = self.q_repo.list_visible(difficulty=difficulty, question_type=question_type, tag=tag)
        else:
            qs = self.q_repo.list_visible(
                author_id=caller.id,
                include_admin_authored=True,
                difficulty=difficulty,
                question_type=question_type,
                tag=tag,
            )
        return [question_view(q, self.q_repo.options_for(q.id)) for q in qs]


class QuizService:
    """Create, read and adjust quiz definitions."""
    def __init__(
        self,
        session: Session,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Clock = utcnow,
        code_length: Optional[int] = None,
        max_code_retries: Optional[int] = None,
    ):
        self.session = session
        self.notifier = notifier
        self.clock = clock
        self.code_length = code_length or settings.ACCESS_CODE_LENGTH
        self.max_code_retries = max_code_retries or settings.ACCESS_CODE_MAX_RETRIES
        self.quiz_repo = repositories.QuizRepository(session)
        self.q_repo = repositories.QuestionRepository(session)
        self.registry = repositories.CourseRegistry(session)
        self.attempt_repo = repositories.AttemptRepository(session)

    def create_quiz(
        self,
        caller: models.User,
        title: str,
        course_id: int,
        question_ids: Sequence[int],
        duration_minutes: int,
        open_at: datetime,
        close_at: datetime,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> models.Quiz:
        """Create a quiz for a course the caller owns (or any course, for admins).

        Total marks are the sum of the referenced questions' marks. A
        unique access code is generated and the course's enrolled
        students are notified.
        """
        _require_staff(caller, "create quizzes")
        if not title or not title.strip():
            raise ValidationError("Quiz title is required")
        question_ids = list(question_ids or [])
        if not question_ids:
            raise ValidationError("At least one question is required")
        open_at, close_at = self._check_schedule(duration_minutes, open_at, close_at)

        course = self.registry.get(course_id)
        if not course:
            raise NotFoundError("Course not found")
        if course.faculty_id != caller.id and not _is_admin(caller):
            raise AuthorizationError("Not authorized to create quiz for this course")
        total_marks = self._total_marks(question_ids)

        quiz = models.Quiz(
            title=title.strip(),
            description=description,
            course_id=course.id,
            creator_id=caller.id,
            duration_minutes=duration_minutes,
            total_marks=total_marks,
            open_at=open_at,
            close_at=close_at,
            is_active=is_active,
            code=self._unique_code(),
        )
        quiz = self.quiz_repo.create(quiz, question_ids)
        logger.info("quiz_created id=%s course=%s creator=%s total_marks=%s", quiz.id, course.id, caller.id, total_marks)

        dispatch_safely(
            self.notifier,
            self.session,
            "New Quiz Created",
            f'A new quiz "{quiz.title}" has been created for {course.name}. '
            f'Login window: {quiz.open_at.isoformat()} to {quiz.close_at.isoformat()} (UTC)',
            self.registry.enrolled_student_ids(course.id),
            quiz_id=quiz.id,
        )
        return quiz

    def get_quiz(self, quiz_id: int, caller: models.User) -> dict:
        """Return a quiz with its questions; students get the redacted view."""
        quiz = self.quiz_repo.get(quiz_id)
        if not quiz:
            raise NotFoundError("Quiz not found")
        is_student = caller.role == models.ROLE_STUDENT
        if is_student and not self.registry.is_enrolled(quiz.course_id, caller.id):
            raise AuthorizationError("Not authorized to view this quiz")
        return self.quiz_view(quiz, include_answers=not is_student)

    def list_quizzes(
        self,
        caller: models.User,
        course_id: Optional[int] = None,
        active: Optional[bool] = None,
        page: int = 1,
        limit: int = 10,
    ) -> List[dict]:
        """One page of the quiz summaries visible to the caller, newest first.

        Students only see active quizzes of their courses whose login
        window is open right now; `active` filters staff listings.
        """
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        paging = {'offset': (page - 1) * limit, 'limit': limit}
        if caller.role == models.ROLE_STUDENT:
            quizzes = self.quiz_repo.find(
                course_ids=self.registry.course_ids_for_student(caller.id),
                course_id=course_id,
                active=True,
                open_at=self.clock(),
                **paging,
            )
        elif caller.role == models.ROLE_FACULTY:
            quizzes = self.quiz_repo.find(creator_id=caller.id, course_id=course_id, active=active, **paging)
        else:
            quizzes = self.quiz_repo.find(course_id=course_id, active=active, **paging)
        out = []
        for quiz in quizzes:
            summary = self.quiz_summary(quiz, include_code=caller.role != models.ROLE_STUDENT)
            if caller.role == models.ROLE_STUDENT:
                attempt = self.attempt_repo.get_for_student(quiz.id, caller.id)
                summary['has_attempted'] = attempt is not None
                summary['attempt_status'] = attempt.status if attempt else None
            out.append(summary)
        return out

    def update_quiz(self, quiz_id: int, caller: models.User, changes: dict) -> models.Quiz:
        """Apply owner edits: title, description, duration, window, active flag, questions."""
        quiz = self.quiz_repo.get(quiz_id)
        if not quiz:
            raise NotFoundError("Quiz not found")
        if not _can_manage_quiz(quiz, caller):
            raise AuthorizationError("Not authorized to update this quiz")
        # the question set fixes total marks; recorded scores are measured against it
        if changes.get('question_ids') is not None and self.attempt_repo.exists_for_quiz(quiz.id):
            raise ConflictError("Questions cannot be changed once the quiz has attempts")

        if 'title' in changes and changes['title'] is not None:
            if not changes['title'].strip():
                raise ValidationError("Quiz title is required")
            quiz.title = changes['title'].strip()
        if 'description' in changes:
            quiz.description = changes['description']
        duration = changes.get('duration_minutes') or quiz.duration_minutes
        open_at = changes.get('open_at') or quiz.open_at
        close_at = changes.get('close_at') or quiz.close_at
        quiz.open_at, quiz.close_at = self._check_schedule(duration, open_at, close_at)
        quiz.duration_minutes = duration
        if changes.get('is_active') is not None:
            quiz.is_active = bool(changes['is_active'])

        question_ids = changes.get('question_ids')
        if question_ids is not None:
            question_ids = list(question_ids)
            if not question_ids:
                raise ValidationError("At least one question is required")
            quiz.total_marks = self._total_marks(question_ids)
        quiz = self.quiz_repo.save(quiz, question_ids)
        logger.info("quiz_updated id=%s by=%s fields=%s", quiz.id, caller.id, sorted(changes))
        return quiz

    def regenerate_code(self, quiz_id: int, caller: models.User) -> models.Quiz:
        quiz = self.quiz_repo.get(quiz_id)
        if not quiz:
            raise NotFoundError("Quiz not found")
        if not _can_manage_quiz(quiz, caller):
            raise AuthorizationError("Not authorized to update this quiz")
        quiz.code = self._unique_code()
        return self.quiz_repo.save(quiz)

    def questions_for(self, quiz: models.Quiz, include_answers: bool) -> List[dict]:
        """The quiz's questions in order; references to deleted questions are dropped."""
        ids = self.quiz_repo.question_ids(quiz.id)
        by_id = self.q_repo.get_many(ids)
        return [
            question_view(by_id[qid], self.q_repo.options_for(qid), include_answers=include_answers)
            for qid in ids if qid in by_id
        ]

    def quiz_summary(self, quiz: models.Quiz, include_code: bool = True) -> dict:
        out = {
            'id': quiz.id,
            'title': quiz.title,
            'description': quiz.description,
            'course_id': quiz.course_id,
            'creator_id': quiz.creator_id,
            'duration_minutes': quiz.duration_minutes,
            'total_marks': quiz.total_marks,
            'open_at': quiz.open_at,
            'close_at': quiz.close_at,
            'is_active': quiz.is_active,
        }
        if include_code:
            out['code'] = quiz.code
        return out

    def quiz_view(self, quiz: models.Quiz, include_answers: bool) -> dict:
        out = self.quiz_summary(quiz, include_code=include_answers)
        out['questions'] = self.questions_for(quiz, include_answers=include_answers)
        return out

    def _check_schedule(self, duration_minutes: int, open_at: datetime, close_at: datetime):
        if not isinstance(duration_minutes, int) or duration_minutes < 1:
            raise ValidationError("Valid duration is required")
        if open_at is None or close_at is None:
            raise ValidationError("Login window start and end are required")
        open_at, close_at = as_utc(open_at), as_utc(close_at)
        if open_at >= close_at:
            raise ValidationError("Login window must open before it closes")
        return open_at, close_at

    def _total_marks(self, question_ids: Sequence[int]) -> int:
        by_id = self.q_repo.get_many(question_ids)
        missing = [qid for qid in dict.fromkeys(question_ids) if qid not in by_id]
        if missing:
            raise NotFoundError(f"One or more questions not found: {missing}")
        total = sum(by_id[qid].marks for qid in question_ids)
        if total <= 0:
            raise ValidationError("Quiz total marks must be positive")
        return total

    def _unique_code(self) -> str:
        for _ in range(self.max_code_retries):
            code = access_codes.generate_code(self.code_length)
            if not self.quiz_repo.code_exists(code):
                return code
        logger.error("access_code_exhausted retries=%s length=%s", self.max_code_retries, self.code_length)
        raise CapacityError("Could not allocate a unique quiz code; try again")


class AccessCodeService:
    """Resolve a typed access code to a quiz the student may start."""
    def __init__(self, session: Session, clock: Clock = utcnow):
        self.session = session
        self.clock = clock
        self.quiz_repo = repositories.QuizRepository(session)
        self.registry = repositories.CourseRegistry(session)
        self.attempt_repo = repositories.AttemptRepository(session)

    def verify_code(self, code: str, student: models.User) -> models.Quiz:
        normalized = access_codes.normalize_code(code)
        if not normalized:
            raise ValidationError("Quiz code is required")
        quiz = self.quiz_repo.get_by_code(normalized)
        now = self.clock()
        if not quiz or not quiz.is_active or not (quiz.open_at <= now < quiz.close_at):
            raise NotFoundError("Invalid or expired quiz code")
        if not self.registry.is_enrolled(quiz.course_id, student.id):
            raise AuthorizationError("You are not enrolled in this course")
        if self.attempt_repo.get_for_student(quiz.id, student.id):
            raise ConflictError("You have already attempted this quiz")
        return quiz


def attempt_view(attempt: models.QuizAttempt, answers: Iterable[models.AttemptAnswer], quiz_total: int,
                 include_snapshots: bool = False) -> dict:
    out = {
        'id': attempt.id,
        'quiz_id': attempt.quiz_id,
        'student_id': attempt.student_id,
        'status': attempt.status,
        'start_time': attempt.start_time,
        'end_time': attempt.end_time,
        'total_marks_obtained': attempt.total_marks_obtained,
        'total_marks': quiz_total,
        'percentage': attempt.percentage,
        'evaluated_by': attempt.evaluated_by,
        'evaluated_at': attempt.evaluated_at,
        'answers': [],
    }
    for a in answers:
        item = {
            'question_id': a.question_id,
            'selected_options': list(a.selected_options or []),
            'is_correct': a.is_correct,
            'marks_obtained': a.marks_obtained,
        }
        if include_snapshots:
            item['question'] = a.question_snapshot
        out['answers'].append(item)
    return out


class AttemptService:
    """State machine for a student's single attempt at a quiz.

    NotStarted -> in-progress (start) -> completed (submit) -> evaluated
    (faculty override). There is no retry or restart path.
    """
    def __init__(self, session: Session, notifier: Optional[NotificationDispatcher] = None, clock: Clock = utcnow):
        self.session = session
        self.notifier = notifier
        self.clock = clock
        self.attempt_repo = repositories.AttemptRepository(session)
        self.quiz_repo = repositories.QuizRepository(session)
        self.q_repo = repositories.QuestionRepository(session)
        self.registry = repositories.CourseRegistry(session)
        self.user_repo = repositories.UserRepository(session)

    def start_attempt(self, quiz_id: int, student: models.User) -> dict:
        """Open the caller's attempt and hand back the redacted questions.

        Checks run in a fixed order: quiz exists, quiz active, window
        open, caller enrolled, no previous attempt.
        """
        quiz = self.quiz_repo.get(quiz_id)
        if not quiz:
            raise NotFoundError("Quiz not found")
        if not quiz.is_active:
            raise WindowError("Quiz is not active")
        now = self.clock()
        if not (quiz.open_at <= now < quiz.close_at):
            raise WindowError("Quiz login window is not open")
        if not self.registry.is_enrolled(quiz.course_id, student.id):
            raise AuthorizationError("Not authorized to attempt this quiz")
        if self.attempt_repo.get_for_student(quiz.id, student.id):
            raise ConflictError("You have already attempted this quiz")

        attempt = self.attempt_repo.create(models.QuizAttempt(
            student_id=student.id,
            quiz_id=quiz.id,
            start_time=now,
            status=models.ATTEMPT_IN_PROGRESS,
        ))
        logger.info("attempt_started id=%s quiz=%s student=%s", attempt.id, quiz.id, student.id)
        quiz_svc = QuizService(self.session, clock=self.clock)
        return {
            'attempt': attempt_view(attempt, [], quiz.total_marks),
            'deadline': attempt.start_time + timedelta(minutes=quiz.duration_minutes),
            'quiz': quiz_svc.quiz_view(quiz, include_answers=False),
        }

    def submit_attempt(self, attempt_id: int, student: models.User, answers: Iterable[grading.Answer]) -> dict:
        """Score the submitted answers and complete the attempt.

        The recorded end time is capped at start + duration; late
        submissions are accepted but never recorded past that boundary.
        Answers for unknown questions, questions outside the quiz, or
        repeats of an already answered question are skipped.
        """
        attempt = self.attempt_repo.get(attempt_id)
        if not attempt:
            raise NotFoundError("Quiz attempt not found")
        if attempt.student_id != student.id:
            raise AuthorizationError("Not authorized to submit this attempt")
        if attempt.status != models.ATTEMPT_IN_PROGRESS:
            raise ConflictError("Quiz attempt is already completed")
        quiz = self.quiz_repo.get(attempt.quiz_id)
        if not quiz:
            raise NotFoundError("Quiz not found")

        deadline = attempt.start_time + timedelta(minutes=quiz.duration_minutes)
        attempt.end_time = max(attempt.start_time, min(self.clock(), deadline))

        answers = list(answers)
        in_quiz = set(self.quiz_repo.question_ids(quiz.id))
        questions = self.q_repo.get_many(a.question_id for a in answers)
        records = []
        seen = set()
        for ans in answers:
            question = questions.get(ans.question_id)
            if question is None or ans.question_id not in in_quiz or ans.question_id in seen:
                continue
            seen.add(ans.question_id)
            gradable = grading.from_model(question, self.q_repo.options_for(question.id))
            scored = grading.score(gradable, ans)
            records.append(models.AttemptAnswer(
                question_id=scored.question_id,
                selected_options=list(scored.selected),
                is_correct=scored.is_correct,
                marks_obtained=scored.marks_obtained,
                question_snapshot=grading.snapshot(gradable),
            ))

        attempt.total_marks_obtained = sum(r.marks_obtained for r in records)
        attempt.percentage = _percentage(attempt.total_marks_obtained, quiz.total_marks)
        attempt.status = models.ATTEMPT_COMPLETED
        attempt = self.attempt_repo.save(attempt, records)
        logger.info(
            "attempt_submitted id=%s quiz=%s student=%s score=%s/%s",
            attempt.id, quiz.id, student.id, attempt.total_marks_obtained, quiz.total_marks,
        )

        dispatch_safely(
            self.notifier,
            self.session,
            "Quiz Attempt Submitted",
            f'{student.username} has submitted the quiz "{quiz.title}"',
            [quiz.creator_id],
            quiz_id=quiz.id,
        )
        return attempt_view(attempt, self.attempt_repo.answers_for(attempt.id), quiz.total_marks)

    def evaluate_attempt(self, quiz_id: int, attempt_id: int, evaluator: models.User, overrides: Iterable[dict]) -> dict:
        """Apply faculty overrides to a completed attempt and recompute the total.

        Each override `{question_id, is_correct, marks_obtained}` replaces
        the stored record for that question; marks are clamped to
        [0, question marks]. Overrides for unanswered questions are ignored.
        """
        attempt = self.attempt_repo.get(attempt_id)
        if not attempt or attempt.quiz_id != quiz_id:
            raise NotFoundError("Quiz attempt not found")
        quiz = self.quiz_repo.get(quiz_id)
        if not quiz:
            raise NotFoundError("Quiz not found")
        if not _can_manage_quiz(quiz, evaluator):
            raise AuthorizationError("Not authorized to evaluate this attempt")
        if attempt.status == models.ATTEMPT_IN_PROGRESS:
            raise ConflictError("Quiz attempt has not been submitted yet")
        if attempt.status == models.ATTEMPT_EVALUATED:
            raise ConflictError("Quiz attempt has already been evaluated")

        records = self.attempt_repo.answers_for(attempt.id)
        by_question = {r.question_id: r for r in records}
        changed = []
        for override in overrides:
            record = by_question.get(override['question_id'])
            if record is None:
                continue
            ceiling = (record.question_snapshot or {}).get('marks')
            if ceiling is None:
                current = self.q_repo.get(record.question_id)
                ceiling = current.marks if current else 0
            record.is_correct = bool(override['is_correct'])
            record.marks_obtained = max(0, min(int(override['marks_obtained']), ceiling))
            changed.append(record)

        attempt.total_marks_obtained = sum(r.marks_obtained for r in records)
        attempt.percentage = _percentage(attempt.total_marks_obtained, quiz.total_marks)
        attempt.status = models.ATTEMPT_EVALUATED
        attempt.evaluated_by = evaluator.id
        attempt.evaluated_at = self.clock()
        attempt = self.attempt_repo.save(attempt, changed)
        logger.info(
            "attempt_evaluated id=%s quiz=%s evaluator=%s overrides=%d score=%s/%s",
            attempt.id, quiz.id, evaluator.id, len(changed), attempt.total_marks_obtained, quiz.total_marks,
        )

        dispatch_safely(
            self.notifier,
            self.session,
            "Quiz Evaluated",
            f'Your quiz "{quiz.title}" has been evaluated. '
            f'You scored {attempt.total_marks_obtained}/{quiz.total_marks}',
            [attempt.student_id],
            quiz_id=quiz.id,
        )
        return attempt_view(attempt, self.attempt_repo.answers_for(attempt.id), quiz.total_marks, include_snapshots=True)

    def get_attempt(self, attempt_id: int, caller: models.User) -> dict:
        attempt = self.attempt_repo.get(attempt_id)
        if not attempt:
            raise NotFoundError("Quiz attempt not found")
        quiz = self.quiz_repo.get(attempt.quiz_id)
        is_owner_student = attempt.student_id == caller.id
        is_staff = quiz is not None and _can_manage_quiz(quiz, caller)
        if not (is_owner_student or is_staff):
            raise AuthorizationError("Not authorized to view this attempt")
        return attempt_view(
            attempt,
            self.attempt_repo.answers_for(attempt.id),
            quiz.total_marks if quiz else 0,
            include_snapshots=is_staff,
        )

    def list_for_quiz(self, quiz_id: int, caller: models.User) -> List[dict]:
        quiz = self.quiz_repo.get(quiz_id)
        if not quiz:
            raise NotFoundError("Quiz not found")
        if not _can_manage_quiz(quiz, caller):
            raise AuthorizationError("Not authorized to view quiz attempts")
        out = []
        for attempt in self.attempt_repo.list_for_quiz(quiz.id):
            view = attempt_view(attempt, self.attempt_repo.answers_for(attempt.id), quiz.total_marks, include_snapshots=True)
            student = self.user_repo.get(attempt.student_id)
            view['student'] = {'id': student.id, 'username': student.username} if student else None
            out.append(view)
        return out

    def list_for_student(self, caller: models.User, student_id: Optional[int] = None) -> List[dict]:
        """Attempts of one student; defaults to the caller's own.

        Students may only list their own. Admins see every attempt of the
        student, faculty only those on quizzes they manage.
        """
        if student_id is None or student_id == caller.id:
            student_id = caller.id
        elif caller.role == models.ROLE_STUDENT:
            raise AuthorizationError("Not authorized to view these attempts")
        else:
            student = self.user_repo.get(student_id)
            if not student or student.role != models.ROLE_STUDENT:
                raise NotFoundError("Student not found")
        out = []
        for attempt in self.attempt_repo.list_for_student(student_id):
            quiz = self.quiz_repo.get(attempt.quiz_id)
            if student_id != caller.id and not (quiz is not None and _can_manage_quiz(quiz, caller)):
                continue
            view = attempt_view(attempt, self.attempt_repo.answers_for(attempt.id), quiz.total_marks if quiz else 0)
            view['quiz'] = {'id': quiz.id, 'title': quiz.title, 'course_id': quiz.course_id} if quiz else None
            out.append(view)
        return out
