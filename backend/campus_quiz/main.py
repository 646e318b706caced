"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the campus quiz engine.
Controllers are intentionally thin: they accept requests, delegate to
services, and return JSON responses. Domain failures raised by the
services are mapped to status codes by a single exception handler.

Endpoints implemented:
- POST /auth/register, POST /auth/login
- POST /courses, POST /courses/{course_id}/enrollments
- POST /questions, GET /questions, GET /questions/{question_id}
- POST /quizzes, GET /quizzes, GET /quizzes/{quiz_id}, PATCH /quizzes/{quiz_id}
- POST /quizzes/{quiz_id}/code
- POST /quizzes/verify-code
- POST /quizzes/{quiz_id}/attempts, GET /quizzes/{quiz_id}/attempts
- PUT /quizzes/{quiz_id}/attempts/{attempt_id}/evaluate
- POST /attempts/{attempt_id}/submit, GET /attempts/me, GET /attempts/{attempt_id}
- GET /students/{student_id}/attempts
- GET /notifications
- GET /health
"""

import json
import logging
import time
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlmodel import Session

from . import grading, models, repositories, services
from .auth import get_current_user, require_roles
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import QuizEngineError
from .notifications import DatabaseNotifier, NotificationDispatcher
from .schemas import (
    CourseIn,
    EnrollmentIn,
    EvaluationIn,
    LoginIn,
    QuestionIn,
    QuizCreatedOut,
    QuizIn,
    QuizUpdateIn,
    RegisterIn,
    SubmissionIn,
    TokenOut,
    VerifyCodeIn,
)
from .utils.rate_limit import InMemoryRateLimiter

app = FastAPI(title="Campus Quiz Engine API")
logger = logging.getLogger("campus_quiz.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_verify_rate_limiter = InMemoryRateLimiter()

STAFF = (models.ROLE_FACULTY, models.ROLE_ADMIN)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
            },
            ensure_ascii=True,
        ),
    )
    return response


@app.exception_handler(QuizEngineError)
async def quiz_engine_error_handler(request: Request, exc: QuizEngineError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    # storage and driver errors stay in the log, never in the response
    logger.error(
        "unhandled_error request_id=%s path=%s error=%s",
        getattr(request.state, "request_id", ""), request.url.path, type(exc).__name__,
    )
    return JSONResponse(status_code=500, content={"detail": "internal server error"})


def get_clock():
    """Time source for window and duration checks; overridden in tests."""
    return models.utcnow


def get_notifier(db: Session = Depends(get_session)) -> NotificationDispatcher:
    return DatabaseNotifier(db)


@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new student or faculty user (idempotent).

    Returns the existing user if the username is taken with the same
    role, which keeps automation and tests simple.
    """
    existing = repositories.UserRepository(db).get_by_username(payload.username)
    if existing:
        if existing.role != payload.role:
            raise HTTPException(status_code=409, detail='username already exists')
        return {'id': existing.id, 'username': existing.username, 'role': existing.role}
    user = services.AuthService(db).register(payload.username, payload.password, payload.role)
    return {'id': user.id, 'username': user.username, 'role': user.role}


@app.post('/auth/login', response_model=TokenOut)
def login(payload: LoginIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT token.

    The returned token contains `user_id`, `username` and `role`.
    """
    auth = services.AuthService(db)
    token = auth.authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    user = repositories.UserRepository(db).get_by_username(payload.username)
    return {'access_token': token, 'role': user.role}


@app.post('/courses', status_code=201)
def create_course(payload: CourseIn, db: Session = Depends(get_session), user: models.User = Depends(require_roles(*STAFF))):
    course = services.CourseService(db).create_course(user, payload.code, payload.name, payload.faculty_id)
    return {'id': course.id, 'code': course.code, 'name': course.name, 'faculty_id': course.faculty_id}


@app.post('/courses/{course_id}/enrollments', status_code=201)
def enroll_student(course_id: int, payload: EnrollmentIn, db: Session = Depends(get_session),
                   user: models.User = Depends(require_roles(*STAFF))):
    enrollment = services.CourseService(db).enroll(user, course_id, payload.student_id)
    return {'course_id': enrollment.course_id, 'student_id': enrollment.student_id}


@app.post('/questions', status_code=201)
def create_question(payload: QuestionIn, db: Session = Depends(get_session), user: models.User = Depends(require_roles(*STAFF))):
    """Add a question to the bank; the caller becomes its author."""
    svc = services.QuestionBankService(db)
    q = svc.create_question(
        user,
        payload.prompt,
        [o.model_dump() for o in payload.options],
        question_type=payload.question_type,
        marks=payload.marks,
        difficulty=payload.difficulty,
        tags=payload.tags,
        explanation=payload.explanation,
    )
    return {'id': q.id, 'marks': q.marks}


@app.get('/questions')
def list_questions(difficulty: Optional[str] = None, question_type: Optional[str] = None, tag: Optional[str] = None,
                   db: Session = Depends(get_session), user: models.User = Depends(require_roles(*STAFF))):
    """List the question bank with correctness flags (authoring view).

    Faculty see their own questions plus admin-authored ones.
    """
    return services.QuestionBankService(db).list_questions(user, difficulty=difficulty, question_type=question_type, tag=tag)


@app.get('/questions/{question_id}')
def get_question(question_id: int, db: Session = Depends(get_session), user: models.User = Depends(require_roles(*STAFF))):
    return services.QuestionBankService(db).get_question(question_id, user)


@app.post('/quizzes', status_code=201, response_model=QuizCreatedOut)
def create_quiz(payload: QuizIn, db: Session = Depends(get_session), user: models.User = Depends(require_roles(*STAFF)),
                notifier: NotificationDispatcher = Depends(get_notifier), clock=Depends(get_clock)):
    """Schedule a quiz for a course and return its id, access code and total marks."""
    svc = services.QuizService(db, notifier=notifier, clock=clock)
    quiz = svc.create_quiz(
        user,
        payload.title,
        payload.course_id,
        payload.question_ids,
        payload.duration_minutes,
        payload.open_at,
        payload.close_at,
        description=payload.description,
        is_active=payload.is_active,
    )
    return {'id': quiz.id, 'code': quiz.code, 'total_marks': quiz.total_marks}


@app.get('/quizzes')
def list_quizzes(course_id: Optional[int] = None, active: Optional[bool] = None, page: int = Query(1, ge=1),
                 limit: int = Query(10, ge=1, le=100), db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user), clock=Depends(get_clock)):
    """Quizzes visible to the caller: open ones of enrolled courses, own quizzes, or all for admins."""
    svc = services.QuizService(db, clock=clock)
    return svc.list_quizzes(user, course_id=course_id, active=active, page=page, limit=limit)


@app.post('/quizzes/verify-code')
def verify_code(payload: VerifyCodeIn, db: Session = Depends(get_session),
                user: models.User = Depends(require_roles(models.ROLE_STUDENT)), clock=Depends(get_clock)):
    """Resolve an access code to the quiz the student may start."""
    allowed, retry_after = _verify_rate_limiter.allow(f"verify:{user.id}", settings.VERIFY_RATE_LIMIT_PER_MIN, 60)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )
    quiz = services.AccessCodeService(db, clock=clock).verify_code(payload.code, user)
    return {'valid': True, 'quiz_id': quiz.id, 'title': quiz.title, 'duration_minutes': quiz.duration_minutes,
            'total_marks': quiz.total_marks}


@app.get('/quizzes/{quiz_id}')
def get_quiz(quiz_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Return a quiz with its questions; correctness is stripped for students."""
    return services.QuizService(db).get_quiz(quiz_id, user)


@app.patch('/quizzes/{quiz_id}')
def update_quiz(quiz_id: int, payload: QuizUpdateIn, db: Session = Depends(get_session),
                user: models.User = Depends(require_roles(*STAFF))):
    svc = services.QuizService(db)
    quiz = svc.update_quiz(quiz_id, user, payload.model_dump(exclude_unset=True))
    return svc.quiz_summary(quiz)


@app.post('/quizzes/{quiz_id}/code')
def regenerate_code(quiz_id: int, db: Session = Depends(get_session), user: models.User = Depends(require_roles(*STAFF))):
    quiz = services.QuizService(db).regenerate_code(quiz_id, user)
    return {'id': quiz.id, 'code': quiz.code}


@app.post('/quizzes/{quiz_id}/attempts', status_code=201)
def start_attempt(quiz_id: int, db: Session = Depends(get_session),
                  user: models.User = Depends(require_roles(models.ROLE_STUDENT)), clock=Depends(get_clock)):
    """Start the caller's single attempt and return the redacted questions."""
    return services.AttemptService(db, clock=clock).start_attempt(quiz_id, user)


@app.get('/quizzes/{quiz_id}/attempts')
def list_quiz_attempts(quiz_id: int, db: Session = Depends(get_session), user: models.User = Depends(require_roles(*STAFF))):
    return services.AttemptService(db).list_for_quiz(quiz_id, user)


@app.put('/quizzes/{quiz_id}/attempts/{attempt_id}/evaluate')
def evaluate_attempt(quiz_id: int, attempt_id: int, payload: EvaluationIn, db: Session = Depends(get_session),
                     user: models.User = Depends(require_roles(*STAFF)),
                     notifier: NotificationDispatcher = Depends(get_notifier), clock=Depends(get_clock)):
    """Apply per-question overrides to a submitted attempt and return the new total."""
    svc = services.AttemptService(db, notifier=notifier, clock=clock)
    overrides = [item.model_dump() for item in payload.evaluated_answers]
    return svc.evaluate_attempt(quiz_id, attempt_id, user, overrides)


@app.post('/attempts/{attempt_id}/submit')
def submit_attempt(attempt_id: int, payload: SubmissionIn, db: Session = Depends(get_session),
                   user: models.User = Depends(require_roles(models.ROLE_STUDENT)),
                   notifier: NotificationDispatcher = Depends(get_notifier), clock=Depends(get_clock)):
    """Score the caller's answers; late submissions are capped at the duration."""
    svc = services.AttemptService(db, notifier=notifier, clock=clock)
    answers = [grading.Answer.of(a.question_id, a.selected_options) for a in payload.answers]
    return svc.submit_attempt(attempt_id, user, answers)


@app.get('/attempts/me')
def my_attempts(db: Session = Depends(get_session), user: models.User = Depends(require_roles(models.ROLE_STUDENT))):
    return services.AttemptService(db).list_for_student(user)


@app.get('/students/{student_id}/attempts')
def student_attempts(student_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """A student's attempts: their own, or those staff may see for a given student."""
    return services.AttemptService(db).list_for_student(user, student_id=student_id)


@app.get('/attempts/{attempt_id}')
def get_attempt(attempt_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.AttemptService(db).get_attempt(attempt_id, user)


@app.get('/notifications')
def my_notifications(limit: int = 50, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    rows = repositories.NotificationRepository(db).list_for_user(user.id, limit=max(1, min(limit, 200)))
    return [
        {'id': n.id, 'title': n.title, 'message': n.message, 'quiz_id': n.quiz_id, 'is_read': n.is_read,
         'created_at': n.created_at}
        for n in rows
    ]


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
