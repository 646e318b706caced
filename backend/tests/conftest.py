import os
from datetime import datetime, timedelta
from types import SimpleNamespace

# keep the app's import-time engine in memory; tests bind their own engine below
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from campus_quiz import models, services
from campus_quiz.database import create_db_and_tables, get_session
from campus_quiz.main import _verify_rate_limiter, app, get_clock
from campus_quiz.notifications import RecordingNotifier

T0 = datetime(2026, 3, 2, 9, 0, 0)


class FakeClock:
    """Callable clock returning naive UTC; tests move it explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def people(session):
    """One user per role plus a second faculty and an unenrolled student."""
    auth = services.AuthService(session)
    return SimpleNamespace(
        admin=auth.register("root", "pw", role=models.ROLE_ADMIN),
        faculty=auth.register("prof", "pw", role=models.ROLE_FACULTY),
        other_faculty=auth.register("prof2", "pw", role=models.ROLE_FACULTY),
        student=auth.register("alice", "pw", role=models.ROLE_STUDENT),
        outsider=auth.register("bob", "pw", role=models.ROLE_STUDENT),
    )


@pytest.fixture
def course(session, people):
    svc = services.CourseService(session)
    c = svc.create_course(people.faculty, "cs101", "Intro to Programming")
    svc.enroll(people.faculty, c.id, people.student.id)
    return c


@pytest.fixture
def make_question(session, people):
    bank = services.QuestionBankService(session)

    def _make(marks=1, question_type=models.QUESTION_SINGLE, correct=(0,), n_options=3, author=None, **kw):
        options = [{"text": f"option {i}", "is_correct": i in correct} for i in range(n_options)]
        prompt = kw.pop("prompt", "Pick the right one")
        return bank.create_question(author or people.faculty, prompt, options,
                                    question_type=question_type, marks=marks, **kw)
    return _make


@pytest.fixture
def make_quiz(session, people, course, clock, notifier):
    def _make(questions, duration=10, opens_in=timedelta(0), open_for=timedelta(hours=1), creator=None, **kw):
        svc = services.QuizService(session, notifier=notifier, clock=clock)
        open_at = clock() + opens_in
        title = kw.pop("title", "Weekly quiz")
        course_id = kw.pop("course_id", course.id)
        return svc.create_quiz(
            creator or people.faculty,
            title,
            course_id,
            [q.id for q in questions],
            duration,
            open_at,
            open_at + open_for,
            **kw,
        )
    return _make


def auth_headers(user: models.User) -> dict:
    return {"Authorization": f"Bearer {services.AuthService.issue_token(user)}"}


@pytest.fixture
def client(engine, clock):
    def _session_override():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _session_override
    app.dependency_overrides[get_clock] = lambda: clock
    _verify_rate_limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    return auth_headers
