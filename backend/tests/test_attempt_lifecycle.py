from datetime import timedelta

import pytest

from campus_quiz import models, repositories, services
from campus_quiz.errors import AuthorizationError, ConflictError, NotFoundError, WindowError
from campus_quiz.grading import Answer
from campus_quiz.notifications import NotificationDispatcher


@pytest.fixture
def attempts(session, notifier, clock):
    return services.AttemptService(session, notifier=notifier, clock=clock)


@pytest.fixture
def two_question_quiz(make_question, make_quiz):
    q1 = make_question(marks=2, correct=(0,))
    q2 = make_question(marks=3, correct=(1,))
    return make_quiz([q1, q2], duration=10), q1, q2


def test_start_returns_redacted_questions(attempts, people, two_question_quiz, clock):
    quiz, q1, _ = two_question_quiz
    started = attempts.start_attempt(quiz.id, people.student)
    assert started["attempt"]["status"] == models.ATTEMPT_IN_PROGRESS
    assert started["attempt"]["start_time"] == clock()
    assert started["deadline"] == clock() + timedelta(minutes=10)
    assert [q["id"] for q in started["quiz"]["questions"]] == [q1.id, two_question_quiz[2].id]
    for q in started["quiz"]["questions"]:
        assert all("is_correct" not in o for o in q["options"])


def test_start_preconditions_in_order(session, attempts, people, make_question, make_quiz, clock):
    with pytest.raises(NotFoundError):
        attempts.start_attempt(12345, people.student)

    inactive = make_quiz([make_question()], is_active=False)
    # inactive wins over enrollment: even an outsider sees the window error
    with pytest.raises(WindowError, match="not active"):
        attempts.start_attempt(inactive.id, people.outsider)

    later = make_quiz([make_question()], opens_in=timedelta(minutes=5))
    with pytest.raises(WindowError, match="window"):
        attempts.start_attempt(later.id, people.outsider)

    open_quiz = make_quiz([make_question()])
    with pytest.raises(AuthorizationError):
        attempts.start_attempt(open_quiz.id, people.outsider)

    attempts.start_attempt(open_quiz.id, people.student)
    with pytest.raises(ConflictError):
        attempts.start_attempt(open_quiz.id, people.student)


@pytest.mark.parametrize("offset", [timedelta(seconds=-1), timedelta(hours=1), timedelta(hours=2)])
def test_start_outside_half_open_window(attempts, people, make_question, make_quiz, clock, offset):
    quiz = make_quiz([make_question()], open_for=timedelta(hours=1))
    clock.advance(seconds=offset.total_seconds())
    with pytest.raises(WindowError):
        attempts.start_attempt(quiz.id, people.student)


def test_start_at_open_instant_is_allowed(attempts, people, make_question, make_quiz, clock):
    quiz = make_quiz([make_question()], opens_in=timedelta(minutes=30))
    clock.advance(minutes=30)
    assert attempts.start_attempt(quiz.id, people.student)["attempt"]["id"]


def test_storage_constraint_rejects_racing_start(session, attempts, people, two_question_quiz, monkeypatch):
    quiz, _, _ = two_question_quiz
    attempts.start_attempt(quiz.id, people.student)
    # simulate the second request having passed the existence check before the first insert landed
    monkeypatch.setattr(repositories.AttemptRepository, "get_for_student", lambda self, quiz_id, student_id: None)
    with pytest.raises(ConflictError):
        attempts.start_attempt(quiz.id, people.student)
    count = len(repositories.AttemptRepository(session).list_for_quiz(quiz.id))
    assert count == 1


def test_end_to_end_score_then_evaluate(attempts, people, two_question_quiz, clock, notifier):
    quiz, q1, q2 = two_question_quiz
    attempt_id = attempts.start_attempt(quiz.id, people.student)["attempt"]["id"]
    clock.advance(minutes=4)

    result = attempts.submit_attempt(attempt_id, people.student, [Answer.of(q1.id, [0]), Answer.of(q2.id, [0])])
    assert result["status"] == models.ATTEMPT_COMPLETED
    assert (result["total_marks_obtained"], result["total_marks"]) == (2, 5)
    assert result["percentage"] == 40.0
    assert result["end_time"] == clock()
    assert notifier.sent[-1]["recipient_ids"] == [people.faculty.id]

    evaluated = attempts.evaluate_attempt(
        quiz.id, attempt_id, people.faculty,
        [{"question_id": q2.id, "is_correct": True, "marks_obtained": 3}],
    )
    assert evaluated["status"] == models.ATTEMPT_EVALUATED
    assert evaluated["total_marks_obtained"] == 5
    assert evaluated["evaluated_by"] == people.faculty.id
    assert notifier.sent[-1]["recipient_ids"] == [people.student.id]
    assert "5/5" in notifier.sent[-1]["message"]


def test_late_submission_is_clamped_to_duration(session, attempts, people, make_question, make_quiz, clock):
    q = make_question(marks=2)
    on_time_quiz = make_quiz([q], duration=10, title="on time")
    late_quiz = make_quiz([q], duration=10, title="late")
    start = clock()
    a_on_time = attempts.start_attempt(on_time_quiz.id, people.student)["attempt"]["id"]
    a_late = attempts.start_attempt(late_quiz.id, people.student)["attempt"]["id"]

    clock.advance(minutes=10)
    on_time = attempts.submit_attempt(a_on_time, people.student, [Answer.of(q.id, [0])])
    clock.advance(minutes=37)
    late = attempts.submit_attempt(a_late, people.student, [Answer.of(q.id, [0])])

    assert on_time["end_time"] == late["end_time"] == start + timedelta(minutes=10)
    assert on_time["total_marks_obtained"] == late["total_marks_obtained"] == 2


def test_submit_skips_unknown_foreign_and_repeated_answers(attempts, people, make_question, two_question_quiz):
    quiz, q1, _ = two_question_quiz
    stranger = make_question(marks=10)
    attempt_id = attempts.start_attempt(quiz.id, people.student)["attempt"]["id"]
    result = attempts.submit_attempt(attempt_id, people.student, [
        Answer.of(q1.id, [0]),
        Answer.of(q1.id, [0]),
        Answer.of(stranger.id, [0]),
        Answer.of(99999, [0]),
    ])
    assert [a["question_id"] for a in result["answers"]] == [q1.id]
    assert result["total_marks_obtained"] == 2


def test_submit_preconditions(attempts, people, two_question_quiz):
    quiz, q1, _ = two_question_quiz
    with pytest.raises(NotFoundError):
        attempts.submit_attempt(777, people.student, [])
    attempt_id = attempts.start_attempt(quiz.id, people.student)["attempt"]["id"]
    with pytest.raises(AuthorizationError):
        attempts.submit_attempt(attempt_id, people.outsider, [])
    attempts.submit_attempt(attempt_id, people.student, [Answer.of(q1.id, [0])])
    with pytest.raises(ConflictError):
        attempts.submit_attempt(attempt_id, people.student, [Answer.of(q1.id, [0])])


def test_scoring_uses_question_state_at_submission_and_snapshots_it(session, attempts, people, two_question_quiz):
    quiz, q1, _ = two_question_quiz
    attempt_id = attempts.start_attempt(quiz.id, people.student)["attempt"]["id"]
    # author moves the correct answer while the attempt is in progress
    for opt in repositories.QuestionRepository(session).options_for(q1.id):
        opt.is_correct = opt.position == 2
        session.add(opt)
    session.commit()

    result = attempts.submit_attempt(attempt_id, people.student, [Answer.of(q1.id, [2])])
    assert result["total_marks_obtained"] == 2

    detail = attempts.get_attempt(attempt_id, people.faculty)
    snap = detail["answers"][0]["question"]
    assert [o["is_correct"] for o in snap["options"]] == [False, False, True]
    # students do not get the answer key through their attempt
    assert "question" not in attempts.get_attempt(attempt_id, people.student)["answers"][0]


def test_evaluation_override_sum_and_clamp(attempts, people, make_question, make_quiz):
    qs = [make_question(marks=m) for m in (1, 2, 3, 4)]
    quiz = make_quiz(qs)
    attempt_id = attempts.start_attempt(quiz.id, people.student)["attempt"]["id"]
    # answers: correct, wrong, correct, wrong -> 1 + 0 + 3 + 0
    picks = [[0], [1], [0], [1]]
    done = attempts.submit_attempt(attempt_id, people.student, [Answer.of(q.id, p) for q, p in zip(qs, picks)])
    assert done["total_marks_obtained"] == 4

    evaluated = attempts.evaluate_attempt(quiz.id, attempt_id, people.faculty, [
        {"question_id": qs[1].id, "is_correct": True, "marks_obtained": 1},
        {"question_id": qs[3].id, "is_correct": True, "marks_obtained": 50},
    ])
    # overridden: 1 and clamp(50 -> 4); untouched: 1 and 3
    assert evaluated["total_marks_obtained"] == 1 + 1 + 3 + 4
    assert evaluated["total_marks_obtained"] <= quiz.total_marks


def test_evaluation_preconditions(attempts, people, make_question, make_quiz, two_question_quiz):
    quiz, q1, _ = two_question_quiz
    other_quiz = make_quiz([make_question()], title="other")
    attempt_id = attempts.start_attempt(quiz.id, people.student)["attempt"]["id"]
    override = [{"question_id": q1.id, "is_correct": True, "marks_obtained": 2}]

    with pytest.raises(ConflictError):
        attempts.evaluate_attempt(quiz.id, attempt_id, people.faculty, override)
    attempts.submit_attempt(attempt_id, people.student, [Answer.of(q1.id, [1])])

    with pytest.raises(NotFoundError):
        attempts.evaluate_attempt(other_quiz.id, attempt_id, people.faculty, override)
    with pytest.raises(AuthorizationError):
        attempts.evaluate_attempt(quiz.id, attempt_id, people.other_faculty, override)

    assert attempts.evaluate_attempt(quiz.id, attempt_id, people.admin, override)["total_marks_obtained"] == 2
    with pytest.raises(ConflictError):
        attempts.evaluate_attempt(quiz.id, attempt_id, people.faculty, override)


def test_attempt_listings(attempts, people, two_question_quiz):
    quiz, q1, _ = two_question_quiz
    attempt_id = attempts.start_attempt(quiz.id, people.student)["attempt"]["id"]
    attempts.submit_attempt(attempt_id, people.student, [Answer.of(q1.id, [0])])

    for_quiz = attempts.list_for_quiz(quiz.id, people.faculty)
    assert [a["id"] for a in for_quiz] == [attempt_id]
    assert for_quiz[0]["student"]["username"] == "alice"
    with pytest.raises(AuthorizationError):
        attempts.list_for_quiz(quiz.id, people.other_faculty)

    mine = attempts.list_for_student(people.student)
    assert [a["quiz"]["id"] for a in mine] == [quiz.id]
    assert attempts.list_for_student(people.outsider) == []
    with pytest.raises(AuthorizationError):
        attempts.get_attempt(attempt_id, people.outsider)


def test_staff_list_a_students_attempts(attempts, people, make_question, make_quiz, two_question_quiz):
    quiz, q1, _ = two_question_quiz
    admin_quiz = make_quiz([make_question()], creator=people.admin, title="admin's")
    for target in (quiz, admin_quiz):
        attempts.start_attempt(target.id, people.student)

    def quiz_ids(caller, student_id):
        return {a["quiz"]["id"] for a in attempts.list_for_student(caller, student_id=student_id)}

    assert quiz_ids(people.admin, people.student.id) == {quiz.id, admin_quiz.id}
    # faculty only see attempts on quizzes they manage
    assert quiz_ids(people.faculty, people.student.id) == {quiz.id}
    assert quiz_ids(people.other_faculty, people.student.id) == set()
    assert quiz_ids(people.student, people.student.id) == {quiz.id, admin_quiz.id}

    with pytest.raises(AuthorizationError):
        attempts.list_for_student(people.outsider, student_id=people.student.id)
    with pytest.raises(NotFoundError):
        attempts.list_for_student(people.faculty, student_id=people.other_faculty.id)
    with pytest.raises(NotFoundError):
        attempts.list_for_student(people.admin, student_id=4040)


class BrokenNotifier(NotificationDispatcher):
    def notify(self, *args, **kwargs):
        raise RuntimeError("mail relay unreachable")


def test_submit_and_evaluate_survive_notification_failures(session, people, two_question_quiz, clock):
    quiz, q1, q2 = two_question_quiz
    broken = services.AttemptService(session, notifier=BrokenNotifier(), clock=clock)
    attempt_id = broken.start_attempt(quiz.id, people.student)["attempt"]["id"]

    submitted = broken.submit_attempt(attempt_id, people.student, [Answer.of(q1.id, [0]), Answer.of(q2.id, [0])])
    assert (submitted["status"], submitted["total_marks_obtained"]) == (models.ATTEMPT_COMPLETED, 2)
    session.expire_all()
    stored = repositories.AttemptRepository(session).get(attempt_id)
    assert (stored.status, stored.total_marks_obtained) == (models.ATTEMPT_COMPLETED, 2)
    assert len(repositories.AttemptRepository(session).answers_for(attempt_id)) == 2

    evaluated = broken.evaluate_attempt(
        quiz.id, attempt_id, people.faculty,
        [{"question_id": q2.id, "is_correct": True, "marks_obtained": 3}],
    )
    assert evaluated["total_marks_obtained"] == 5
    session.expire_all()
    stored = repositories.AttemptRepository(session).get(attempt_id)
    assert (stored.status, stored.total_marks_obtained, stored.evaluated_by) == (
        models.ATTEMPT_EVALUATED, 5, people.faculty.id,
    )
