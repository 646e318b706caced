"""Domain error taxonomy for the quiz engine.

Services raise these instead of HTTP exceptions so they stay usable
from scripts and tests; `main` maps each kind to its HTTP status.
"""


class QuizEngineError(Exception):
    """Base class for every expected failure of a quiz engine operation."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(QuizEngineError):
    """Malformed or incomplete input."""
    status_code = 400


class AuthorizationError(QuizEngineError):
    """Caller lacks the role or ownership relationship required."""
    status_code = 403


class NotFoundError(QuizEngineError):
    """A referenced quiz, question, course or attempt does not exist."""
    status_code = 404


class ConflictError(QuizEngineError):
    """Duplicate attempt, access code collision or state conflict."""
    status_code = 409


class WindowError(QuizEngineError):
    """Action attempted outside the availability window or on an inactive quiz."""
    status_code = 423


class CapacityError(QuizEngineError):
    """A bounded retry budget was exhausted."""
    status_code = 503
