"""Short, human-typeable access codes for quizzes."""

import secrets
import string

ALPHABET = string.ascii_uppercase + string.digits


def generate_code(length: int = 6) -> str:
    """Return a random upper-case alphanumeric code of `length` characters."""
    return ''.join(secrets.choice(ALPHABET) for _ in range(length))


def normalize_code(raw: str) -> str:
    """Canonical form used for lookups: stripped and upper-cased."""
    return (raw or '').strip().upper()
