"""Notification dispatch used by the quiz engine.

Dispatch is best-effort: a failure is logged and swallowed so it can
never undo the state transition that triggered it. The default
dispatcher writes in-app `Notification` rows through the request's
session, after the triggering transition has already been committed.
"""

import logging
from typing import Iterable, List, Optional

from sqlmodel import Session

from . import models, repositories

logger = logging.getLogger("campus_quiz.notifications")


class NotificationDispatcher:
    """Interface: deliver a message to a set of users."""

    def notify(self, title: str, message: str, recipient_ids: Iterable[int], quiz_id: Optional[int] = None) -> None:
        raise NotImplementedError


class DatabaseNotifier(NotificationDispatcher):
    """Persist notifications as in-app messages."""

    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.NotificationRepository(session)

    def notify(self, title, message, recipient_ids, quiz_id=None):
        rows = [
            models.Notification(recipient_id=rid, title=title, message=message, quiz_id=quiz_id)
            for rid in dict.fromkeys(recipient_ids)
        ]
        if rows:
            self.repo.add_many(rows)


class RecordingNotifier(NotificationDispatcher):
    """Keeps sent messages in memory; handy for scripts and tests."""

    def __init__(self):
        self.sent: List[dict] = []

    def notify(self, title, message, recipient_ids, quiz_id=None):
        self.sent.append({
            'title': title,
            'message': message,
            'recipient_ids': list(recipient_ids),
            'quiz_id': quiz_id,
        })


def dispatch_safely(notifier: Optional[NotificationDispatcher], session: Optional[Session], title: str,
                    message: str, recipient_ids: Iterable[int], quiz_id: Optional[int] = None) -> bool:
    """Send a notification, logging and swallowing any failure.

    Returns True when the dispatcher accepted the message.
    """
    if notifier is None:
        return False
    recipients = list(recipient_ids)
    try:
        notifier.notify(title, message, recipients, quiz_id=quiz_id)
        return True
    except Exception:
        logger.exception("notification_failed title=%r quiz_id=%s recipients=%d", title, quiz_id, len(recipients))
        if session is not None:
            session.rollback()
        return False
