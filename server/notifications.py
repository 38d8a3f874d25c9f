"""User-facing notifications raised by background processing."""

import logging

from sqlalchemy.orm import Session

from models import Notification

logger = logging.getLogger(__name__)


def notify(db: Session, user_id: int, title: str, content: str, kind: str = "info") -> Notification:
    """Record a notification for the user. The caller commits."""
    notification = Notification(user_id=user_id, kind=kind, title=title, content=content)
    db.add(notification)
    logger.info("Notification for user=%d: %s", user_id, title)
    return notification


def visits_detected_message(count: int, start, end) -> tuple[str, str]:
    title = "Visits suggested"
    if count == 0:
        content = f"No new visits were found between {start:%Y-%m-%d} and {end:%Y-%m-%d}."
    else:
        noun = "visit" if count == 1 else "visits"
        content = (
            f"{count} new {noun} found between {start:%Y-%m-%d} and {end:%Y-%m-%d}. "
            "Review them to confirm or decline."
        )
    return title, content
