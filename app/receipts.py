"""
Read-receipt tracking.

Decides which messages a user has not read yet and records reads in one
batched write. Two passive triggers (a new feed snapshot, and the client
coming back to the foreground) funnel into the same best-effort entry
point, mark_read_quietly, which is safe to call redundantly.

A sender is treated as having read their own message: self-authored
messages are filtered out, and the sender is never inserted into read_by.
"""

import enum
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.metrics import record_mark_read_failure, record_read_receipts
from app.schemas import MessageResponse
from app.storage import SessionLocal, add_readers, query_recent

logger = logging.getLogger(__name__)


class ReadTrigger(str, enum.Enum):
    SNAPSHOT = "snapshot"
    FOREGROUND = "foreground"
    EXPLICIT = "explicit"


def unread_for(user_id: str, messages: Iterable) -> List[str]:
    """
    Ids of messages `user_id` has not read, in the order given.

    Messages sent by `user_id` are never included.
    """
    unread = []
    for message in messages:
        if message.sender_id == user_id:
            continue
        if user_id in message.read_by:
            continue
        if message.id not in unread:
            unread.append(message.id)
    return unread


def others_read_count(message, viewer_id: str) -> int:
    """Number of readers other than the viewer."""
    return sum(1 for reader in message.read_by if reader != viewer_id)


def has_outside_reader(message, viewer_id: str) -> bool:
    return others_read_count(message, viewer_id) > 0


def to_response(message, viewer_id: Optional[str]) -> MessageResponse:
    """Render a stored message for one viewer."""
    return MessageResponse(
        id=message.id,
        text=message.text or "",
        sender_id=message.sender_id,
        sender_email=message.sender_email or "",
        timestamp=message.timestamp,
        type=message.type,
        image_url=message.image_url,
        thumbnail_url=message.thumbnail_url,
        read_by=dict(message.read_by),
        read_count=others_read_count(message, viewer_id) if viewer_id else len(message.read_by),
    )


def mark_read(
    db: Session,
    user_id: str,
    messages: Iterable,
    read_time: Optional[datetime] = None,
) -> List[str]:
    """
    Mark every unread message in `messages` as read by `user_id`.

    All unread ids go to the store in one atomic batch. Failures propagate
    as a single error; retrying is safe because each receipt is written
    at most once.

    Returns:
        Ids submitted in the batch (empty when nothing was unread)
    """
    unread = unread_for(user_id, messages)
    if not unread:
        logger.debug(f"No unread messages for {user_id}")
        return []

    logger.info(f"Marking {len(unread)} messages read for {user_id}")
    added = add_readers(db, unread, user_id, read_time)
    record_read_receipts(added)
    return unread


def mark_read_quietly(
    user_id: str,
    messages: Iterable,
    trigger: ReadTrigger,
    session_factory: Callable[[], Session] = SessionLocal,
) -> List[str]:
    """
    Best-effort mark_read for passive triggers.

    Opens its own session so it can run after the caller's request or
    subscription is gone. Failures are logged and dropped; the next trigger
    retries.
    """
    try:
        with session_factory() as db:
            return mark_read(db, user_id, messages)
    except Exception as e:
        logger.warning(f"Best-effort mark_read failed for {user_id} (trigger={trigger.value}): {e}")
        record_mark_read_failure(trigger.value)
        return []


def on_foreground(
    user_id: str,
    limit: Optional[int] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> List[str]:
    """
    Foreground trigger: mark the current message window as read.

    Never raises.
    """
    logger.info(f"Foreground trigger for {user_id}")
    try:
        with session_factory() as db:
            messages = [to_response(message, user_id) for message in query_recent(db, limit)]
    except Exception as e:
        logger.warning(f"Could not load messages for foreground trigger ({user_id}): {e}")
        record_mark_read_failure(ReadTrigger.FOREGROUND.value)
        return []
    return mark_read_quietly(user_id, messages, ReadTrigger.FOREGROUND, session_factory)
