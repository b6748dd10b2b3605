import logging
import threading
import uuid
from datetime import datetime
from typing import Callable, Generator, Iterable, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from app.config import settings
from app.errors import NotFound, TransientStoreError, Unauthenticated, ValidationError
from app.identity import Identity
from app.utils import format_timestamp, utc_now

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


class ChangeNotifier:
    """
    Thread-safe registry of listeners called after every committed change
    to the message store (new message, or a newly added reader).

    Listeners run on the committing thread and must not block.
    """

    def __init__(self):
        self._listeners: set = set()
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a listener. Returns a function that unregisters it."""
        with self._lock:
            self._listeners.add(listener)

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.discard(listener)

        return unsubscribe

    def publish(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        logger.debug(f"Publishing store change to {len(listeners)} listeners")
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"Store change listener failed: {e}")

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)


# Global store change notifier
store_changes = ChangeNotifier()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from app.models import Message, MessageRead

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            logger.debug("Testing database connectivity...")
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

            # Probing the tables fails if the schema has not been applied
            db.execute(text("SELECT 1 FROM messages LIMIT 1"))
            db.execute(text("SELECT 1 FROM message_reads LIMIT 1"))
            logger.debug("Message tables found, schema is applied")
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def validate_message_content(
    text: Optional[str],
    image_url: Optional[str],
    thumbnail_url: Optional[str] = None,
    max_length: Optional[int] = None,
) -> str:
    """
    Validate message content before it is stored.

    Returns:
        The text to store ("" when absent)

    Raises:
        ValidationError: text too long, empty text without an image, or only
            one of image_url and thumbnail_url
    """
    if max_length is None:
        max_length = settings.MAX_TEXT_LENGTH
    text = text or ""
    if len(text) > max_length:
        raise ValidationError(f"text must be at most {max_length} characters")
    if not text and not image_url:
        raise ValidationError("text must not be empty when no image is attached")
    if thumbnail_url and not image_url:
        raise ValidationError("thumbnail_url requires image_url")
    if image_url and not thumbnail_url:
        raise ValidationError("image_url requires thumbnail_url")
    return text


def append_message(
    db: Session,
    identity: Optional[Identity],
    text: Optional[str] = None,
    image_url: Optional[str] = None,
    thumbnail_url: Optional[str] = None,
):
    """
    Append a new message to the store.

    The store assigns the id and the server timestamp, and derives the type
    from the attached content. The sender is not added to read_by.

    Args:
        db: Database session
        identity: Caller identity from the identity provider
        text: Message text (0-MAX_TEXT_LENGTH characters)
        image_url: Full-size image URL, if an image is attached
        thumbnail_url: Thumbnail URL, if an image is attached

    Returns:
        The stored Message

    Raises:
        Unauthenticated: no identity attached
        ValidationError: content constraints violated
        TransientStoreError: backend failure
    """
    from app.models import Message, derive_message_type

    if identity is None:
        raise Unauthenticated("authentication required to send messages")

    text = validate_message_content(text, image_url, thumbnail_url)
    message_type = derive_message_type(text, image_url)
    message_id = str(uuid.uuid4())
    timestamp = format_timestamp(utc_now())

    logger.info(f"Appending message: id={message_id}, sender={identity.user_id}, type={message_type.value}")
    logger.debug(f"Message details: ts={timestamp}, text_length={len(text)}")

    message = Message(
        id=message_id,
        text=text,
        sender_id=identity.user_id,
        sender_email=identity.email,
        timestamp=timestamp,
        type=message_type.value,
        image_url=image_url,
        thumbnail_url=thumbnail_url if image_url else None,
    )

    try:
        db.add(message)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to append message {message_id}: {e}")
        raise TransientStoreError("failed to store message") from e

    logger.info(f"Message appended successfully: {message_id}")
    store_changes.publish()
    return message


def get_message(db: Session, message_id: str):
    """
    Retrieve a message by its ID.

    Raises:
        NotFound: no message with that ID
    """
    from app.models import Message

    logger.info(f"Looking up message by ID: {message_id}")
    try:
        result = db.query(Message).filter(Message.id == message_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Failed to load message {message_id}: {e}")
        raise TransientStoreError("failed to load message") from e
    logger.info(f"Message lookup result: {'found' if result else 'not found'}")
    if result is None:
        raise NotFound(f"message {message_id} not found")
    return result


def query_recent(db: Session, limit: Optional[int] = None) -> list:
    """
    Retrieve the newest `limit` messages, returned oldest-first.

    Ordering: timestamp, then insertion order for equal timestamps.
    """
    from app.models import Message

    if limit is None:
        limit = settings.FEED_LIMIT

    logger.debug(f"Querying recent messages: limit={limit}")
    try:
        messages = (
            db.query(Message)
            .order_by(Message.timestamp.desc(), Message.seq.desc())
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        logger.error(f"Failed to query recent messages: {e}")
        raise TransientStoreError("failed to query messages") from e

    messages.reverse()
    logger.debug(f"Retrieved {len(messages)} recent messages")
    return messages


def _insert_reads_ignoring_existing(db: Session, rows: List[dict]) -> int:
    """
    Insert read receipts, skipping (message_id, user_id) keys that already
    exist. An existing key is never rewritten.

    Returns:
        Number of rows actually inserted (-1 if the driver cannot tell)
    """
    from app.models import MessageRead

    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect for read receipts: {dialect}")

    stmt = (
        insert(MessageRead)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
    )
    result = db.execute(stmt)
    return result.rowcount


def add_readers(
    db: Session,
    message_ids: Iterable[str],
    user_id: str,
    read_time: Optional[datetime] = None,
) -> int:
    """
    Record that `user_id` read every message in `message_ids`, in one
    transaction. Idempotent per message: existing entries are left untouched.

    A read time earlier than the message timestamp is clamped to it.

    Args:
        db: Database session
        message_ids: Messages to mark
        user_id: Reader
        read_time: When the messages were read (defaults to now)

    Returns:
        Number of receipts newly added

    Raises:
        NotFound: one of the messages does not exist (nothing is written)
        TransientStoreError: backend failure (nothing is written)
    """
    from app.models import Message

    ids = list(dict.fromkeys(message_ids))
    if not ids:
        return 0
    read_at = format_timestamp(read_time or utc_now())

    logger.info(f"Adding reader {user_id} to {len(ids)} messages")

    try:
        found = {
            row.id: row.timestamp
            for row in db.query(Message.id, Message.timestamp).filter(Message.id.in_(ids)).all()
        }
        missing = [message_id for message_id in ids if message_id not in found]
        if missing:
            raise NotFound(f"messages not found: {', '.join(missing)}")

        rows = [
            {
                "message_id": message_id,
                "user_id": user_id,
                "read_at": max(read_at, found[message_id]),
            }
            for message_id in ids
        ]
        inserted = _insert_reads_ignoring_existing(db, rows)
        db.commit()
    except NotFound:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to add reader {user_id}: {e}")
        raise TransientStoreError("failed to record read receipts") from e

    logger.info(f"Reader {user_id} added to {inserted} messages ({len(ids)} requested)")
    if inserted != 0:
        store_changes.publish()
    return max(inserted, 0)


def add_reader(
    db: Session,
    message_id: str,
    user_id: str,
    read_time: Optional[datetime] = None,
) -> bool:
    """
    Record that `user_id` read one message. No-op if already recorded.

    Returns:
        True if a receipt was added
    """
    return add_readers(db, [message_id], user_id, read_time) > 0
