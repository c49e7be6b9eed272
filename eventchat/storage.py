import logging
from typing import Generator, Optional, Tuple

from sqlalchemy import and_, create_engine, inspect, or_, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, selectinload, sessionmaker

from eventchat.config import settings
from eventchat.exceptions import InvalidRequestError, NotFoundError, PermissionDeniedError
from eventchat.utils import utc_now_iso

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("conversations", "messages", "reactions", "device_tokens", "notification_records")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from eventchat import models  # noqa: F401

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
        True if DB is healthy and every table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def create_conversation(
    db: Session,
    event_id: str,
    admin_identity: str,
    guest_identity: str,
) -> Tuple[object, bool]:
    """
    Create the conversation for (event, admin, guest), or return the existing one.

    Returns:
        Tuple of (conversation, created)
    """
    from eventchat.models import Conversation

    existing = (
        db.query(Conversation)
        .filter(
            Conversation.event_id == event_id,
            Conversation.admin_identity == admin_identity,
            Conversation.guest_identity == guest_identity,
        )
        .first()
    )
    if existing is not None:
        return existing, False

    conversation = Conversation(
        event_id=event_id,
        admin_identity=admin_identity,
        guest_identity=guest_identity,
        created_at=utc_now_iso(),
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent create of the same conversation
        db.rollback()
        existing = (
            db.query(Conversation)
            .filter(
                Conversation.event_id == event_id,
                Conversation.admin_identity == admin_identity,
                Conversation.guest_identity == guest_identity,
            )
            .one()
        )
        return existing, False

    logger.info(f"Conversation created: id={conversation.id}, event={event_id}")
    return conversation, True


def get_conversation(db: Session, conversation_id: int):
    from eventchat.models import Conversation

    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return conversation


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    conversation_id: int,
    sender_type: str,
    sender_identity: str,
    body: str,
    reply_to_id: Optional[int] = None,
    sender_name: Optional[str] = None,
    preview_length: int = 100,
):
    """
    Insert a message and its pending notification record in one transaction.

    The notification record is the outbox row for the dispatcher: it exists
    if and only if the message does.

    Args:
        db: Database session
        conversation_id: Target conversation
        sender_type: 'admin' or 'guest'
        sender_identity: Must match the conversation party for sender_type
        body: Message text (already validated)
        reply_to_id: Optional message in the same conversation
        sender_name: Optional display name carried into the push notification
        preview_length: Max characters of body copied into the notification

    Returns:
        Tuple of (message, notification_record)

    Raises:
        NotFoundError: conversation or reply target does not exist
        PermissionDeniedError: sender is not the matching party
    """
    from eventchat.models import Message, NotificationRecord

    conversation = get_conversation(db, conversation_id)
    expected = conversation.admin_identity if sender_type == "admin" else conversation.guest_identity
    if sender_identity != expected:
        raise PermissionDeniedError(
            f"{sender_identity} is not the {sender_type} of conversation {conversation_id}"
        )

    if reply_to_id is not None:
        target = db.get(Message, reply_to_id)
        if target is None or target.conversation_id != conversation_id:
            raise NotFoundError(f"Reply target {reply_to_id} not found in conversation {conversation_id}")

    now = utc_now_iso()
    message = Message(
        conversation_id=conversation_id,
        sender_type=sender_type,
        sender_identity=sender_identity,
        body=body,
        created_at=now,
        is_edited=False,
        reply_to_id=reply_to_id,
    )
    db.add(message)
    db.flush()

    preview = body if len(body) <= preview_length else body[:preview_length] + "..."
    record = NotificationRecord(
        message_id=message.id,
        conversation_id=conversation_id,
        event_id=conversation.event_id,
        recipient_identity=conversation.recipient_for(sender_identity),
        sender_identity=sender_identity,
        sender_name=sender_name,
        preview=preview,
        status="pending",
        push_sent=False,
        created_at=now,
    )
    db.add(record)
    db.commit()
    db.refresh(message)

    logger.info(
        f"Message created: id={message.id}, conversation={conversation_id}, "
        f"sender={sender_identity}, notification={record.id}"
    )
    return message, record


def get_message(db: Session, message_id: int):
    from eventchat.models import Message

    message = (
        db.query(Message)
        .options(selectinload(Message.reactions))
        .filter(Message.id == message_id)
        .first()
    )
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    return message


def update_message_body(db: Session, message_id: int, editor_identity: str, body: str):
    """
    Edit a message's text. Only the original sender may edit.

    Raises:
        NotFoundError, PermissionDeniedError
    """
    message = get_message(db, message_id)
    if message.sender_identity != editor_identity:
        raise PermissionDeniedError(f"{editor_identity} may not edit message {message_id}")

    message.body = body
    message.is_edited = True
    message.edited_at = utc_now_iso()
    db.commit()
    db.refresh(message)
    logger.info(f"Message edited: id={message_id}")
    return message


def delete_message(db: Session, message_id: int, requester_identity: str) -> int:
    """
    Hard-delete a message and its reactions. Only the original sender may delete.

    Returns:
        The conversation id the message belonged to
    """
    message = get_message(db, message_id)
    if message.sender_identity != requester_identity:
        raise PermissionDeniedError(f"{requester_identity} may not delete message {message_id}")

    conversation_id = message.conversation_id
    db.delete(message)
    db.commit()
    logger.info(f"Message deleted: id={message_id}, conversation={conversation_id}")
    return conversation_id


def count_messages(db: Session, conversation_id: int) -> int:
    from eventchat.models import Message

    return db.query(Message).filter(Message.conversation_id == conversation_id).count()


def get_messages_window(db: Session, conversation_id: int, limit: int, offset: int) -> Tuple[list, int]:
    """
    Count-then-offset window, ordered created_at ASC, id ASC.

    Returns:
        Tuple of (messages list, total count for the conversation)
    """
    from eventchat.models import Message

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    total = query.count()
    messages = (
        query.options(selectinload(Message.reactions))
        .order_by(Message.created_at.asc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.debug(f"Window conversation={conversation_id} offset={offset} limit={limit}: {len(messages)} of {total}")
    return messages, total


def get_messages_before(
    db: Session,
    conversation_id: int,
    limit: int,
    before_created_at: Optional[str] = None,
    before_id: Optional[int] = None,
) -> Tuple[list, int]:
    """
    Keyset page: the `limit` newest messages strictly older than the
    (before_created_at, before_id) cursor, returned oldest first.

    With no cursor, returns the newest page.
    """
    from eventchat.models import Message

    base = db.query(Message).filter(Message.conversation_id == conversation_id)
    total = base.count()
    query = base.options(selectinload(Message.reactions))
    if before_id is not None and before_created_at is None:
        raise InvalidRequestError("before_created_at is required with before_id")
    if before_created_at is not None:
        if before_id is None:
            raise InvalidRequestError("before_id is required with before_created_at")
        query = query.filter(
            or_(
                Message.created_at < before_created_at,
                and_(Message.created_at == before_created_at, Message.id < before_id),
            )
        )
    rows = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
    rows.reverse()
    return rows, total


# =============================================================================
# Reaction Repository Functions
# =============================================================================

def add_reaction(db: Session, message_id: int, reactor: str, emoji: str) -> Tuple[int, bool]:
    """
    Add a reaction (idempotent).

    Returns:
        Tuple of (conversation_id, is_duplicate)
        - is_duplicate True: the reactor already held this emoji, nothing changed
    """
    from eventchat.models import Reaction

    message = get_message(db, message_id)
    conversation_id = message.conversation_id
    db.add(Reaction(message_id=message_id, reactor=reactor, emoji=emoji, created_at=utc_now_iso()))
    try:
        db.commit()
    except IntegrityError:
        # (message, reactor, emoji) already exists - expected for idempotency
        db.rollback()
        logger.info(f"Duplicate reaction ignored: message={message_id}, reactor={reactor}, emoji={emoji}")
        return conversation_id, True

    logger.info(f"Reaction added: message={message_id}, reactor={reactor}, emoji={emoji}")
    return conversation_id, False


def remove_reaction(db: Session, message_id: int, reactor: str, emoji: str) -> Tuple[int, bool]:
    """
    Remove a reaction (idempotent).

    Returns:
        Tuple of (conversation_id, removed)
    """
    from eventchat.models import Reaction

    message = get_message(db, message_id)
    removed = (
        db.query(Reaction)
        .filter(
            Reaction.message_id == message_id,
            Reaction.reactor == reactor,
            Reaction.emoji == emoji,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Reaction remove: message={message_id}, reactor={reactor}, emoji={emoji}, removed={removed}")
    return message.conversation_id, removed > 0


# =============================================================================
# Device Token Repository Functions
# =============================================================================

def register_device_token(db: Session, identity: str, token: str, platform: Optional[str] = None) -> bool:
    """
    Upsert a push token. A token moving to a new identity is re-pointed.

    Returns:
        True if a new row was created, False if an existing one was refreshed
    """
    from eventchat.models import DeviceToken

    row = db.query(DeviceToken).filter(DeviceToken.token == token).first()
    created = row is None
    if created:
        row = DeviceToken(identity=identity, token=token, platform=platform, updated_at=utc_now_iso())
        db.add(row)
    else:
        row.identity = identity
        row.platform = platform or row.platform
        row.updated_at = utc_now_iso()
    db.commit()
    logger.info(f"Device token {'registered' if created else 'refreshed'} for {identity}")
    return created


def remove_device_token(db: Session, token: str) -> bool:
    from eventchat.models import DeviceToken

    removed = db.query(DeviceToken).filter(DeviceToken.token == token).delete(synchronize_session=False)
    db.commit()
    return removed > 0


def get_device_tokens(db: Session, identity: str) -> list:
    """All currently registered tokens for an identity, oldest registration first."""
    from eventchat.models import DeviceToken

    rows = (
        db.query(DeviceToken.token)
        .filter(DeviceToken.identity == identity)
        .order_by(DeviceToken.id.asc())
        .all()
    )
    return [row.token for row in rows]


# =============================================================================
# Notification Record Repository Functions
# =============================================================================

def get_notification(db: Session, notification_id: int):
    from eventchat.models import NotificationRecord

    record = db.get(NotificationRecord, notification_id)
    if record is None:
        raise NotFoundError(f"Notification record {notification_id} not found")
    return record


def list_pending_notification_ids(db: Session) -> list:
    from eventchat.models import NotificationRecord

    rows = (
        db.query(NotificationRecord.id)
        .filter(NotificationRecord.status == "pending")
        .order_by(NotificationRecord.id.asc())
        .all()
    )
    return [row.id for row in rows]


def claim_notification(db: Session, notification_id: int) -> bool:
    """
    Move a record from 'pending' to 'dispatching'.

    The conditional UPDATE is the single-attempt guard: only one caller can
    win the claim for a given record.
    """
    from eventchat.models import NotificationRecord

    result = db.execute(
        update(NotificationRecord)
        .where(NotificationRecord.id == notification_id, NotificationRecord.status == "pending")
        .values(status="dispatching")
    )
    db.commit()
    return result.rowcount == 1


def complete_notification(
    db: Session,
    notification_id: int,
    status: str,
    push_sent: bool,
    push_error: Optional[str] = None,
) -> None:
    """Write the terminal outcome of a dispatch attempt."""
    from eventchat.models import NotificationRecord

    db.execute(
        update(NotificationRecord)
        .where(NotificationRecord.id == notification_id, NotificationRecord.status == "dispatching")
        .values(
            status=status,
            push_sent=push_sent,
            push_sent_at=utc_now_iso() if push_sent else None,
            push_error=push_error,
        )
    )
    db.commit()
    logger.info(f"Notification {notification_id} completed: status={status}, push_sent={push_sent}")
