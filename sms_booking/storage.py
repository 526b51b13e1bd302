import logging
import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Generator, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from sms_booking.config import settings

logger = logging.getLogger(__name__)

MAX_BODY_LENGTH = 1600

# check_same_thread=False is required for SQLite to work with FastAPI's
# threadpool and with background delivery tasks
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def utc_now() -> str:
    """Server timestamp, ISO-8601 UTC with microseconds."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def placeholder_id(prefix: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from sms_booking import models  # noqa: F401

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
    Check if the database is reachable and both tables exist.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in ("messages", "sessions"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_inbound_message(
    db: Session,
    from_msisdn: str,
    to_msisdn: str,
    body: str,
    message_id: Optional[str] = None,
    device_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> Tuple[Any, bool]:
    """
    Persist an inbound SMS (idempotent on the gateway message id).

    Returns:
        Tuple of (message, is_duplicate). For a duplicate the previously
        stored message is returned.
    """
    from sms_booking.models import Message, MessageDirection, MessageStatus

    message_id = message_id or placeholder_id("recv")
    now = utc_now()
    message = Message(
        message_id=message_id,
        direction=MessageDirection.RECEIVED.value,
        from_msisdn=from_msisdn,
        to_msisdn=to_msisdn,
        body=body[:MAX_BODY_LENGTH],
        status=MessageStatus.RECEIVED.value,
        device_id=device_id,
        replies=[],
        delivery_attempts=[],
        provider_payload=payload,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(message)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate inbound message detected: {message_id}")
        existing = db.query(Message).filter(Message.message_id == message_id).first()
        return existing, True

    logger.info(f"Inbound message stored: id={message.id}, from={from_msisdn}")
    return message, False


def create_outbound_message(
    db: Session,
    to_msisdn: str,
    body: str,
    from_msisdn: Optional[str] = None,
    reply_to_id: Optional[str] = None,
    device_id: Optional[str] = None,
    payload: Optional[dict] = None,
    notes: Optional[list] = None,
    commit: bool = True,
):
    """
    Persist a computed reply or notification as a pending outbound SMS.

    notes seeds the delivery log with explanatory no-op entries. With
    commit=False the row is only flushed so the caller can commit it together
    with a session update.
    """
    from sms_booking.models import Message, MessageDirection, MessageStatus, new_id

    now = utc_now()
    message = Message(
        id=new_id(),
        message_id=placeholder_id("auto"),
        direction=MessageDirection.SENT.value,
        from_msisdn=from_msisdn or settings.SMS_SENDER_NUMBER,
        to_msisdn=to_msisdn,
        body=body[:MAX_BODY_LENGTH],
        status=MessageStatus.PENDING.value,
        device_id=device_id,
        reply_to_id=reply_to_id,
        replies=[],
        delivery_attempts=list(notes or []),
        provider_payload=payload,
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    if commit:
        db.commit()
    else:
        db.flush()
    logger.info(f"Outbound message stored: id={message.id}, to={to_msisdn}, reply_to={reply_to_id}")
    return message


def add_reply_reference(db: Session, inbound, outbound_id: str, commit: bool = True) -> None:
    """Record that outbound_id answered the inbound message."""
    inbound.replies = [*(inbound.replies or []), outbound_id]
    inbound.updated_at = utc_now()
    if commit:
        db.commit()


def get_message(db: Session, pk: str):
    from sms_booking.models import Message

    return db.get(Message, pk)


def append_delivery_attempt(db: Session, pk: str, attempt: dict):
    """
    Append one attempt record to a message's delivery log and commit.

    The stored list is replaced by a longer copy; existing entries are never
    modified.
    """
    message = get_message(db, pk)
    if message is None:
        logger.warning(f"Cannot record delivery attempt, message not found: {pk}")
        return None
    message.delivery_attempts = [*(message.delivery_attempts or []), attempt]
    message.updated_at = utc_now()
    db.commit()
    return message


def set_delivery_outcome(
    db: Session,
    pk: str,
    status: str,
    gateway_message_id: Optional[str] = None,
    error: Optional[str] = None,
):
    """Set the final delivery status of an outbound message."""
    message = get_message(db, pk)
    if message is None:
        logger.warning(f"Cannot set delivery outcome, message not found: {pk}")
        return None
    message.status = status
    if gateway_message_id:
        message.message_id = gateway_message_id
    if error is not None:
        message.last_error = error
    message.updated_at = utc_now()
    try:
        db.commit()
    except IntegrityError:
        # gateway reused an id we already hold; keep the placeholder
        db.rollback()
        logger.warning(f"Gateway message id {gateway_message_id} already stored, keeping placeholder for {pk}")
        message = get_message(db, pk)
        message.status = status
        if error is not None:
            message.last_error = error
        message.updated_at = utc_now()
        db.commit()
    logger.info(f"Delivery outcome for {pk}: {status}")
    return message


def reassign_identity(db: Session, old_identity: str, new_identity: str) -> int:
    """
    Rewrite from/to of every message referencing old_identity.

    Does not commit; the caller owns the transaction.

    Returns:
        Number of message rows touched.
    """
    from sms_booking.models import Message

    moved_from = (
        db.query(Message)
        .filter(Message.from_msisdn == old_identity)
        .update({Message.from_msisdn: new_identity}, synchronize_session=False)
    )
    moved_to = (
        db.query(Message)
        .filter(Message.to_msisdn == old_identity)
        .update({Message.to_msisdn: new_identity}, synchronize_session=False)
    )
    return moved_from + moved_to


def get_messages(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    from_msisdn: Optional[str] = None,
    direction: Optional[str] = None,
    status: Optional[str] = None,
    q: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve messages with pagination and filtering.

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from sms_booking.models import Message

    logger.debug(f"Querying messages: limit={limit}, offset={offset}, from={from_msisdn}, "
                 f"direction={direction}, status={status}, q={q}")

    query = db.query(Message)
    if from_msisdn:
        query = query.filter(Message.from_msisdn == from_msisdn)
    if direction:
        query = query.filter(Message.direction == direction)
    if status:
        query = query.filter(Message.status == status)
    if q:
        query = query.filter(Message.body.ilike(f"%{q}%"))

    total = query.count()
    messages = (
        query.order_by(Message.created_at.asc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return messages, total


def get_conversation(db: Session, identity: str) -> list:
    """All messages sent by or to an identity, oldest first."""
    from sms_booking.models import Message

    return (
        db.query(Message)
        .filter(or_(Message.from_msisdn == identity, Message.to_msisdn == identity))
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def get_stats(db: Session) -> dict:
    """
    Message and session statistics for the /stats endpoint.

    Returns:
        Dictionary with stats data
    """
    from sms_booking.models import ConversationSession, Message, MessageDirection

    total_messages = db.query(func.count(Message.id)).scalar() or 0

    by_direction = {
        direction: count
        for direction, count in db.query(Message.direction, func.count(Message.id))
        .group_by(Message.direction)
        .all()
    }
    by_status = {
        status: count
        for status, count in db.query(Message.status, func.count(Message.id))
        .group_by(Message.status)
        .all()
    }

    inbound = Message.direction == MessageDirection.RECEIVED.value
    senders_count = (
        db.query(func.count(func.distinct(Message.from_msisdn))).filter(inbound).scalar() or 0
    )
    top_senders = (
        db.query(Message.from_msisdn, func.count(Message.id).label("count"))
        .filter(inbound)
        .group_by(Message.from_msisdn)
        .order_by(func.count(Message.id).desc(), Message.from_msisdn.asc())
        .limit(10)
        .all()
    )
    sessions_by_state = {
        state: count
        for state, count in db.query(ConversationSession.state, func.count(ConversationSession.id))
        .group_by(ConversationSession.state)
        .all()
    }

    first_message_ts = db.query(func.min(Message.created_at)).scalar()
    last_message_ts = db.query(func.max(Message.created_at)).scalar()

    logger.info(f"Stats computed: {total_messages} messages, {senders_count} senders")

    return {
        "total_messages": total_messages,
        "received": by_direction.get(MessageDirection.RECEIVED.value, 0),
        "sent": by_direction.get(MessageDirection.SENT.value, 0),
        "by_status": by_status,
        "senders_count": senders_count,
        "messages_per_sender": [{"from": row.from_msisdn, "count": row.count} for row in top_senders],
        "sessions_by_state": sessions_by_state,
        "first_message_ts": first_message_ts,
        "last_message_ts": last_message_ts,
    }


# =============================================================================
# Session Repository Functions
# =============================================================================

def get_session(db: Session, phone: str):
    from sms_booking.models import ConversationSession

    return db.query(ConversationSession).filter(ConversationSession.phone == phone).first()


def get_or_create_session(db: Session, phone: str):
    """
    Return the session for a phone identity, creating it in state 'new'.

    A concurrent insert for the same phone loses on the unique constraint and
    re-reads the winner.
    """
    from sms_booking.models import ConversationSession, SessionState

    session = get_session(db, phone)
    if session is not None:
        return session

    now = utc_now()
    session = ConversationSession(
        phone=phone,
        state=SessionState.NEW.value,
        service=None,
        meta={},
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(session)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Session for {phone} created concurrently, reloading")
        return get_session(db, phone)

    logger.info(f"Session created: id={session.id}, phone={phone}")
    return session


def save_session(db: Session, session) -> None:
    """
    Commit pending changes to a session.

    Raises sqlalchemy.orm.exc.StaleDataError when another writer bumped the
    version since the session was loaded.
    """
    session.updated_at = utc_now()
    db.commit()
