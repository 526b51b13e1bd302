"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid
from enum import Enum

from sqlalchemy import JSON, Column, ForeignKey, Integer, String, Text

from sms_booking.storage import Base


def new_id() -> str:
    return uuid.uuid4().hex


class MessageDirection(str, Enum):
    RECEIVED = "received"
    SENT = "sent"


class MessageStatus(str, Enum):
    RECEIVED = "received"
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class SessionState(str, Enum):
    NEW = "new"
    AWAITING_PHONE = "awaiting_phone"
    AWAITING_SERVICE = "awaiting_service"
    AWAITING_OTHER_DESCRIPTION = "awaiting_other_description"
    LINK_SENT = "link_sent"
    SUBMITTED = "submitted"
    CANCELLED = "cancelled"


class Message(Base):
    """
    One SMS transmission, inbound or outbound.

    Table: messages
    Primary Key: id (system generated)
    message_id is the gateway-facing id and is unique when present; a repeated
    inbound gateway ID is rejected by the constraint, which keeps ingestion
    idempotent.
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=new_id)
    message_id = Column(String, unique=True, nullable=True, index=True)
    direction = Column(String, nullable=False, index=True)
    from_msisdn = Column(String, nullable=False, index=True)
    to_msisdn = Column(String, nullable=False, index=True)
    body = Column(Text, nullable=False)
    status = Column(String, nullable=False, index=True)
    device_id = Column(String, nullable=True)
    reply_to_id = Column(String, ForeignKey("messages.id"), nullable=True)
    replies = Column(JSON, nullable=False, default=list)
    # append-only, see storage.append_delivery_attempt
    delivery_attempts = Column(JSON, nullable=False, default=list)
    last_error = Column(Text, nullable=True)
    provider_payload = Column(JSON, nullable=True)
    created_at = Column(String, nullable=False, index=True)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)


class ConversationSession(Base):
    """
    Conversational state for one phone identity (digits or guest id).

    The id doubles as the session id carried in booking links. Writes are
    guarded by an optimistic version counter.
    """
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=new_id)
    phone = Column(String, unique=True, nullable=False, index=True)
    state = Column(String, nullable=False, default=SessionState.NEW.value)
    service = Column(Text, nullable=True)
    meta = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)

    __mapper_args__ = {"version_id_col": version}
