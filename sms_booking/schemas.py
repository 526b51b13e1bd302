"""
Pydantic schemas for request/response validation.

This module contains:
- The normalized inbound SMS model produced from raw gateway payloads
- Request models for the notification and gateway-test endpoints
- Response models for API responses
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Inbound
# =============================================================================

class InboundMessage(BaseModel):
    """
    One inbound SMS after field-synonym normalization.

    Gateways name their fields inconsistently; inbound.to_inbound maps every
    known variant onto this shape so nothing downstream looks at raw keys.
    """
    text: str = Field(..., description="Message text, trimmed")
    phone_candidate: Optional[str] = Field(None, description="Raw phone-like sender field")
    device_id: Optional[str] = Field(None, description="Gateway device that received the SMS")
    gateway_id: Optional[str] = Field(None, description="Gateway-assigned message ID")
    raw_payload: dict[str, Any] = Field(default_factory=dict, description="Payload as received")


# =============================================================================
# Pydantic Request Models
# =============================================================================

class BookingNotificationRequest(BaseModel):
    """Status update pushed by the booking system for one booking."""
    booking_id: str = Field(..., alias="bookingId", min_length=1)
    status: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    provider_name: Optional[str] = Field(None, alias="providerName")

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {
                    "bookingId": "6650f0c2a1",
                    "status": "accepted",
                    "phone": "9123456789",
                    "providerName": "Ravi Kumar"
                }
            ]
        }
    }

    @field_validator("booking_id", "phone", mode="before")
    @classmethod
    def coerce_to_str(cls, v: Any) -> Any:
        """Booking ids and phones may arrive as JSON numbers."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v))
        return v


class GatewayTestRequest(BaseModel):
    """Operator request to send one SMS synchronously through the gateway."""
    phone: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=1600)
    devices: Optional[str] = None

    @field_validator("phone", "devices", mode="before")
    @classmethod
    def coerce_to_str(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SessionSnapshot(BaseModel):
    phone: str
    session_id: str = Field(..., serialization_alias="sessionId")
    state: str
    service: Optional[str] = None


class MessageResultData(BaseModel):
    incoming_id: str = Field(..., serialization_alias="incomingId")
    outgoing_id: Optional[str] = Field(None, serialization_alias="outgoingId")
    from_msisdn: str = Field(..., serialization_alias="from")
    to: str
    message: str
    reply: Optional[str] = None
    session: Optional[SessionSnapshot] = None


class MessageResult(BaseModel):
    """Outcome of processing one inbound message of a webhook batch."""
    success: bool
    message: Optional[str] = None
    duplicate: bool = False
    error: Optional[str] = None
    data: Optional[MessageResultData] = None


class WebhookResponse(BaseModel):
    success: bool = True
    message: str
    results: list[MessageResult] = Field(default_factory=list)
    total_processed: int = Field(..., ge=0, serialization_alias="totalProcessed")
    successful: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    success: bool = False
    error: str = Field(..., description="Error description")


class BookingNotificationResponse(BaseModel):
    success: bool = True
    message: str = "Notification queued"
    sms_id: str = Field(..., serialization_alias="smsId")


class MessageResponse(BaseModel):
    """A stored SMS with its delivery history."""
    id: str
    message_id: Optional[str] = None
    direction: str
    from_msisdn: str = Field(..., serialization_alias="from")
    to: str
    body: str
    status: str
    device_id: Optional[str] = None
    reply_to_id: Optional[str] = None
    replies: list[str] = Field(default_factory=list)
    delivery_attempts: list[dict[str, Any]] = Field(default_factory=list)
    last_error: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_orm_message(cls, message) -> "MessageResponse":
        return cls(
            id=message.id,
            message_id=message.message_id,
            direction=message.direction,
            from_msisdn=message.from_msisdn,
            to=message.to_msisdn,
            body=message.body,
            status=message.status,
            device_id=message.device_id,
            reply_to_id=message.reply_to_id,
            replies=list(message.replies or []),
            delivery_attempts=list(message.delivery_attempts or []),
            last_error=message.last_error,
            created_at=message.created_at,
            updated_at=message.updated_at,
        )


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages with pagination.

    total counts every message matching the filters, ignoring limit/offset.
    """
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class SessionResponse(BaseModel):
    session_id: str = Field(..., serialization_alias="sessionId")
    phone: str
    state: str
    service: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")
    created_at: str
    updated_at: str

    @classmethod
    def from_orm_session(cls, session) -> "SessionResponse":
        return cls(
            session_id=session.id,
            phone=session.phone,
            state=session.state,
            service=session.service,
            meta=dict(session.meta or {}),
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


class ConversationResponse(BaseModel):
    phone: str
    session: Optional[SessionResponse] = None
    messages: list[MessageResponse] = Field(default_factory=list)


class GatewayTestResponse(BaseModel):
    success: bool
    status: str
    result: MessageResponse


class SenderCount(BaseModel):
    from_msisdn: str = Field(..., alias="from", serialization_alias="from")
    count: int = Field(..., ge=0)

    model_config = {"populate_by_name": True}


class StatsResponse(BaseModel):
    """
    Response model for GET /stats.

    Message counts by direction and status, unique inbound senders, the top
    10 senders, sessions per dialog state and the first/last message times.
    """
    total_messages: int = Field(..., ge=0)
    received: int = Field(..., ge=0)
    sent: int = Field(..., ge=0)
    by_status: dict[str, int] = Field(default_factory=dict)
    senders_count: int = Field(..., ge=0)
    messages_per_sender: list[SenderCount] = Field(default_factory=list)
    sessions_by_state: dict[str, int] = Field(default_factory=dict)
    first_message_ts: Optional[str] = None
    last_message_ts: Optional[str] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
