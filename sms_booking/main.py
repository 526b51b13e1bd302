import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from sms_booking.config import Settings, get_settings, settings
from sms_booking.delivery import DeliveryService
from sms_booking.identity import is_valid_phone, normalize_digits
from sms_booking.inbound import PayloadShapeError, normalize_payload, process_batch
from sms_booking.logging_utils import RequestLoggingMiddleware, get_request_id, log_webhook_data, setup_logging
from sms_booking.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from sms_booking.models import MessageStatus
from sms_booking.notifications import queue_booking_notification
from sms_booking.schemas import (
    BookingNotificationRequest,
    BookingNotificationResponse,
    ConversationResponse,
    ErrorResponse,
    GatewayTestRequest,
    GatewayTestResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    SessionResponse,
    StatsResponse,
    WebhookResponse,
)
from sms_booking.storage import (
    check_db_health,
    create_outbound_message,
    get_conversation,
    get_db,
    get_message,
    get_messages,
    get_session,
    get_stats,
    init_db,
)
from sms_booking.utils import WebhookRateLimiter, verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database, the delivery service and the webhook rate limiter
    - Shutdown: Close the gateway HTTP client
    """
    init_db()
    current = get_settings()
    app.state.delivery = DeliveryService(current)
    app.state.webhook_limiter = WebhookRateLimiter(
        limit=current.WEBHOOK_RATE_LIMIT,
        window_seconds=current.WEBHOOK_RATE_WINDOW_SECONDS,
    )
    yield
    await app.state.delivery.gateway.aclose()


app = FastAPI(
    title="SMS Booking Assistant",
    description="SMS conversational booking assistant with gateway delivery",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def get_delivery_service(request: Request) -> DeliveryService:
    return request.app.state.delivery


def _bad_request(error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": error},
    )


def _missing_fields(exc: ValidationError) -> str:
    fields = []
    for error in exc.errors():
        field = str(error["loc"][0]) if error["loc"] else "body"
        if field not in fields:
            fields.append(field)
    return "Missing or invalid fields: " + ", ".join(fields)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    response: Response,
    settings: Settings = Depends(get_settings),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. Replies can go out: a gateway API key is set, or mock send is allowed

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.gateway_configured and not settings.ALLOW_MOCK_SEND:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="SMS gateway not configured and mock send disabled"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid JSON or payload shape"},
        401: {"description": "Invalid signature"},
        429: {"model": ErrorResponse, "description": "Too many requests from this client"},
        500: {"description": "Internal server error"},
    }
)
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    delivery: DeliveryService = Depends(get_delivery_service),
):
    """
    Receive inbound SMS from the gateway and answer each one.

    - Accepts one message object or an array of them
    - Limits each client address to WEBHOOK_RATE_LIMIT requests per window
    - Verifies X-Signature / X-Webhook-Signature when WEBHOOK_SECRET is set
    - Stores every inbound message, runs the conversation and stores the reply
      as pending; replies are delivered after the response is sent
    - One bad message never fails the batch; it shows up as a failed result
    """
    raw_body = await request.body()
    logger.info(f"Webhook request received ({len(raw_body)} bytes)")

    client_host = request.client.host if request.client else "unknown"
    limiter = request.app.state.webhook_limiter
    if not limiter.allow(client_host):
        logger.warning(f"Webhook rate limit exceeded for {client_host}")
        record_webhook_outcome("rate_limited")
        log_webhook_data(request=request, result="rate_limited")
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"success": False, "error": "Too many webhook requests from this IP, please try again later."},
            headers={"Retry-After": str(limiter.window_seconds)},
        )

    if settings.WEBHOOK_SECRET:
        signature = request.headers.get("X-Signature") or request.headers.get("X-Webhook-Signature")
        timestamp = request.headers.get("X-Timestamp")
        if not verify_hmac_signature(raw_body, signature, settings.WEBHOOK_SECRET, timestamp):
            logger.error("Missing or invalid webhook signature")
            record_webhook_outcome("invalid_signature")
            log_webhook_data(request=request, result="invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid signature"
            )

    try:
        body = json.loads(raw_body)
        items = normalize_payload(body)
    except ValueError as e:
        error = str(e) if isinstance(e, PayloadShapeError) else f"Invalid JSON: {e}"
        logger.error(f"Rejected webhook payload: {error}")
        record_webhook_outcome("invalid_payload")
        log_webhook_data(request=request, result="invalid_payload")
        return _bad_request(error)

    try:
        results, jobs = process_batch(db, items, settings)

        for job in jobs:
            background_tasks.add_task(delivery.run, job, get_request_id())

        duplicates = sum(1 for r in results if r.duplicate)
        successful = sum(1 for r in results if r.success)
        failed = len(results) - successful
        record_webhook_outcome("processed", successful - duplicates)
        record_webhook_outcome("duplicate", duplicates)
        record_webhook_outcome("failed", failed)
        log_webhook_data(
            request=request,
            result="ok",
            processed=len(results),
            successful=successful,
            failed=failed,
        )
        logger.info(f"Webhook batch processed: {successful} ok, {failed} failed, {len(jobs)} replies queued")

        return WebhookResponse(
            message=f"Processed {len(results)} message(s)",
            results=results,
            total_processed=len(results),
            successful=successful,
            failed=failed,
        )
    except Exception:
        logger.exception("Webhook handler failed")
        log_webhook_data(request=request, result="error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Internal server error"},
        )


# =============================================================================
# Notification Routes
# =============================================================================

@app.post(
    "/booking-notification",
    response_model=BookingNotificationResponse,
    responses={400: {"model": ErrorResponse, "description": "Missing required fields"}},
)
async def booking_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    delivery: DeliveryService = Depends(get_delivery_service),
):
    """
    Queue a booking status SMS (accepted, quotation_sent, completed, ...).

    Body: {bookingId, status, phone, providerName?}
    """
    raw_body = await request.body()
    try:
        notification = BookingNotificationRequest.model_validate(json.loads(raw_body))
    except ValidationError as e:
        logger.warning(f"Invalid booking notification: {e.error_count()} error(s)")
        return _bad_request(_missing_fields(e))
    except ValueError as e:
        return _bad_request(f"Invalid JSON: {e}")

    message, job = queue_booking_notification(db, notification, settings)
    background_tasks.add_task(delivery.run, job, get_request_id())

    return BookingNotificationResponse(sms_id=message.id)


@app.post(
    "/gateway-test",
    response_model=GatewayTestResponse,
    responses={400: {"model": ErrorResponse, "description": "Missing required fields"}},
)
async def gateway_test(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    delivery: DeliveryService = Depends(get_delivery_service),
):
    """
    Send one SMS through the gateway and wait for the outcome.

    Returns the final status together with the full attempt log, for
    checking gateway credentials and connectivity.
    """
    raw_body = await request.body()
    try:
        test_request = GatewayTestRequest.model_validate(json.loads(raw_body))
    except ValidationError as e:
        return _bad_request(_missing_fields(e))
    except ValueError as e:
        return _bad_request(f"Invalid JSON: {e}")

    target = normalize_digits(test_request.phone) or test_request.phone
    device = test_request.devices or settings.SMS_GATEWAY_DEVICES
    message = create_outbound_message(
        db,
        to_msisdn=target,
        body=test_request.message,
        device_id=device,
        payload={"source": "gateway-test"},
    )
    final_status = await delivery.deliver(message.id, target, test_request.message, device)

    # delivery wrote through its own database session
    db.refresh(message)
    logger.info(f"Gateway test {message.id} finished: {final_status}")

    return GatewayTestResponse(
        success=final_status == MessageStatus.SENT.value,
        status=final_status,
        result=MessageResponse.from_orm_message(message),
    )


# =============================================================================
# Messages Routes
# =============================================================================

@app.get(
    "/messages",
    response_model=MessagesListResponse,
)
async def list_messages(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    from_param: Annotated[str | None, Query(alias="from", description="Filter by sender (exact match)")] = None,
    direction: Annotated[str | None, Query(description="received or sent")] = None,
    status_param: Annotated[str | None, Query(alias="status", description="received, pending, sent or failed")] = None,
    q: Annotated[str | None, Query(description="Free-text search in message body (case-insensitive)")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List stored messages with pagination and filtering.

    Ordering:
        - Messages are ordered by created_at ASC, id ASC (deterministic)

    Response:
        - data: List of messages matching filters
        - total: Total count of messages matching filters (ignoring limit/offset)
        - limit / offset: The values used
    """
    logger.info(f"GET /messages: limit={limit}, offset={offset}, from={from_param}, "
                f"direction={direction}, status={status_param}, q={q}")

    messages, total = get_messages(
        db=db,
        limit=limit,
        offset=offset,
        from_msisdn=from_param,
        direction=direction,
        status=status_param,
        q=q
    )

    return MessagesListResponse(
        data=[MessageResponse.from_orm_message(msg) for msg in messages],
        total=total,
        limit=limit,
        offset=offset
    )


@app.get("/messages/{message_pk}", response_model=MessageResponse)
async def read_message(message_pk: str, db: Session = Depends(get_db)) -> MessageResponse:
    """One message with its replies and delivery attempts."""
    message = get_message(db, message_pk)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return MessageResponse.from_orm_message(message)


def _identity(phone: str) -> str:
    digits = normalize_digits(phone)
    return digits if is_valid_phone(digits) else phone


@app.get("/conversations/{phone}", response_model=ConversationResponse)
async def read_conversation(phone: str, db: Session = Depends(get_db)) -> ConversationResponse:
    """Every message exchanged with a phone (or guest) identity, oldest first."""
    identity = _identity(phone)
    session = get_session(db, identity)
    return ConversationResponse(
        phone=identity,
        session=SessionResponse.from_orm_session(session) if session else None,
        messages=[MessageResponse.from_orm_message(msg) for msg in get_conversation(db, identity)],
    )


@app.get("/sessions/{phone}", response_model=SessionResponse)
async def read_session(phone: str, db: Session = Depends(get_db)) -> SessionResponse:
    session = get_session(db, _identity(phone))
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return SessionResponse.from_orm_session(session)


# =============================================================================
# Stats Route
# =============================================================================

@app.get(
    "/stats",
    response_model=StatsResponse,
)
async def get_statistics(
    db: Session = Depends(get_db)
) -> StatsResponse:
    """
    Message and conversation analytics.

    Response:
        - total_messages, received, sent, by_status
        - senders_count: Number of unique inbound senders
        - messages_per_sender: Top 10 senders sorted by count (descending)
        - sessions_by_state: Conversations per dialog state
        - first_message_ts / last_message_ts (null if no messages)
    """
    stats = get_stats(db)
    logger.info(f"GET /stats: returned stats for {stats['total_messages']} messages")
    return StatsResponse(**stats)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Includes request counters and latency, inbound webhook outcomes,
    delivery outcomes and gateway calls.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
