"""
Outbound SMS delivery.

Each outbound message is sent through the gateway's send-message endpoint,
first as a query-string GET and, when that does not succeed, as a
form-encoded POST carrying the same fields. Rounds are retried with linear
backoff. Every call is appended to the message's delivery_attempts as soon as
it completes, so the stored log is the audit trail of the send.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple
from urllib.parse import urlencode

import httpx

from sms_booking.config import Settings
from sms_booking.identity import is_valid_phone, normalize_digits
from sms_booking.logging_utils import request_context
from sms_booking.metrics import record_delivery_outcome, record_gateway_call
from sms_booking.models import MessageStatus
from sms_booking.storage import (
    SessionLocal,
    append_delivery_attempt,
    set_delivery_outcome,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_PREVIEW_CHARS = 1000
MASKED = "***"


@dataclass(frozen=True)
class DeliveryJob:
    """A reply handed off from request handling to the delivery service."""
    message_id: str
    target: str
    text: str
    device: Optional[str] = None


class SmsGateway:
    """HTTP client for the gateway's send-message endpoint."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.endpoint = settings.send_endpoint
        self.timeout = settings.SEND_TIMEOUT_MS / 1000
        self._client = client or httpx.AsyncClient(timeout=self.timeout)

    async def send_query(self, params: dict) -> httpx.Response:
        return await self._client.get(self.endpoint, params=params, timeout=self.timeout)

    async def send_form(self, params: dict) -> httpx.Response:
        # httpx form-encodes dict `data` as application/x-www-form-urlencoded
        return await self._client.post(self.endpoint, data=params, timeout=self.timeout)

    async def aclose(self) -> None:
        await self._client.aclose()


def _parse_body(response: httpx.Response) -> Any:
    try:
        data = response.json()
    except ValueError:
        return {"raw": response.text[:MAX_PREVIEW_CHARS]}
    return data if isinstance(data, dict) else {"raw": data}


def _reports_success(data: dict) -> bool:
    """A missing success field counts as success."""
    if "success" not in data:
        return True
    flag = data["success"]
    if isinstance(flag, str):
        return flag.strip().lower() in ("true", "1", "yes", "ok")
    return bool(flag)


def _gateway_message_id(data: dict) -> Optional[str]:
    value = data.get("messageId") or data.get("id")
    if not value:
        try:
            value = data["data"]["messages"][0]["ID"]
        except (KeyError, IndexError, TypeError):
            value = None
    return str(value) if value else None


def _error_code(exc: Exception) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.HTTPStatusError):
        return f"http_{exc.response.status_code}"
    if isinstance(exc, httpx.ConnectError):
        return "connect_error"
    return type(exc).__name__


class DeliveryService:
    """
    Sends outbound messages and records the outcome on the message row.

    deliver() never raises: transport failures become attempt entries and the
    final status (sent/failed) is written to the message.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: Optional[SmsGateway] = None,
        session_factory=SessionLocal,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.gateway = gateway or SmsGateway(settings)
        self.session_factory = session_factory
        self._sleep = sleep

    async def run(self, job: DeliveryJob, request_id: Optional[str] = None) -> str:
        """Background entry point; logs carry the id of the request that queued the job."""
        with request_context(request_id):
            return await self.deliver(job.message_id, job.target, job.text, job.device)

    async def deliver(self, message_id: str, target: str, text: str, device: Optional[str] = None) -> str:
        """
        Deliver one stored outbound message to target.

        Returns:
            The final message status.
        """
        with self.session_factory() as db:
            try:
                return await self._deliver(db, message_id, target, text, device)
            except Exception as e:
                logger.exception(f"Delivery of {message_id} failed unexpectedly")
                db.rollback()
                record_delivery_outcome("failed")
                set_delivery_outcome(db, message_id, MessageStatus.FAILED.value, error=f"Delivery error: {e}")
                return MessageStatus.FAILED.value

    async def _deliver(self, db, message_id: str, target: str, text: str, device: Optional[str]) -> str:
        clean_target = normalize_digits(target)
        if not is_valid_phone(clean_target):
            logger.warning(f"Not sending {message_id}: invalid destination {target!r}")
            record_delivery_outcome("invalid_target")
            set_delivery_outcome(
                db, message_id, MessageStatus.FAILED.value,
                error=f"Invalid destination phone number {target!r}; gateway not called",
            )
            return MessageStatus.FAILED.value

        if not self.settings.gateway_configured:
            return self._without_gateway(db, message_id)

        params = {
            "key": self.settings.SMS_GATEWAY_API_KEY,
            "number": clean_target,
            "message": text or "",
            "devices": str(device or self.settings.SMS_GATEWAY_DEVICES),
            "type": "sms",
            "prioritize": "1",
        }
        base_delay = self.settings.SEND_BASE_DELAY_MS / 1000

        for attempt in range(1, self.settings.SEND_MAX_RETRIES + 1):
            delay = base_delay * (attempt - 1)
            if delay > 0:
                await self._sleep(delay)

            for method in ("GET", "POST"):
                succeeded, gateway_id = await self._call(db, message_id, attempt, method, params)
                if succeeded:
                    logger.info(f"Message {message_id} sent via {method} on attempt {attempt}")
                    record_delivery_outcome("sent")
                    set_delivery_outcome(db, message_id, MessageStatus.SENT.value, gateway_message_id=gateway_id)
                    return MessageStatus.SENT.value

        logger.error(f"All {self.settings.SEND_MAX_RETRIES} send rounds failed for {message_id}")
        record_delivery_outcome("failed")
        set_delivery_outcome(db, message_id, MessageStatus.FAILED.value, error="All send attempts failed")
        return MessageStatus.FAILED.value

    def _without_gateway(self, db, message_id: str) -> str:
        if not self.settings.ALLOW_MOCK_SEND:
            logger.error(f"SMS gateway not configured, marking {message_id} failed")
            record_delivery_outcome("not_configured")
            set_delivery_outcome(db, message_id, MessageStatus.FAILED.value, error="SMS gateway not configured")
            return MessageStatus.FAILED.value

        logger.warning(f"SMS gateway not configured, mock-sending {message_id}")
        append_delivery_attempt(db, message_id, {
            "attempt": 1,
            "method": "MOCK",
            "success": True,
            "note": "SMS gateway not configured; message not sent to a carrier",
            "at": utc_now(),
        })
        record_delivery_outcome("mock")
        set_delivery_outcome(
            db, message_id, MessageStatus.SENT.value,
            gateway_message_id=f"mock_{int(time.time() * 1000)}_{message_id[:8]}",
        )
        return MessageStatus.SENT.value

    async def _call(self, db, message_id: str, attempt: int, method: str, params: dict) -> Tuple[bool, Optional[str]]:
        masked = {**params, "key": MASKED}
        record = {
            "attempt": attempt,
            "method": method,
            "url": self.gateway.endpoint,
            "transport": "query" if method == "GET" else "form",
            "request": masked if method == "GET" else urlencode(masked)[:MAX_PREVIEW_CHARS],
        }
        try:
            if method == "GET":
                response = await self.gateway.send_query(params)
            else:
                response = await self.gateway.send_form(params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            response_body = None
            if isinstance(e, httpx.HTTPStatusError):
                response_body = _parse_body(e.response)
                record["status"] = e.response.status_code
            record.update({
                "success": False,
                "error": str(e) or type(e).__name__,
                "code": _error_code(e),
                "response": response_body,
                "at": utc_now(),
            })
            logger.warning(f"Gateway {method} attempt {attempt} for {message_id} failed: {record['code']}")
            record_gateway_call(method, "error")
            append_delivery_attempt(db, message_id, record)
            return False, None

        data = _parse_body(response)
        succeeded = _reports_success(data)
        record.update({
            "success": succeeded,
            "status": response.status_code,
            "data": data,
            "at": utc_now(),
        })
        record_gateway_call(method, "success" if succeeded else "rejected")
        append_delivery_attempt(db, message_id, record)
        if not succeeded:
            logger.warning(f"Gateway {method} attempt {attempt} for {message_id} reported failure")
            return False, None
        return True, _gateway_message_id(data)
