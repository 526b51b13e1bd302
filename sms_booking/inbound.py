"""
Inbound SMS handling.

normalize_payload/to_inbound turn whatever shape the gateway posted into
InboundMessage objects; process_inbound runs one message through storage,
identity resolution and the dialog engine and returns the reply to deliver.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from sms_booking import dialog
from sms_booking.config import Settings
from sms_booking.delivery import DeliveryJob
from sms_booking.identity import (
    PromotionError,
    extract_phone_digits,
    is_guest,
    promote_guest,
    resolve_sender,
    send_target_for,
)
from sms_booking.models import SessionState
from sms_booking.schemas import InboundMessage, MessageResult, MessageResultData, SessionSnapshot
from sms_booking.storage import (
    add_reply_reference,
    create_inbound_message,
    MAX_BODY_LENGTH,
    create_outbound_message,
    get_or_create_session,
    save_session,
    utc_now,
)

logger = logging.getLogger(__name__)

PHONE_FIELDS = ("number", "phone", "from", "sender", "msisdn")
TEXT_FIELDS = ("message", "text", "body")
DEVICE_FIELDS = ("deviceID", "deviceId", "device_id")
ID_FIELDS = ("ID", "id", "messageId")

SESSION_WRITE_ATTEMPTS = 3

NO_TARGET_NOTE = "no numeric destination available; awaiting user phone"


class PayloadShapeError(ValueError):
    """The webhook body is neither a message object nor a list of them."""


class SessionConflictError(RuntimeError):
    """A session kept changing underneath us while processing a message."""


class _StaleSessionWrite(Exception):
    """
    The session write lost a version race.

    Carries the identity the conversation ended up under and, when a guest
    promotion was already committed, whether it merged into an existing
    session, so the next attempt resumes from there.
    """

    def __init__(self, identity: str, promoted: Optional[bool] = None):
        super().__init__(identity)
        self.identity = identity
        self.promoted = promoted


@dataclass
class ProcessedMessage:
    result: MessageResult
    job: Optional[DeliveryJob] = None


def _first(item: dict, fields) -> Any:
    for field in fields:
        value = item.get(field)
        if value not in (None, ""):
            return value
    return None


def normalize_payload(body: Any) -> list:
    """
    Split a webhook body into per-message items.

    Raises:
        PayloadShapeError: body is not a list and not an object with a
            message field.
    """
    if isinstance(body, list):
        return body
    if isinstance(body, dict) and any(field in body for field in TEXT_FIELDS):
        return [body]
    raise PayloadShapeError("Invalid webhook payload format")


def to_inbound(item: Any) -> InboundMessage:
    """Map one raw gateway item onto InboundMessage."""
    if not isinstance(item, dict):
        raise PayloadShapeError("Message entry must be an object")

    text = _first(item, TEXT_FIELDS)
    text = str(text).strip()[:MAX_BODY_LENGTH].rstrip() if text is not None else ""
    phone = _first(item, PHONE_FIELDS)
    device = _first(item, DEVICE_FIELDS)
    gateway_id = _first(item, ID_FIELDS)

    return InboundMessage(
        text=text,
        phone_candidate=str(phone) if phone is not None else None,
        device_id=str(device) if device is not None else None,
        gateway_id=str(gateway_id) if gateway_id is not None else None,
        raw_payload=item,
    )


def process_inbound(db: Session, inbound: InboundMessage, settings: Settings) -> ProcessedMessage:
    """
    Handle one inbound SMS end to end, short of the network send.

    The inbound message is committed before anything else so it survives any
    later failure. The reply, its link back to the inbound message and the
    session update are committed together; if the session was modified
    concurrently that transaction is rolled back and re-evaluated.
    """
    if not inbound.text:
        return ProcessedMessage(MessageResult(success=False, error="Message field is required"))

    sender = resolve_sender(inbound.phone_candidate)
    incoming, duplicate = create_inbound_message(
        db,
        from_msisdn=sender.key,
        to_msisdn=settings.system_number,
        body=inbound.text,
        message_id=f"recv_{inbound.gateway_id}" if inbound.gateway_id else None,
        device_id=inbound.device_id,
        payload=inbound.raw_payload,
    )
    if duplicate:
        return ProcessedMessage(MessageResult(
            success=True,
            duplicate=True,
            message="Duplicate message ignored",
            data=MessageResultData(
                incoming_id=incoming.id,
                from_msisdn=incoming.from_msisdn,
                to=incoming.to_msisdn,
                message=incoming.body,
            ),
        ))

    identity = sender.key
    promoted = None
    for attempt in range(1, SESSION_WRITE_ATTEMPTS + 1):
        try:
            return _converse(db, incoming, inbound, identity, settings, promoted)
        except _StaleSessionWrite as stale:
            db.rollback()
            identity, promoted = stale.identity, stale.promoted
            logger.warning(f"Session for {identity} changed concurrently, retrying ({attempt}/{SESSION_WRITE_ATTEMPTS})")
        except StaleDataError:
            db.rollback()
            logger.warning(f"Session for {identity} changed concurrently, retrying ({attempt}/{SESSION_WRITE_ATTEMPTS})")
    raise SessionConflictError(f"Session for {identity} kept changing; gave up after {SESSION_WRITE_ATTEMPTS} attempts")


def _promotion_reply(phone: str, merged: bool) -> str:
    if merged:
        return dialog.phone_linked_reply(phone)
    return dialog.phone_saved_reply(phone)


def _converse(
    db: Session,
    incoming,
    inbound: InboundMessage,
    identity: str,
    settings: Settings,
    promoted: Optional[bool] = None,
) -> ProcessedMessage:
    session = get_or_create_session(db, identity)
    session.meta = {**(session.meta or {}), "last_inbound_at": utc_now()}
    target = send_target_for(inbound.phone_candidate, session.phone)

    if promoted is not None:
        # the guest was promoted on an earlier attempt; only the reply is left
        target = session.phone
        reply = _promotion_reply(session.phone, promoted)
        summary = "Phone received and processed"

    elif is_guest(session.phone) and session.state != SessionState.AWAITING_PHONE.value:
        session.state = SessionState.AWAITING_PHONE.value
        reply = dialog.PHONE_REQUEST_REPLY
        summary = "SMS received and processed (awaiting phone)"

    elif is_guest(session.phone) and session.state == SessionState.AWAITING_PHONE.value:
        real_phone = extract_phone_digits(inbound.text)
        if real_phone is None:
            reply = dialog.PHONE_RETRY_REPLY
            summary = "Awaiting valid phone number"
        else:
            try:
                resolved = promote_guest(db, session, real_phone)
            except PromotionError:
                logger.exception(f"Continuing conversation as {identity} after failed promotion")
                reply = dialog.PHONE_RETRY_REPLY
                summary = "Phone received but could not be saved"
            else:
                session = resolved.session
                promoted = resolved.merged
                target = real_phone
                # the bulk reassignment bypassed the identity map
                db.refresh(incoming)
                reply = _promotion_reply(real_phone, resolved.merged)
                summary = "Phone received and processed"

    else:
        outcome = dialog.step(
            session.state,
            session.service,
            inbound.text,
            phone=session.phone,
            session_id=session.id,
            booking_base_url=settings.BOOKING_BASE_URL,
        )
        logger.info(f"Dialog {session.phone}: {session.state} -> {outcome.state} ({outcome.intent.value})")
        session.state = outcome.state
        session.service = outcome.service
        session.meta = {**(session.meta or {}), "last_intent": outcome.intent.value}
        reply = outcome.reply
        summary = "SMS received and processed by agent"

    notes = None
    if target is None:
        notes = [{"method": None, "note": NO_TARGET_NOTE, "at": utc_now()}]

    resolved_identity = session.phone
    try:
        outgoing = create_outbound_message(
            db,
            to_msisdn=target or session.phone,
            body=reply,
            reply_to_id=incoming.id,
            device_id=inbound.device_id or settings.SMS_GATEWAY_DEVICES,
            payload=inbound.raw_payload,
            notes=notes,
            commit=False,
        )
        add_reply_reference(db, incoming, outgoing.id, commit=False)
        save_session(db, session)
    except StaleDataError as e:
        raise _StaleSessionWrite(resolved_identity, promoted) from e
    # deliver exactly what was stored
    reply = outgoing.body

    job = None
    if target is not None:
        job = DeliveryJob(message_id=outgoing.id, target=target, text=reply, device=inbound.device_id)
    else:
        logger.info(f"Reply {outgoing.id} left pending: {NO_TARGET_NOTE}")

    result = MessageResult(
        success=True,
        message=summary,
        data=MessageResultData(
            incoming_id=incoming.id,
            outgoing_id=outgoing.id,
            from_msisdn=incoming.from_msisdn,
            to=incoming.to_msisdn,
            message=incoming.body,
            reply=reply,
            session=SessionSnapshot(
                phone=session.phone,
                session_id=session.id,
                state=session.state,
                service=session.service,
            ),
        ),
    )
    return ProcessedMessage(result=result, job=job)


def process_batch(db: Session, items: list, settings: Settings) -> tuple[list, list]:
    """
    Process webhook items in order, isolating failures per message.

    Returns:
        Tuple of (results, delivery jobs)
    """
    results: list[MessageResult] = []
    jobs: list[DeliveryJob] = []

    for index, item in enumerate(items):
        try:
            processed = process_inbound(db, to_inbound(item), settings)
        except Exception as e:
            db.rollback()
            logger.exception(f"Error processing webhook message #{index}")
            results.append(MessageResult(success=False, error=str(e)))
            continue
        results.append(processed.result)
        if processed.job is not None:
            jobs.append(processed.job)

    return results, jobs
