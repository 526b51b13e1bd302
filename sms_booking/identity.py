"""
Phone identity resolution.

Maps the phone-like field of an inbound payload to a canonical digit string,
or to a temporary guest identity when no usable number is present, and
promotes a guest to a real phone once the user texts one in.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sms_booking.storage import get_session, reassign_identity, utc_now

logger = logging.getLogger(__name__)

GUEST_PREFIX = "guest_"
MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15

# a digit run may carry the usual separators: +91 (912) 345-6789
_PHONE_RUN = re.compile(r"\+?\d[\d\s().-]*\d")
_GUEST_ID = re.compile(r"guest_[0-9a-f]{8}")


class PromotionError(Exception):
    """Guest to real-phone promotion could not be committed."""

    def __init__(self, guest: str, phone: str, cause: Exception):
        self.guest = guest
        self.phone = phone
        self.cause = cause
        super().__init__(f"Failed to promote {guest} to {phone}: {cause}")


@dataclass(frozen=True)
class SenderIdentity:
    key: str
    is_guest: bool
    send_target: Optional[str]


@dataclass
class ResolvedIdentity:
    session: Any
    phone: str
    merged: bool
    reassigned: int


def normalize_digits(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def is_valid_phone(digits: Optional[str]) -> bool:
    return bool(digits) and digits.isdigit() and MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS


def make_guest_id() -> str:
    return f"{GUEST_PREFIX}{secrets.token_hex(4)}"


def is_guest(identity: Optional[str]) -> bool:
    return bool(identity) and str(identity).startswith(GUEST_PREFIX)


def extract_phone_digits(text: Optional[str]) -> Optional[str]:
    """Return the first number in free text with a valid phone length."""
    if not text:
        return None
    for match in _PHONE_RUN.finditer(text):
        digits = normalize_digits(match.group())
        if is_valid_phone(digits):
            return digits
        # two numbers separated by a space collapse into one overlong run
        for group in re.findall(r"\d+", match.group()):
            if is_valid_phone(group):
                return group
    return None


def resolve_sender(raw_candidate: Any) -> SenderIdentity:
    """
    Canonical identity for the sender field of an inbound payload.

    A sender field that already carries a guest id (a chat bridge echoing
    back the identity it was given) keeps that guest conversation.
    """
    if isinstance(raw_candidate, str) and _GUEST_ID.fullmatch(raw_candidate.strip()):
        return SenderIdentity(key=raw_candidate.strip(), is_guest=True, send_target=None)
    digits = normalize_digits(raw_candidate)
    if is_valid_phone(digits):
        return SenderIdentity(key=digits, is_guest=False, send_target=digits)
    guest = make_guest_id()
    logger.info("No valid phone on inbound payload, minted guest identity",
                extra={"guest": guest, "raw_phone": raw_candidate})
    return SenderIdentity(key=guest, is_guest=True, send_target=None)


def send_target_for(raw_candidate: Any, session_phone: Optional[str]) -> Optional[str]:
    """Numeric destination for a reply; never a guest identifier."""
    digits = normalize_digits(raw_candidate)
    if is_valid_phone(digits):
        return digits
    if session_phone and not is_guest(session_phone):
        digits = normalize_digits(session_phone)
        if is_valid_phone(digits):
            return digits
    return None


def promote_guest(db: Session, session, real_phone: str) -> ResolvedIdentity:
    """
    Move a guest conversation onto a real phone number.

    Historical messages are reassigned first, then the guest session is either
    deleted (a session for real_phone already exists and keeps its progress)
    or re-keyed to real_phone and reset to 'new'. Both writes share one
    transaction.

    Raises:
        PromotionError: the transaction failed and was rolled back.
    """
    from sms_booking.models import SessionState

    guest = session.phone
    try:
        existing = get_session(db, real_phone)
        reassigned = reassign_identity(db, guest, real_phone)

        if existing is not None and existing.id != session.id:
            merged_guests = list((existing.meta or {}).get("merged_guests", []))
            merged_guests.append(guest)
            existing.meta = {**(existing.meta or {}), "merged_guests": merged_guests}
            existing.updated_at = utc_now()
            db.delete(session)
            db.commit()
            logger.info(f"Merged guest {guest} into existing session for {real_phone}, "
                        f"reassigned {reassigned} message fields")
            return ResolvedIdentity(session=existing, phone=real_phone, merged=True, reassigned=reassigned)

        session.phone = real_phone
        session.state = SessionState.NEW.value
        session.meta = {**(session.meta or {}), "promoted_from": guest}
        session.updated_at = utc_now()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Guest promotion {guest} -> {real_phone} failed: {e}")
        raise PromotionError(guest, real_phone, e) from e

    logger.info(f"Promoted guest {guest} to {real_phone}, reassigned {reassigned} message fields")
    return ResolvedIdentity(session=session, phone=real_phone, merged=False, reassigned=reassigned)
