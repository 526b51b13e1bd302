"""
Booking status notifications.

The booking system pushes (bookingId, status, phone, providerName) here; the
tuple becomes a canned SMS that is stored and delivered like any reply.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from sms_booking.config import Settings
from sms_booking.delivery import DeliveryJob
from sms_booking.dialog import BRAND, tracking_link
from sms_booking.identity import normalize_digits
from sms_booking.schemas import BookingNotificationRequest
from sms_booking.storage import create_outbound_message

logger = logging.getLogger(__name__)


def compose_status_message(status: str, provider_name: Optional[str], booking_base_url: str) -> str:
    link = tracking_link(booking_base_url)

    if status == "accepted":
        return (
            f"Great news! Your plumbing service has been accepted by "
            f"{provider_name or 'our certified plumber'}!\n\n"
            f"Booking confirmed. Track progress: {link}\n"
            f"You'll get updates here.\n\nThank you for choosing {BRAND}!"
        )
    if status == "quotation_sent":
        return (
            f"Your service quotation is ready!\n\n"
            f"Review pricing and accept or reject online: {link}\n"
            f"Or reply here for assistance."
        )
    if status == "completed":
        return (
            f"Service completed successfully!\n\n"
            f"Work finished by {provider_name or 'your plumber'}. Invoice available: {link}\n"
            f"Please rate your experience.\n\nThank you for choosing {BRAND}!"
        )
    return (
        f"Update on your plumbing service:\n\n"
        f"Status: {status.replace('_', ' ')}\n"
        f"Full details: {link}\n\nQuestions? Just reply here!"
    )


def queue_booking_notification(
    db: Session,
    request: BookingNotificationRequest,
    settings: Settings,
) -> Tuple[object, DeliveryJob]:
    """
    Store a status notification as a pending outbound message.

    The returned job is always handed to delivery; an unusable phone number
    is rejected there and recorded on the message.
    """
    body = compose_status_message(request.status, request.provider_name, settings.BOOKING_BASE_URL)
    target = normalize_digits(request.phone) or request.phone

    message = create_outbound_message(
        db,
        to_msisdn=target,
        body=body,
        device_id=settings.SMS_GATEWAY_DEVICES,
        payload={"bookingId": request.booking_id, "status": request.status},
    )
    logger.info(f"Booking notification queued: booking={request.booking_id}, status={request.status}, sms={message.id}")
    return message, DeliveryJob(message_id=message.id, target=target, text=body)
