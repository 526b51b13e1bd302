"""
Dialog engine for the SMS booking assistant.

Everything here is pure: given the current session state, the chosen service
and the text of one inbound message, `step` decides the next state and the
reply. Keyword lists are module constants so the classification functions can
be tested on their own.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union
from urllib.parse import quote

from sms_booking.models import SessionState

BRAND = "PlumbPro"
EMERGENCY_LINE = "(555) PLUMBER"
OTHER_SERVICE = "Other"
# longest description quoted back in a reply
DESCRIPTION_ECHO_CHARS = 160


class IntentTag(str, Enum):
    CANCEL = "cancel"
    EMERGENCY = "emergency"
    PRICE = "price"
    HELP = "help"
    DONE = "done"
    NOT_DONE = "not_done"
    RESEND = "resend"
    STATUS_QUERY = "status_query"
    UNKNOWN = "unknown"


# =============================================================================
# Keyword vocabularies
# =============================================================================

CANCEL_WORDS = ("cancel", "stop")
CANCEL_MISSPELLINGS = ("cancle", "cancell", "cancl", "cancelled", "stopp")
CANCEL_FILLER_WORDS = (
    "please", "pls", "plz", "it", "my", "the", "this", "request", "booking",
    "now", "all", "messages", "thanks", "thank", "you", "ok", "okay",
)

EMERGENCY_KEYWORDS = ("emergency", "urgent", "urgently", "help now", "immediately", "asap")

PRICE_KEYWORDS = (
    "price", "prices", "pricing", "cost", "costs", "how much", "rate", "rates",
    "charge", "charges", "quote",
)

HELP_KEYWORDS = (
    "help", "need", "needs", "book", "booking", "plumber", "plumbers", "plumbing",
    "i want", "service", "services", "repair", "fix", "fixed", "fixing", "appointment",
)

DONE_KEYWORDS = ("done", "submitted", "completed", "complete", "filled", "finished", "sent")

NOT_DONE_KEYWORDS = (
    "not yet", "not done", "havent", "have not", "still working", "later",
    "not finished", "didnt", "did not",
)
# a bare refusal only counts at the start: "no, still filling it" but not "done, no issues"
NOT_DONE_OPENERS = ("no", "nope")

RESEND_KEYWORDS = ("link", "form", "booking", "again", "resend", "send it")

STATUS_KEYWORDS = ("status", "update", "updates", "when", "accepted", "progress", "news")

# Canonical service menu, in display order
CANONICAL_SERVICES = (
    "Plumbing",
    "Drain cleaning",
    "Water heater / geyser",
    "Pipe repair / replacement",
    "Bathroom fitting / installation",
    "Electrical (minor)",
    OTHER_SERVICE,
)

# (label, stems, required stems) checked in order; a stem matches at a word
# start, and when required stems are given one of them must match as well
SERVICE_SYNONYMS = (
    ("Plumbing", ("plumb",), ()),
    ("Drain cleaning", ("drain",), ()),
    ("Water heater / geyser", ("geyser", "water heater"), ()),
    ("Pipe repair / replacement", ("pipe",), ("repair", "replac")),
    ("Bathroom fitting / installation", ("bath", "fitting", "install"), ()),
    ("Electrical (minor)", ("electr", "socket", "switch"), ()),
)


# =============================================================================
# Replies
# =============================================================================

MENU_LINES = "\n".join(f"- {label}" for label in CANONICAL_SERVICES)

CANCEL_REPLY = (
    "Your request has been cancelled. If you need plumbing services in the future, "
    "just text us anytime. Have a great day!"
)
EMERGENCY_REPLY = (
    f"If this is an emergency, please call our 24/7 emergency line: {EMERGENCY_LINE}. "
    f"For non-urgent requests, I can help you book a service right away!"
)
MENU_REPLY = (
    f"I'm here to help! Which service do you need?\n\n{MENU_LINES}\n\n"
    f"Just reply with the service type you need."
)
MENU_RETRY_REPLY = (
    f"I didn't quite catch that. Please choose from:\n\n{MENU_LINES}\n\n"
    f"Just type the service you need."
)
OTHER_DESCRIPTION_REPLY = (
    "Please briefly describe the issue you're experiencing. "
    "The more detail you give, the better we can help!"
)
GREETING_REPLY = (
    f"Hi! I'm your {BRAND} assistant.\n\n"
    f"Need plumbing help? Just say \"I need help\", \"Book service\", "
    f"or describe your issue and I'll guide you through everything."
)
PHONE_REQUEST_REPLY = (
    f"Hi! I'm your {BRAND} assistant. To help you book a service, please reply with "
    f"your phone number (e.g., 9123456789) so I can create a personalized booking link for you."
)
PHONE_RETRY_REPLY = (
    "Please enter a valid phone number (digits only, e.g., 9123456789) "
    "so I can create your booking link."
)


def phone_saved_reply(phone: str) -> str:
    services = ", ".join(CANONICAL_SERVICES)
    return f"Perfect! Your phone number {phone} is saved. Which service do you need? For example: {services}."


def phone_linked_reply(phone: str) -> str:
    return (
        f"Great! I've linked this chat to your phone {phone}. How can I help you today? "
        f"Just say \"I need help\" or \"book service\" to get started."
    )


def tracking_link(booking_base_url: str) -> str:
    return f"{booking_base_url}/login"


def build_booking_link(booking_base_url: str, phone: str, session_id: str) -> str:
    """Booking form URL for an SMS-originated booking."""
    return (
        f"{booking_base_url}/book-service"
        f"?phone={quote(str(phone), safe='')}"
        f"&session={quote(str(session_id), safe='')}"
        f"&ref=sms"
    )


# =============================================================================
# Classification
# =============================================================================

def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    return re.sub(r"\s+", " ", str(text)).strip()


def _fold(text: str) -> str:
    # lowercase and drop apostrophes so "haven't" reads as "havent"
    return re.sub(r"['’]", "", text.lower())


def _has_keyword(folded: str, keywords) -> bool:
    return any(re.search(rf"\b{re.escape(kw)}\b", folded) for kw in keywords)


def _has_stem(folded: str, stems) -> bool:
    return any(re.search(rf"\b{re.escape(stem)}", folded) for stem in stems)


def _starts_with_word(folded: str, words) -> bool:
    return any(re.match(rf"\s*{re.escape(word)}\b", folded) for word in words)


def is_cancel(text: str) -> bool:
    """Exact or near match of cancel/stop, ignoring punctuation and filler words."""
    words = re.findall(r"[a-z]+", _fold(text))
    if not words:
        return False
    cancel_words = set(CANCEL_WORDS) | set(CANCEL_MISSPELLINGS)
    if not any(word in cancel_words for word in words):
        return False
    return all(word in cancel_words or word in CANCEL_FILLER_WORDS for word in words)


def classify_service(text: Optional[str]) -> Optional[str]:
    """Map free text to a canonical service label, or None."""
    folded = _fold(normalize_text(text))
    if not folded:
        return None
    for label, stems, required in SERVICE_SYNONYMS:
        if _has_stem(folded, stems) and (not required or _has_stem(folded, required)):
            return label
    if "other" in folded:
        return OTHER_SERVICE
    return None


def classify_intent(text: Optional[str], state: Optional[Union[SessionState, str]] = None) -> IntentTag:
    """
    Tag an inbound text with the intent the state machine acts on.

    Cancel, emergency and pricing apply in every state; completion and resend
    families are only looked for in link_sent, status queries only in
    submitted.
    """
    normalized = normalize_text(text)
    folded = _fold(normalized)
    state = _coerce_state(state)

    if is_cancel(normalized):
        return IntentTag.CANCEL
    if _has_keyword(folded, EMERGENCY_KEYWORDS):
        return IntentTag.EMERGENCY
    if _has_keyword(folded, PRICE_KEYWORDS):
        return IntentTag.PRICE
    if state == SessionState.LINK_SENT:
        if _has_keyword(folded, NOT_DONE_KEYWORDS) or _starts_with_word(folded, NOT_DONE_OPENERS):
            return IntentTag.NOT_DONE
        if _has_keyword(folded, DONE_KEYWORDS):
            return IntentTag.DONE
        if _has_keyword(folded, RESEND_KEYWORDS):
            return IntentTag.RESEND
    if state == SessionState.SUBMITTED and _has_keyword(folded, STATUS_KEYWORDS):
        return IntentTag.STATUS_QUERY
    if _has_keyword(folded, HELP_KEYWORDS):
        return IntentTag.HELP
    return IntentTag.UNKNOWN


# =============================================================================
# State machine
# =============================================================================

@dataclass(frozen=True)
class DialogOutcome:
    state: str
    service: Optional[str]
    reply: str
    intent: IntentTag


def _coerce_state(state) -> Optional[SessionState]:
    if state is None or state == "":
        return SessionState.NEW
    try:
        return SessionState(state)
    except ValueError:
        return None


def step(
    state: Optional[Union[SessionState, str]],
    service: Optional[str],
    text: Optional[str],
    *,
    phone: str,
    session_id: str,
    booking_base_url: str,
) -> DialogOutcome:
    """
    Compute the next state and reply for one inbound message.

    Rules are evaluated in precedence order: cancel, emergency, pricing, help
    from a fresh session, then the handler for the current state, then the
    fallback (direct service match or greeting).
    """
    message = normalize_text(text)
    current = _coerce_state(state)
    # unrecognized states are carried through unchanged
    current_value = current.value if current is not None else str(state)
    intent = classify_intent(message, current)
    link = build_booking_link(booking_base_url, phone, session_id)
    track = tracking_link(booking_base_url)

    def outcome(next_state, next_service, reply) -> DialogOutcome:
        value = next_state.value if isinstance(next_state, SessionState) else next_state
        return DialogOutcome(state=value, service=next_service, reply=reply, intent=intent)

    if intent == IntentTag.CANCEL:
        return outcome(SessionState.CANCELLED, service, CANCEL_REPLY)

    if intent == IntentTag.EMERGENCY:
        return outcome(SessionState.NEW, service, EMERGENCY_REPLY)

    if intent == IntentTag.PRICE:
        reply = (
            f"Our pricing varies by service type and complexity. To get an accurate quote, "
            f"please use your personalized booking form: {link}\n\n"
            f"Our certified plumbers will provide a detailed quote before starting any work."
        )
        return outcome(SessionState.LINK_SENT, service, reply)

    if current == SessionState.NEW and intent == IntentTag.HELP:
        return outcome(SessionState.AWAITING_SERVICE, None, MENU_REPLY)

    if current == SessionState.AWAITING_SERVICE:
        detected = classify_service(message)
        if detected == OTHER_SERVICE:
            return outcome(SessionState.AWAITING_OTHER_DESCRIPTION, service, OTHER_DESCRIPTION_REPLY)
        if detected:
            reply = (
                f"Excellent! {detected} service selected.\n\n"
                f"Please complete your booking using this secure link:\n{link}\n\n"
                f"Choose your preferred time, add photos if needed and get instant confirmation. "
                f"After booking, you can track everything online!"
            )
            return outcome(SessionState.LINK_SENT, detected, reply)
        return outcome(current, service, MENU_RETRY_REPLY)

    if current == SessionState.AWAITING_OTHER_DESCRIPTION:
        echoed = message if len(message) <= DESCRIPTION_ECHO_CHARS else message[:DESCRIPTION_ECHO_CHARS - 3].rstrip() + "..."
        reply = (
            f"Got it! I've noted your request: \"{echoed}\"\n\n"
            f"Complete your booking here:\n{link}\n\n"
            f"Our plumbers will review your specific needs and provide the best solution."
        )
        return outcome(SessionState.LINK_SENT, f"{OTHER_SERVICE}: {message}", reply)

    if current == SessionState.LINK_SENT:
        if intent == IntentTag.NOT_DONE:
            reply = (
                f"No worries! Take your time. Your booking link is always ready:\n{link}\n\n"
                f"Just reply \"Done\" when you've completed the form."
            )
            return outcome(current, service, reply)
        if intent == IntentTag.DONE:
            reply = (
                f"Fantastic! Your booking request has been received.\n\n"
                f"Our certified plumbers will review your request and you'll receive an "
                f"acceptance notification soon.\nTrack progress at: {track}\n\n"
                f"Thank you for choosing {BRAND}!"
            )
            return outcome(SessionState.SUBMITTED, service, reply)
        if intent == IntentTag.RESEND:
            reply = (
                f"Here's your booking link again:\n{link}\n\n"
                f"Reply \"Done\" after you've filled out the form."
            )
            return outcome(current, service, reply)
        reply = (
            f"Please complete your booking form: {link}\n\n"
            f"After filling it out, reply \"Done\" and I'll confirm everything is set. "
            f"Need the link again? Just ask!"
        )
        return outcome(current, service, reply)

    if current == SessionState.SUBMITTED:
        if intent == IntentTag.STATUS_QUERY:
            reply = (
                f"Your booking is being reviewed by our team. You'll get a notification once "
                f"a plumber accepts your request.\n\nTrack live updates: {track}\n\n"
                f"This usually takes 30-60 minutes during business hours."
            )
            return outcome(current, service, reply)
        reply = (
            f"Your booking request is submitted!\n\nTrack status: {track}\n"
            f"You'll get updates here automatically while our plumbers review your request.\n\n"
            f"Need help with something else?"
        )
        return outcome(current, service, reply)

    # fallback: cancelled, awaiting_phone, new without booking intent, unknown
    direct = classify_service(message)
    if direct == OTHER_SERVICE:
        return outcome(SessionState.AWAITING_OTHER_DESCRIPTION, service, OTHER_DESCRIPTION_REPLY)
    if direct:
        reply = (
            f"Perfect! {direct} service selected.\n\n"
            f"Book your appointment:\n{link}\n\n"
            f"Quick, secure and easy! Reply \"Done\" when finished."
        )
        return outcome(SessionState.LINK_SENT, direct, reply)
    return outcome(current_value, service, GREETING_REPLY)
