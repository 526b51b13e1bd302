"""
Tests for the dialog engine.

Tests cover:
- Intent classification and its precedence
- Service classification (synonyms, word starts, idempotence)
- Every (state, message kind) pair yields a state and a non-empty reply
- Individual state transitions
"""

import pytest

from sms_booking import dialog
from sms_booking.dialog import IntentTag, classify_intent, classify_service, step
from sms_booking.models import SessionState


BASE_URL = "https://book.example.com"
PHONE = "9123456789"
SESSION_ID = "0f3c2a9d8e7b4c1a9b8c7d6e5f4a3b2c"

MESSAGE_KINDS = {
    "cancel": "cancel",
    "emergency": "this is an emergency",
    "price": "how much does it cost?",
    "help": "I need help",
    "service_name": "my drain is blocked",
    "other_desc": "other",
    "done": "done",
    "not_done": "not yet",
    "resend": "send the link again",
    "status_query": "any update?",
    "unrecognized": "qwerty",
}


def run(state, text, service=None):
    return step(state, service, text, phone=PHONE, session_id=SESSION_ID, booking_base_url=BASE_URL)


class TestIntentClassification:

    @pytest.mark.parametrize("text", ["cancel", "STOP", "cancel please", "pls cancle", "Cancel my booking!"])
    def test_cancel_variants(self, text):
        assert classify_intent(text) == IntentTag.CANCEL

    @pytest.mark.parametrize("text", ["don't stop the water", "how do I cancel a subscription elsewhere"])
    def test_cancel_needs_near_exact_message(self, text):
        assert classify_intent(text) != IntentTag.CANCEL

    def test_emergency_beats_price(self):
        assert classify_intent("urgent! how much?") == IntentTag.EMERGENCY

    def test_price_beats_help(self):
        assert classify_intent("I need a plumber, what is the price") == IntentTag.PRICE

    def test_not_done_checked_before_done(self):
        assert classify_intent("not done yet", SessionState.LINK_SENT) == IntentTag.NOT_DONE
        assert classify_intent("I haven't finished", SessionState.LINK_SENT) == IntentTag.NOT_DONE
        assert classify_intent("all done", SessionState.LINK_SENT) == IntentTag.DONE

    def test_leading_no_is_not_done(self):
        assert classify_intent("no, still filling it", SessionState.LINK_SENT) == IntentTag.NOT_DONE
        assert classify_intent("nope", SessionState.LINK_SENT) == IntentTag.NOT_DONE

    def test_trailing_no_does_not_override_done(self):
        assert classify_intent("done, no issues", SessionState.LINK_SENT) == IntentTag.DONE

    def test_done_only_in_link_sent(self):
        assert classify_intent("done", SessionState.NEW) == IntentTag.UNKNOWN

    def test_status_only_in_submitted(self):
        assert classify_intent("any update?", "submitted") == IntentTag.STATUS_QUERY
        assert classify_intent("any update?", "new") == IntentTag.UNKNOWN

    def test_keywords_match_whole_words(self):
        # "rate" must not fire inside "separate"
        assert classify_intent("two separate issues") == IntentTag.UNKNOWN


class TestServiceClassification:

    @pytest.mark.parametrize("text,label", [
        ("plumbing", "Plumbing"),
        ("Need a PLUMBER", "Plumbing"),
        ("drain blocked", "Drain cleaning"),
        ("geyser not heating", "Water heater / geyser"),
        ("my water heater broke", "Water heater / geyser"),
        ("pipe repair", "Pipe repair / replacement"),
        ("replace the pipes", "Pipe repair / replacement"),
        ("bathroom fitting", "Bathroom fitting / installation"),
        ("tap installation", "Bathroom fitting / installation"),
        ("electrical socket", "Electrical (minor)"),
        ("switch is sparking", "Electrical (minor)"),
        ("other", "Other"),
        ("another issue", "Other"),
        ("others", "Other"),
    ])
    def test_synonyms(self, text, label):
        assert classify_service(text) == label

    @pytest.mark.parametrize("text", ["", "hello", "pipe", "nothing here"])
    def test_no_service(self, text):
        assert classify_service(text) is None

    @pytest.mark.parametrize("text", ["plumbing", "  Drain  CLEANING ", "nothing here", "pipe replacement"])
    def test_classification_is_idempotent(self, text):
        assert classify_service(text) == classify_service(text)
        assert classify_service(dialog.normalize_text(text)) == classify_service(text)


class TestStateMachineTotality:
    """No (state, message kind) combination is left unhandled."""

    @pytest.mark.parametrize("state", [s.value for s in SessionState])
    @pytest.mark.parametrize("kind", list(MESSAGE_KINDS))
    def test_every_combination_has_outcome(self, state, kind):
        outcome = run(state, MESSAGE_KINDS[kind], service="Plumbing")

        assert outcome.state in {s.value for s in SessionState}
        assert outcome.reply.strip()

    @pytest.mark.parametrize("state", [s.value for s in SessionState])
    def test_same_input_same_outcome(self, state):
        assert run(state, "drain blocked") == run(state, "drain blocked")

    def test_unknown_state_preserved_by_fallback(self):
        outcome = run("legacy_state", "qwerty")

        assert outcome.state == "legacy_state"
        assert outcome.reply == dialog.GREETING_REPLY

    def test_missing_state_treated_as_new(self):
        assert run(None, "I need help").state == "awaiting_service"


class TestTransitions:

    def test_new_help_shows_menu(self):
        outcome = run("new", "I need a plumber")

        assert outcome.state == "awaiting_service"
        assert outcome.service is None
        assert outcome.reply == dialog.MENU_REPLY

    def test_service_selection_sends_link(self):
        outcome = run("awaiting_service", "plumbing")

        assert outcome.state == "link_sent"
        assert outcome.service == "Plumbing"
        link = dialog.build_booking_link(BASE_URL, PHONE, SESSION_ID)
        assert link in outcome.reply
        assert link == f"{BASE_URL}/book-service?phone={PHONE}&session={SESSION_ID}&ref=sms"

    def test_booking_link_percent_encodes(self):
        link = dialog.build_booking_link(BASE_URL, "guest_ab12cd34", "a b&c")

        assert "phone=guest_ab12cd34" in link
        assert "session=a%20b%26c" in link

    def test_unmatched_service_reprompts(self):
        outcome = run("awaiting_service", "something odd")

        assert outcome.state == "awaiting_service"
        assert outcome.reply == dialog.MENU_RETRY_REPLY

    def test_other_asks_for_description(self):
        outcome = run("awaiting_service", "other")

        assert outcome.state == "awaiting_other_description"
        assert outcome.reply == dialog.OTHER_DESCRIPTION_REPLY

    def test_description_recorded_as_service(self):
        outcome = run("awaiting_other_description", "leaking roof gutter")

        assert outcome.state == "link_sent"
        assert outcome.service == "Other: leaking roof gutter"
        assert "leaking roof gutter" in outcome.reply

    def test_long_description_is_shortened_in_reply(self):
        description = "water seeping " * 40

        outcome = run("awaiting_other_description", description)

        assert outcome.service == "Other: " + description.strip()
        assert "..." in outcome.reply
        assert description.strip() not in outcome.reply
        assert "/book-service?" in outcome.reply

    def test_link_sent_done_submits(self):
        outcome = run("link_sent", "done", service="Plumbing")

        assert outcome.state == "submitted"
        assert outcome.service == "Plumbing"
        assert f"{BASE_URL}/login" in outcome.reply

    def test_link_sent_not_done_keeps_state(self):
        outcome = run("link_sent", "not yet")

        assert outcome.state == "link_sent"
        assert outcome.intent == IntentTag.NOT_DONE

    def test_link_sent_resend(self):
        outcome = run("link_sent", "can you resend it")

        assert outcome.state == "link_sent"
        assert outcome.reply.startswith("Here's your booking link again")

    def test_submitted_status_query(self):
        outcome = run("submitted", "when will someone come? any news")

        assert outcome.state == "submitted"
        assert "being reviewed" in outcome.reply

    def test_cancel_keeps_service(self):
        outcome = run("link_sent", "stop", service="Drain cleaning")

        assert outcome.state == "cancelled"
        assert outcome.service == "Drain cleaning"
        assert outcome.reply == dialog.CANCEL_REPLY

    def test_emergency_resets_to_new(self):
        outcome = run("awaiting_service", "emergency!!")

        assert outcome.state == "new"
        assert outcome.reply == dialog.EMERGENCY_REPLY

    def test_price_sends_link_from_any_state(self):
        outcome = run("submitted", "what are your rates")

        assert outcome.state == "link_sent"
        assert "book-service" in outcome.reply

    def test_cancelled_session_booking_request_picks_service(self):
        outcome = run("cancelled", "I need a plumber")

        assert outcome.state == "link_sent"
        assert outcome.service == "Plumbing"

    def test_cancelled_session_help_greets_and_stays_cancelled(self):
        outcome = run("cancelled", "I need help")

        assert outcome.state == "cancelled"
        assert outcome.reply == dialog.GREETING_REPLY

    def test_cancelled_session_direct_service(self):
        outcome = run("cancelled", "geyser broken")

        assert outcome.state == "link_sent"
        assert outcome.service == "Water heater / geyser"

    def test_new_without_intent_greets(self):
        outcome = run("new", "hi")

        assert outcome.state == "new"
        assert outcome.reply == dialog.GREETING_REPLY
