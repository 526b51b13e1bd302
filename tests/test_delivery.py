"""
Tests for outbound SMS delivery against a mocked gateway.

Tests cover:
- GET then form-POST per round, retry exhaustion and the attempt log
- Success detection (missing success flag, non-JSON bodies)
- Gateway message IDs replacing the local placeholder
- Invalid destinations and unconfigured gateways
- Linear backoff between rounds
"""

import httpx
import pytest

from conftest import GatewayRecorder, make_delivery
from sms_booking.config import Settings
from sms_booking.delivery import DeliveryJob, DeliveryService, SmsGateway
from sms_booking.storage import create_outbound_message


PHONE = "9123456789"


@pytest.fixture
def outbound(db):
    return create_outbound_message(db, to_msisdn=PHONE, body="Hello from the test", device_id="3")


def reload(db, message):
    db.refresh(message)
    return message


class TestRetries:

    @pytest.mark.asyncio
    async def test_exhaustion_logs_two_attempts_per_round(self, db, outbound):
        recorder = GatewayRecorder([httpx.ConnectError("connection refused")])
        delivery = make_delivery(recorder, SEND_MAX_RETRIES=3)

        status = await delivery.deliver(outbound.id, PHONE, outbound.body)

        message = reload(db, outbound)
        assert status == "failed"
        assert message.status == "failed"
        assert message.last_error == "All send attempts failed"
        assert len(message.delivery_attempts) == 6
        assert [a["method"] for a in message.delivery_attempts] == ["GET", "POST"] * 3
        assert [a["attempt"] for a in message.delivery_attempts] == [1, 1, 2, 2, 3, 3]
        assert all(a["success"] is False for a in message.delivery_attempts)
        assert all(a["code"] == "connect_error" for a in message.delivery_attempts)
        assert len(recorder.requests) == 6

    @pytest.mark.asyncio
    async def test_post_fallback_after_rejected_get(self, db, outbound):
        recorder = GatewayRecorder([
            httpx.Response(200, json={"success": False, "error": "device offline"}),
            httpx.Response(200, json={"success": True, "messageId": "gw-77"}),
        ])
        delivery = make_delivery(recorder)

        status = await delivery.deliver(outbound.id, PHONE, outbound.body, "3")

        message = reload(db, outbound)
        assert status == "sent"
        assert message.message_id == "gw-77"
        assert [a["method"] for a in message.delivery_attempts] == ["GET", "POST"]
        assert message.delivery_attempts[0]["success"] is False
        assert message.delivery_attempts[1]["transport"] == "form"

        post = recorder.requests[1]
        assert post.method == "POST"
        assert post.headers["content-type"] == "application/x-www-form-urlencoded"
        assert b"number=9123456789" in post.content
        assert b"type=sms" in post.content

    @pytest.mark.asyncio
    async def test_success_short_circuits(self, db, outbound):
        recorder = GatewayRecorder()
        delivery = make_delivery(recorder)

        await delivery.deliver(outbound.id, PHONE, outbound.body)

        assert len(recorder.requests) == 1
        assert len(reload(db, outbound).delivery_attempts) == 1

    @pytest.mark.asyncio
    async def test_http_error_then_nested_gateway_id(self, db, outbound):
        recorder = GatewayRecorder([
            httpx.Response(503, json={"error": "busy"}),
            httpx.Response(200, json={"success": True, "data": {"messages": [{"ID": 42}]}}),
        ])
        delivery = make_delivery(recorder)

        await delivery.deliver(outbound.id, PHONE, outbound.body)

        message = reload(db, outbound)
        assert message.status == "sent"
        assert message.message_id == "42"
        first = message.delivery_attempts[0]
        assert first["code"] == "http_503"
        assert first["status"] == 503
        assert first["response"] == {"error": "busy"}

    @pytest.mark.asyncio
    async def test_timeout_recorded(self, db, outbound):
        recorder = GatewayRecorder([httpx.ReadTimeout("too slow")])
        delivery = make_delivery(recorder, SEND_MAX_RETRIES=1)

        await delivery.deliver(outbound.id, PHONE, outbound.body)

        message = reload(db, outbound)
        assert message.status == "failed"
        assert [a["code"] for a in message.delivery_attempts] == ["timeout", "timeout"]


class TestSuccessDetection:

    @pytest.mark.asyncio
    async def test_missing_success_flag_counts_as_success(self, db, outbound):
        placeholder = outbound.message_id
        delivery = make_delivery(GatewayRecorder([httpx.Response(200, json={"queued": 1})]))

        status = await delivery.deliver(outbound.id, PHONE, outbound.body)

        message = reload(db, outbound)
        assert status == "sent"
        assert message.message_id == placeholder

    @pytest.mark.asyncio
    async def test_plain_text_body_counts_as_success(self, db, outbound):
        delivery = make_delivery(GatewayRecorder([httpx.Response(200, text="OK")]))

        assert await delivery.deliver(outbound.id, PHONE, outbound.body) == "sent"
        assert reload(db, outbound).delivery_attempts[0]["data"] == {"raw": "OK"}

    @pytest.mark.asyncio
    async def test_string_false_is_failure(self, db, outbound):
        delivery = make_delivery(GatewayRecorder([httpx.Response(200, json={"success": "false"})]), SEND_MAX_RETRIES=1)

        assert await delivery.deliver(outbound.id, PHONE, outbound.body) == "failed"


class TestRequestShape:

    @pytest.mark.asyncio
    async def test_query_parameters(self, db, outbound):
        recorder = GatewayRecorder()
        delivery = make_delivery(recorder)

        await delivery.run(DeliveryJob(message_id=outbound.id, target="+91 91234 56789", text="hi there"))

        params = recorder.requests[0].url.params
        assert recorder.requests[0].url.path == "/services/send-message.php"
        assert params["key"] == "test-key"
        assert params["number"] == "919123456789"
        assert params["message"] == "hi there"
        assert params["devices"] == "3"
        assert params["type"] == "sms"
        assert params["prioritize"] == "1"

    @pytest.mark.asyncio
    async def test_api_key_masked_in_attempt_log(self, db, outbound):
        recorder = GatewayRecorder([httpx.Response(200, json={"success": False})])
        delivery = make_delivery(recorder, SEND_MAX_RETRIES=1)

        await delivery.deliver(outbound.id, PHONE, outbound.body)

        get_attempt, post_attempt = reload(db, outbound).delivery_attempts
        assert get_attempt["request"]["key"] == "***"
        assert "key=%2A%2A%2A" in post_attempt["request"]
        assert "test-key" not in str(get_attempt) + str(post_attempt)


class TestShortCircuits:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["123", "", "guest_ab12cd34", "1234567890123456"])
    async def test_invalid_target_never_calls_gateway(self, db, outbound, target):
        recorder = GatewayRecorder()
        delivery = make_delivery(recorder)

        status = await delivery.deliver(outbound.id, target, outbound.body)

        message = reload(db, outbound)
        assert status == "failed"
        assert message.status == "failed"
        assert message.delivery_attempts == []
        assert "Invalid destination" in message.last_error
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_mock_send_when_gateway_unconfigured(self, db, outbound):
        delivery = DeliveryService(Settings(SMS_GATEWAY_API_KEY="", ALLOW_MOCK_SEND=True))

        status = await delivery.deliver(outbound.id, PHONE, outbound.body)

        message = reload(db, outbound)
        assert status == "sent"
        assert message.delivery_attempts[0]["method"] == "MOCK"
        assert message.message_id.startswith("mock_")
        await delivery.gateway.aclose()

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_fails_without_mock(self, db, outbound):
        delivery = DeliveryService(Settings(SMS_GATEWAY_API_KEY="", ALLOW_MOCK_SEND=False))

        status = await delivery.deliver(outbound.id, PHONE, outbound.body)

        message = reload(db, outbound)
        assert status == "failed"
        assert message.last_error == "SMS gateway not configured"
        assert message.delivery_attempts == []
        await delivery.gateway.aclose()


class TestBackoff:

    @pytest.mark.asyncio
    async def test_linear_delay_between_rounds(self, db, outbound):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        settings = Settings(SMS_GATEWAY_API_KEY="test-key", SEND_MAX_RETRIES=4, SEND_BASE_DELAY_MS=800)
        recorder = GatewayRecorder([httpx.Response(500)])
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        delivery = DeliveryService(settings, gateway=SmsGateway(settings, client=client), sleep=fake_sleep)

        await delivery.deliver(outbound.id, PHONE, outbound.body)

        assert delays == pytest.approx([0.8, 1.6, 2.4])
        assert len(recorder.requests) == 8
