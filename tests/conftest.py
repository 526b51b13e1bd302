"""
Pytest configuration and shared fixtures.

Test settings are put into the environment before any sms_booking import so
the engine and the cached settings pick them up.
"""

import hashlib
import hmac
import json
import os

os.environ["DATABASE_URL"] = "sqlite:///./test_sms_booking.db"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["SMS_GATEWAY_API_KEY"] = ""
os.environ["ALLOW_MOCK_SEND"] = "true"
os.environ["SEND_BASE_DELAY_MS"] = "0"
os.environ["SMS_SENDER_NUMBER"] = "0000000000"
os.environ["BOOKING_BASE_URL"] = "https://book.example.com"

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from sms_booking.config import Settings, get_settings  # noqa: E402
get_settings.cache_clear()

from sms_booking.delivery import DeliveryService, SmsGateway  # noqa: E402
from sms_booking.main import app, get_delivery_service  # noqa: E402
from sms_booking.storage import Base, SessionLocal, engine  # noqa: E402


TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


def compute_signature(body: str, secret: str = TEST_WEBHOOK_SECRET) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def post_webhook(client, payload) -> httpx.Response:
    """POST a signed webhook body; payload may be a dict, list or raw string."""
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return client.post(
        "/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(body)
        }
    )


class GatewayRecorder:
    """httpx MockTransport handler that records every gateway call."""

    def __init__(self, responses=None):
        # each entry: httpx.Response, an exception instance, or a callable(request)
        self.responses = list(responses or [])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(200, json={"success": True, "messageId": f"gw_{len(self.requests)}"})
        outcome = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome


def make_delivery(recorder: GatewayRecorder, **overrides) -> DeliveryService:
    """DeliveryService with a configured gateway backed by a MockTransport."""
    settings = Settings(**{"SMS_GATEWAY_API_KEY": "test-key", "SEND_BASE_DELAY_MS": 0, **overrides})
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return DeliveryService(settings, gateway=SmsGateway(settings, client=client))


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    """Route replies through a recording mock gateway instead of mock send."""
    recorder = GatewayRecorder()
    delivery = make_delivery(recorder)
    app.dependency_overrides[get_delivery_service] = lambda: delivery
    return recorder


@pytest.fixture
def db():
    """Database session on a fresh schema, for tests below the HTTP layer."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)
