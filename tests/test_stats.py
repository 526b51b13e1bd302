"""
Tests for GET /stats, the health probes and GET /metrics.

Tests cover:
- Empty database returns zeros/nulls
- Counts by direction and status
- Unique inbound senders and the top 10 senders
- Sessions per dialog state
- First and last message timestamps
- Readiness depends on the database and on delivery being possible
"""

from conftest import post_webhook
from sms_booking.config import Settings, get_settings
from sms_booking.main import app


def send(client, phone: str, text: str = "hello"):
    response = post_webhook(client, {"message": text, "number": phone})
    assert response.status_code == 200


class TestStats:

    def test_empty_database(self, client):
        body = client.get("/stats").json()

        assert body["total_messages"] == 0
        assert body["received"] == 0
        assert body["sent"] == 0
        assert body["senders_count"] == 0
        assert body["messages_per_sender"] == []
        assert body["sessions_by_state"] == {}
        assert body["first_message_ts"] is None
        assert body["last_message_ts"] is None

    def test_counts(self, client):
        send(client, "9111111111", "I need a plumber")
        send(client, "9111111111", "plumbing")
        send(client, "9222222222")

        body = client.get("/stats").json()

        assert body["total_messages"] == 6
        assert body["received"] == 3
        assert body["sent"] == 3
        assert body["by_status"] == {"received": 3, "sent": 3}
        assert body["senders_count"] == 2
        assert body["sessions_by_state"] == {"link_sent": 1, "new": 1}

    def test_top_senders_sorted_and_capped(self, client):
        for i in range(12):
            phone = f"90000000{i:02d}"
            for _ in range(i % 3 + 1):
                send(client, phone)

        senders = client.get("/stats").json()["messages_per_sender"]

        assert len(senders) == 10
        counts = [s["count"] for s in senders]
        assert counts == sorted(counts, reverse=True)
        assert counts[0] == 3
        assert set(senders[0]) == {"from", "count"}

    def test_first_and_last_timestamps(self, client):
        send(client, "9111111111")
        send(client, "9222222222")

        body = client.get("/stats").json()
        messages = client.get("/messages").json()["data"]

        assert body["first_message_ts"] == messages[0]["created_at"]
        assert body["last_message_ts"] == messages[-1]["created_at"]
        assert body["first_message_ts"] < body["last_message_ts"]


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_gateway_or_mock(self, client):
        app.dependency_overrides[get_settings] = lambda: Settings(SMS_GATEWAY_API_KEY="", ALLOW_MOCK_SEND=False)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert "gateway" in response.json()["reason"]

    def test_request_id_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


class TestMetrics:

    def test_exposes_counters(self, client):
        send(client, "9111111111")
        client.post("/webhook", content="{}", headers={"Content-Type": "application/json"})

        response = client.get("/metrics")

        assert response.status_code == 200
        text = response.text
        assert "http_requests_total" in text
        assert 'webhook_messages_total{result="processed"}' in text
        assert 'webhook_messages_total{result="invalid_signature"}' in text
        assert 'sms_delivery_total{outcome="mock"}' in text
