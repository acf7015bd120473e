"""
Tests for the /webhook endpoints.

Tests cover:
- Channel handshake (GET)
- Valid signature, first sighting answered by the backend
- Redeliveries: acknowledged, served from buffer, waiting, dead
- Invalid/missing signature (401)
- Validation errors (422)
"""

import hashlib
import hmac
import json
import os

import pytest
from fastapi.testclient import TestClient

from chatrelay.dispatcher import Dispatcher
from chatrelay.main import app, get_dispatcher, get_registry


TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]
TEST_CHANNEL_TOKEN = os.environ["CHANNEL_TOKEN"]
FALLBACK = "please try again"


def compute_signature(body: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def message_body(message_id="m1", msg_type="text", create_time=1_700_000_000, **fields) -> str:
    body = {
        "message_id": message_id,
        "from": "oUser1",
        "to": "gh_service",
        "create_time": create_time,
        "msg_type": msg_type,
    }
    if msg_type == "text" and "content" not in fields:
        fields["content"] = "Hello"
    body.update(fields)
    return json.dumps(body)


def post_signed(client, body: str):
    return client.post(
        "/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(body, TEST_WEBHOOK_SECRET)
        }
    )


class CountingBackend:
    def __init__(self):
        self.calls = 0

    async def complete(self, context):
        self.calls += 1
        latest = context[-1].user["payload"]
        return f"echo: {latest.get('content', '')}"


@pytest.fixture
def backend():
    return CountingBackend()


@pytest.fixture
def make_client(registry, backend, clock):
    """Build a test client whose dispatcher uses a temp registry and fake clock."""
    clients = []

    def _make(**dispatcher_kwargs):
        options = {
            "dead_knock_threshold": 2,
            "dead_timeout_seconds": 3,
            "channel_timeout_seconds": 4.5,
            "poll_interval_seconds": 0.01,
            "fallback_reply": FALLBACK,
            "clock": clock,
        }
        options.update(dispatcher_kwargs)
        dispatcher = Dispatcher(registry, backend, **options)
        app.dependency_overrides[get_dispatcher] = lambda: dispatcher
        app.dependency_overrides[get_registry] = lambda: registry
        test_client = TestClient(app)
        test_client.__enter__()
        clients.append(test_client)
        return test_client, dispatcher

    yield _make

    for test_client in clients:
        test_client.__exit__(None, None, None)
    app.dependency_overrides.clear()


@pytest.fixture
def client(make_client):
    test_client, _ = make_client()
    return test_client


class TestHandshake:
    """Test server-address verification."""

    def test_valid_handshake_echoes(self, client):
        timestamp, nonce = "1700000000", "42"
        signature = hashlib.sha1(
            "".join(sorted([TEST_CHANNEL_TOKEN, timestamp, nonce])).encode("utf-8")
        ).hexdigest()

        response = client.get(
            "/webhook",
            params={"signature": signature, "timestamp": timestamp, "nonce": nonce, "echostr": "abc123"},
        )

        assert response.status_code == 200
        assert response.text == "abc123"

    def test_invalid_handshake(self, client):
        response = client.get(
            "/webhook",
            params={"signature": "bad", "timestamp": "1", "nonce": "2", "echostr": "abc123"},
        )

        assert response.status_code == 403


class TestWebhookFlow:
    """Test first sightings and redeliveries."""

    def test_first_sighting_answered(self, client, backend):
        response = post_signed(client, message_body())

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "state": "new", "replies": ["echo: Hello"]}
        assert backend.calls == 1

    def test_redelivery_after_answer_is_acknowledged(self, client, backend):
        body = message_body()
        post_signed(client, body)

        response = post_signed(client, body)

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "state": "replied", "replies": []}
        assert backend.calls == 1

    def test_redelivery_served_from_buffer(self, make_client, backend, clock):
        client, dispatcher = make_client()
        engine = dispatcher.engine_for("oUser1", "gh_service")
        engine.push_msg("m1", clock.now, "text", {"content": "Hello"})
        engine.push_reply("m1", "text", {"content": "computed earlier"})

        response = post_signed(client, message_body(create_time=clock.now))

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "state": "pending", "replies": ["computed earlier"]}
        assert backend.calls == 0

    def test_redelivery_still_computing_waits(self, make_client, backend, clock):
        client, dispatcher = make_client(channel_timeout_seconds=0.0)
        dispatcher.engine_for("oUser1", "gh_service").push_msg("m1", clock.now, "text", {"content": "Hello"})

        response = post_signed(client, message_body(create_time=clock.now))

        assert response.status_code == 202
        assert response.json()["status"] == "pending"
        assert backend.calls == 0

    def test_dead_letter_gets_fallback(self, make_client, backend, clock):
        client, dispatcher = make_client(channel_timeout_seconds=0.0)
        engine = dispatcher.engine_for("oUser1", "gh_service")
        engine.push_msg("m1", clock.now, "text", {"content": "Hello"})
        engine.push_msg("m1", clock.now, "text", {"content": "Hello"})
        clock.advance(4)

        response = post_signed(client, message_body(create_time=clock.now - 4))

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "state": "dead", "replies": [FALLBACK]}
        assert backend.calls == 0

    def test_image_message(self, client):
        body = message_body(msg_type="image", pic_url="http://example.com/p.jpg", media_id="p1")

        response = post_signed(client, body)

        assert response.status_code == 200
        assert response.json()["state"] == "new"


class TestWebhookInvalidSignature:
    """Test webhook with invalid or missing signatures."""

    def test_missing_signature_header(self, client):
        response = client.post(
            "/webhook",
            content=message_body(),
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_invalid_signature(self, client):
        response = client.post(
            "/webhook",
            content=message_body(),
            headers={"Content-Type": "application/json", "X-Signature": "invalid_signature_123"}
        )

        assert response.status_code == 401

    def test_signature_with_different_secret(self, client, backend):
        body = message_body()
        response = client.post(
            "/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Signature": compute_signature(body, "wrong")}
        )

        assert response.status_code == 401
        assert backend.calls == 0


class TestWebhookValidationErrors:
    """Test webhook validation errors (422)."""

    @pytest.mark.parametrize("body", [
        "not valid json",
        '{"from":"oUser1","to":"gh_service","create_time":1,"msg_type":"text","content":"x"}',
        '{"message_id":"","from":"oUser1","to":"gh_service","create_time":1,"msg_type":"text","content":"x"}',
        '{"message_id":"m1","from":"oUser1","to":"gh_service","create_time":1,"msg_type":"sticker"}',
        '{"message_id":"m1","from":"oUser1","to":"gh_service","create_time":-1,"msg_type":"text","content":"x"}',
        '{"message_id":"m1","from":"oUser1","to":"gh_service","create_time":1,"msg_type":"text"}',
        '{"message_id":"m1","from":"oUser1","to":"gh_service","create_time":1,"msg_type":"image"}',
        '["not", "an", "object"]',
    ])
    def test_rejected(self, client, backend, body):
        response = post_signed(client, body)

        assert response.status_code == 422
        assert backend.calls == 0

    def test_content_too_long(self, client):
        response = post_signed(client, message_body(content="x" * 4097))

        assert response.status_code == 422
