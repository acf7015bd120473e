"""
Tests for the conversation inspection, health and metrics endpoints.

Tests cover:
- Listing partitions
- Context projection, newest first
- Stored state of a single message (dead letters included)
- Per-conversation stats
- Unknown conversations return 404 without creating a partition
"""

import pytest
from fastapi.testclient import TestClient

from chatrelay.dispatcher import Dispatcher
from chatrelay.main import app, get_dispatcher, get_registry


class StaticBackend:
    async def complete(self, context):
        return "ok"


@pytest.fixture
def dispatcher(registry, clock):
    return Dispatcher(registry, StaticBackend(), clock=clock)


@pytest.fixture
def client(registry, dispatcher):
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def seeded(dispatcher, clock):
    """
    Conversation oUser1/gh_service:
    - m1: replied with one reply
    - m2: knocked twice, one buffered reply, not replied
    - m3: no replies
    """
    engine = dispatcher.engine_for("oUser1", "gh_service")
    t = clock.now
    engine.push_msg("m1", t, "text", {"content": "one"})
    engine.push_reply("m1", "text", {"content": "reply one"})
    engine.reply_msg("m1")

    engine.push_msg("m2", t + 1, "text", {"content": "two"})
    engine.push_msg("m2", t + 1, "text", {"content": "two"})
    engine.push_msg("m2", t + 1, "text", {"content": "two"})
    engine.push_reply("m2", "text", {"content": "reply two"})

    engine.push_msg("m3", t + 2, "text", {"content": "three"})
    dispatcher.engine_for("oUser2", "gh_service")
    return engine


class TestListConversations:
    def test_empty(self, client):
        response = client.get("/conversations")

        assert response.status_code == 200
        assert response.json() == {"data": [], "total": 0}

    def test_lists_partitions(self, client, seeded, clock):
        response = client.get("/conversations")

        data = response.json()
        assert data["total"] == 2
        pairs = {(p["remote_id"], p["local_id"]) for p in data["data"]}
        assert pairs == {("oUser1", "gh_service"), ("oUser2", "gh_service")}


class TestContext:
    def test_newest_first(self, client, seeded):
        response = client.get("/conversations/oUser1/gh_service/context", params={"n": 2})

        assert response.status_code == 200
        data = response.json()["data"]
        assert [entry["user"]["payload"]["content"] for entry in data] == ["three", "two"]
        assert data[1]["agent"] == [{"type": "text", "payload": {"content": "reply two"}}]

    def test_zero(self, client, seeded):
        response = client.get("/conversations/oUser1/gh_service/context", params={"n": 0})

        assert response.json() == {"data": []}

    def test_unknown_conversation(self, client, registry):
        response = client.get("/conversations/nobody/gh_service/context")

        assert response.status_code == 404
        assert not registry.exists("nobody", "gh_service")


class TestMessageState:
    def test_buffered_unreplied_message(self, client, seeded):
        response = client.get("/conversations/oUser1/gh_service/messages/m2")

        assert response.status_code == 200
        data = response.json()
        assert data["replied"] is False
        assert data["knock_count"] == 2
        assert data["reply_status"] == "ready"
        assert data["replies"] == [{"sequence": 0, "type": "text", "payload": {"content": "reply two"}}]

    def test_replied_message_keeps_replies(self, client, seeded):
        data = client.get("/conversations/oUser1/gh_service/messages/m1").json()

        assert data["reply_status"] == "replied"
        assert len(data["replies"]) == 1

    def test_unknown_message(self, client, seeded):
        response = client.get("/conversations/oUser1/gh_service/messages/missing")

        assert response.status_code == 404
        assert response.json() == {"detail": "message not found"}


class TestStats:
    def test_stats(self, client, seeded, clock):
        response = client.get("/conversations/oUser1/gh_service/stats")

        assert response.status_code == 200
        assert response.json() == {
            "total_messages": 3,
            "replied_messages": 1,
            "unreplied_messages": 2,
            "total_knocks": 2,
            "first_message_at": clock.now,
            "last_message_at": clock.now + 2,
        }

    def test_empty_conversation_stats(self, client, dispatcher):
        dispatcher.engine_for("oUser9", "gh_service")

        data = client.get("/conversations/oUser9/gh_service/stats").json()

        assert data["total_messages"] == 0
        assert data["first_message_at"] is None


class TestHealthAndMetrics:
    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_ready(self, client, registry):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics(self, client):
        client.get("/health/live")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert "webhook_requests_total" in response.text
