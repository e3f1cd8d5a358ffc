"""
Tests — HTTP API

The app runs its real lifespan against the in-memory store with mock
collaborators; the consumer loop is left off so queue contents stay put.

Run:
  pytest tests/test_api.py -v
"""
import pytest

from unittest.mock import patch


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from config.settings import Settings
    from api.main import app

    app.state.start_consumer = False
    with patch("api.main.get_settings", return_value=Settings()):
        with TestClient(app) as c:
            yield c
    app.state.start_consumer = True


@pytest.fixture
def valid_body(valid_item):
    return {"payload": valid_item, "actId": "owner-1"}


class TestHealth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["store"] == "ready"
        assert data["consumer_running"] is False


class TestProduce:

    def test_valid_item_admitted(self, client, valid_body):
        resp = client.post("/api/v1/produce", json=valid_body)
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert isinstance(data["messageId"], int)

        assert client.get("/api/v1/status").json()["main_queue_length"] == 1

    def test_invalid_item_rejected(self, client, valid_body):
        del valid_body["payload"]["sourceToken"]
        resp = client.post("/api/v1/produce", json=valid_body)
        assert resp.status_code == 422
        data = resp.json()
        assert data["success"] is False
        assert "sourceToken is required" in data["problems"]
        assert client.get("/api/v1/status").json()["main_queue_length"] == 0

    def test_missing_payload(self, client):
        assert client.post("/api/v1/produce", json={}).status_code == 422

    def test_store_down_is_503(self, client, valid_body):
        runtime = client.app.state.runtime
        client.portal.call(runtime.store.close)
        resp = client.post("/api/v1/produce", json=valid_body)
        assert resp.status_code == 503


class TestStatusAndDeadLetters:

    def test_status_shape(self, client):
        data = client.get("/api/v1/status").json()
        assert data["main_queue_length"] == 0
        assert data["dead_letter_length"] == 0
        assert data["store_connection_state"] == "ready"
        assert data["scheduled_resubmits"] == 0
        assert "observed_at" in data

    def test_status_with_store_down(self, client):
        runtime = client.app.state.runtime
        client.portal.call(runtime.store.close)
        data = client.get("/api/v1/status").json()
        assert data["main_queue_length"] is None
        assert data["store_connection_state"] == "closed"

    def test_dead_letters_listing(self, client, make_message):
        runtime = client.app.state.runtime
        for reason in ("first", "second"):
            client.portal.call(runtime.dead_letters.quarantine, make_message(), reason)

        data = client.get("/api/v1/dead-letters", params={"limit": 1}).json()
        assert data["total"] == 2
        assert len(data["records"]) == 1
        assert data["records"][0]["error"] == "first"
        assert "originalMessage" in data["records"][0]

    def test_dead_letters_limit_validated(self, client):
        assert client.get("/api/v1/dead-letters", params={"limit": 0}).status_code == 422
