"""Tests for the health document and the admin web app."""

import pytest

from veil.core.models import Session, SessionMode
from veil.web.health import build_health_document
from veil.web.server import create_app

from .conftest import make_context


@pytest.fixture
def admin_context():
    return make_context()


@pytest.fixture
def client(admin_context):
    app = create_app(admin_context)
    app.config["TESTING"] = True
    return app.test_client()


class TestHealthDocument:

    def test_shape(self, admin_context):
        admin_context.registry.register(Session(mode=SessionMode.CONNECT_TUNNEL))
        document = build_health_document(admin_context)
        assert document["status"] == "healthy"
        assert document["version"] == admin_context.version
        assert document["sessions"]["active"] == 1
        assert document["sessions"]["byMode"]["connect_tunnel"] == 1
        assert document["serverInfo"]["cpus"] >= 1
        assert document["features"]["dnsStrategies"] == ["static"]
        assert document["pools"]["epoch"] == 0

    def test_no_secrets(self, admin_context):
        admin_context.tls.current_ticket_key()
        text = repr(build_health_document(admin_context))
        assert "test-secret" not in text
        assert admin_context.tls.current_ticket_key().hex() not in text


class TestAdminApp:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.get_json()["status"] == "healthy"

    def test_non_loopback_refused(self, client):
        response = client.get("/health", environ_base={"REMOTE_ADDR": "203.0.113.7"})
        assert response.status_code == 404

    def test_sessions(self, client, admin_context):
        session = admin_context.registry.register(Session(mode=SessionMode.HTTP_RELAY))
        data = client.get("/api/sessions").get_json()
        assert data["sessions"][0]["id"] == session.id
        assert data["stats"]["active"] == 1

    def test_metrics(self, client):
        data = client.get("/api/metrics").get_json()
        assert data["resolver"]["strategies"] == ["static"]
        assert set(data["shaper"]) == {"writes", "chunks", "bytes", "aborted"}

    def test_rotate_without_running_loop(self, client, admin_context):
        data = client.post("/api/pools/rotate").get_json()
        assert data == {"scheduled": False, "epoch": 1}
        assert admin_context.registry.epoch == 1
