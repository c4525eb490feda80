import uuid
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from sophia_api.config import Settings
from sophia_api.database import get_db
from sophia_api.dependencies import build_container, get_container
from sophia_api.main import app
from sophia_api.models import DocumentSession
from sophia_api.services.rate_limiter import InMemoryRateLimiter, RedisRateLimiter
from sophia_api.services.result import Result


def _session(status="collecting"):
    now = datetime.now(timezone.utc)
    return DocumentSession(
        id=uuid.uuid4(),
        agent_id=uuid.uuid4(),
        template_id="viewing_form",
        collected_fields={"client_name": "Maria Georgiou"},
        missing_fields=["client_id_number", "viewing_date", "property_reference"],
        validation_errors=[],
        status=status,
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def client_with():
    def _make(container=None):
        db = Mock()

        def _override_get_db():
            yield db

        app.dependency_overrides[get_db] = _override_get_db
        if container is not None:
            app.dependency_overrides[get_container] = lambda: container
        return TestClient(app), db

    yield _make
    app.dependency_overrides.clear()


class TestHealth:
    def test_health(self):
        response = TestClient(app).get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestDocumentSessionEndpoints:
    def test_list_active_sessions(self, client_with):
        container = Mock()
        session = _session()
        container.session_manager.list_active_sessions.return_value = [session]
        client, _ = client_with(container)

        response = client.get("/document-sessions", params={"agent_id": str(session.agent_id)})

        assert response.status_code == 200
        body = response.json()
        assert len(body) == 1
        assert body[0]["template_id"] == "viewing_form"
        assert body[0]["missing_fields"] == ["client_id_number", "viewing_date", "property_reference"]

    def test_get_missing_session(self, client_with):
        container = Mock()
        container.session_manager.get_session.return_value = None
        client, _ = client_with(container)

        response = client.get(f"/document-sessions/{uuid.uuid4()}")

        assert response.status_code == 404

    def test_cancel(self, client_with):
        session = _session()
        container = Mock()
        container.session_manager.get_session.return_value = session

        def cancel(db, item):
            item.status = "abandoned"
            return Result.success(item)

        container.session_manager.cancel.side_effect = cancel
        client, db = client_with(container)

        response = client.post(f"/document-sessions/{session.id}/cancel")

        assert response.status_code == 200
        assert response.json()["session"]["status"] == "abandoned"
        db.commit.assert_called_once()

    def test_cancel_terminal_session_conflicts(self, client_with):
        container = Mock()
        container.session_manager.get_session.return_value = _session(status="sent")
        container.session_manager.cancel.return_value = Result.failure("Invalid transition: sent -> abandoned", "invalid_transition")
        client, db = client_with(container)

        response = client.post(f"/document-sessions/{uuid.uuid4()}/cancel")

        assert response.status_code == 409
        db.commit.assert_not_called()


class TestCalculatorEndpoints:
    def test_list(self):
        response = TestClient(app).get("/calculators")

        assert response.status_code == 200
        names = [item["name"] for item in response.json()]
        assert names == ["transfer_fees", "capital_gains_tax", "vat_calculator"]

    def test_run(self):
        response = TestClient(app).post("/calculators/transfer_fees", json={"inputs": {"property_value": 300000}})

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["details"]["total_fees"] == 8600
        assert body["error"] is None

    def test_invalid_input_in_body(self):
        response = TestClient(app).post("/calculators/vat_calculator", json={"inputs": {"price": 1}})

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is False
        assert body["error"]["code"] == "INVALID_INPUT"
        assert body["error"]["fallback_url"]

    def test_unknown_calculator_404(self):
        response = TestClient(app).post("/calculators/mortgage", json={"inputs": {}})
        assert response.status_code == 404


class TestContainer:
    def test_memory_backend(self):
        container = build_container(Settings(_env_file=None), session_factory=Mock)

        assert isinstance(container.inbound_limiters["telegram"], InMemoryRateLimiter)
        assert container.inbound_limiters["telegram"].max_requests == 30
        assert container.inbound_limiters["telegram"].window_seconds == 60
        assert container.inbound_limiters["whatsapp"].max_requests == 80
        assert container.delivery["whatsapp"].max_attempts == 3
        assert container.telegram.platform == "telegram"

    def test_redis_backend(self):
        container = build_container(Settings(_env_file=None, rate_limit_backend="redis"), session_factory=Mock)
        assert isinstance(container.outbound_limiters["whatsapp"], RedisRateLimiter)

    def test_run_maintenance(self):
        container = build_container(Settings(_env_file=None), session_factory=Mock)
        container.session_manager.sweep_idle_sessions = Mock(return_value=2)
        db = Mock()

        results = container.run_maintenance(db)

        assert results == {"purged_rate_windows": 0, "purged_pending_registrations": 0, "abandoned_sessions": 2}
        db.commit.assert_called_once()
