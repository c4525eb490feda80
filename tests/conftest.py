from typing import Optional
from unittest.mock import Mock

import pytest

from sophia_api.schemas.inbound import InboundUpdate, Platform
from sophia_api.services.delivery_service import DeliveryError, MessageSender


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:test")
    monkeypatch.setenv("MAINTENANCE_WORKER_ENABLED", "false")


class FakeSender(MessageSender):
    """Records sends; ``errors`` are raised in order before succeeding."""

    def __init__(self, platform: str = "telegram", errors=None, configured: bool = True):
        self.platform = platform
        self.errors = list(errors or [])
        self.configured = configured
        self.sent: list[tuple[str, str, Optional[str]]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def send_text(self, target: str, text: str, parse_mode: Optional[str] = None) -> Optional[str]:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append((target, text, parse_mode))
        return f"msg-{len(self.sent)}"


def make_update(
    text: str = "hello",
    platform: Platform = Platform.TELEGRAM,
    sender_id: str = "111",
    chat_id: Optional[str] = None,
    update_id: str = "1",
    sender_name: Optional[str] = "Maria",
) -> InboundUpdate:
    return InboundUpdate(
        platform=platform,
        external_update_id=update_id,
        sender_id=sender_id,
        chat_id=chat_id or sender_id,
        text=text,
        sender_name=sender_name,
    )


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def permanent_error():
    return DeliveryError("Bad Request: chat not found", permanent=True, code="bad_request", status_code=400)
