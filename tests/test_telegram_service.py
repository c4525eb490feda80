import asyncio
import json

import httpx
import pytest

from sophia_api.services.delivery_service import DeliveryError
from sophia_api.services.telegram_service import TelegramService, classify_telegram_error


def _service(handler):
    return TelegramService("123:ABC", transport=httpx.MockTransport(handler))


class TestClassifyTelegramError:
    @pytest.mark.parametrize(
        "status,description,code,permanent",
        [
            (400, "Bad Request: chat not found", "bad_request", True),
            (400, "Bad Request: can't parse entities: unexpected end", "parse_error", True),
            (401, "Unauthorized", "unauthorized", True),
            (403, "Forbidden: bot was blocked by the user", "forbidden", True),
            (429, "Too Many Requests: retry after 5", "rate_limited", False),
            (502, "Bad Gateway", "server_error", False),
        ],
    )
    def test_classification(self, status, description, code, permanent):
        error = classify_telegram_error(status, description)
        assert error.code == code
        assert error.permanent is permanent
        assert error.status_code == status


class TestSendText:
    def test_success_returns_message_id(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 77}})

        message_id = asyncio.run(_service(handler).send_text("555", "*hi*", parse_mode="Markdown"))

        assert message_id == "77"
        assert requests[0].url.path == "/bot123:ABC/sendMessage"
        body = json.loads(requests[0].content)
        assert body == {"chat_id": "555", "text": "*hi*", "parse_mode": "Markdown"}

    def test_parse_error_resends_as_plain_text(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            if "parse_mode" in body:
                return httpx.Response(
                    400,
                    json={"ok": False, "error_code": 400, "description": "Bad Request: can't parse entities"},
                )
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 8}})

        message_id = asyncio.run(_service(handler).send_text("555", "**broken", parse_mode="Markdown"))

        assert message_id == "8"
        assert len(bodies) == 2
        assert "parse_mode" not in bodies[1]

    def test_blocked_user_is_permanent(self):
        def handler(request):
            return httpx.Response(403, json={"ok": False, "error_code": 403, "description": "Forbidden: bot was blocked"})

        with pytest.raises(DeliveryError) as exc_info:
            asyncio.run(_service(handler).send_text("555", "hi"))
        assert exc_info.value.permanent is True
        assert exc_info.value.code == "forbidden"

    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(DeliveryError) as exc_info:
            asyncio.run(_service(handler).send_text("555", "hi"))
        assert exc_info.value.permanent is False
        assert exc_info.value.code == "network_error"


class TestWebhookRegistration:
    def test_set_webhook_sends_secret(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True, "result": True})

        asyncio.run(_service(handler).set_webhook("https://api.example.com/telegram-webhook", secret_token="s3cret"))

        assert bodies[0]["url"] == "https://api.example.com/telegram-webhook"
        assert bodies[0]["secret_token"] == "s3cret"

    def test_get_webhook_info_returns_result(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={"ok": True, "result": {"url": "https://x/telegram-webhook", "pending_update_count": 2}})

        info = asyncio.run(_service(handler).get_webhook_info())

        assert paths == ["/bot123:ABC/getWebhookInfo"]
        assert info["pending_update_count"] == 2

    def test_is_configured(self):
        assert TelegramService("123:ABC").is_configured
        assert not TelegramService("").is_configured
