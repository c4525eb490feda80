from typing import Optional

import httpx

from sophia_api.logging_config import get_logger
from sophia_api.services.delivery_service import DeliveryError, MessageSender

logger = get_logger("telegram_service")

PERMANENT_STATUS_CODES = {400, 401, 403, 404}


def classify_telegram_error(status_code: int, description: str) -> DeliveryError:
    """400 bad chat/format, 401/404 bad token, 403 blocked by user are permanent."""
    description = description or f"Telegram API error {status_code}"
    lowered = description.lower()
    if status_code == 400 and "can't parse entities" in lowered:
        return DeliveryError(description, permanent=True, code="parse_error", status_code=status_code)
    if status_code in (401, 404):
        return DeliveryError(description, permanent=True, code="unauthorized", status_code=status_code)
    if status_code == 403:
        return DeliveryError(description, permanent=True, code="forbidden", status_code=status_code)
    if status_code in PERMANENT_STATUS_CODES:
        return DeliveryError(description, permanent=True, code="bad_request", status_code=status_code)
    if status_code == 429:
        return DeliveryError(description, permanent=False, code="rate_limited", status_code=status_code)
    return DeliveryError(description, permanent=False, code="server_error", status_code=status_code)


class TelegramService(MessageSender):
    """Telegram Bot API client."""

    platform = "telegram"
    BASE_URL = "https://api.telegram.org/bot{token}"

    def __init__(self, bot_token: str, timeout_seconds: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    async def _make_request(self, method: str, data: Optional[dict] = None) -> dict:
        """Call a Bot API method. Raises DeliveryError on any failure."""
        url = f"{self.base_url}/{method}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, json=data or {})
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Telegram request timed out: {e}", code="timeout") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Telegram network error: {e}", code="network_error") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code == 200 and payload.get("ok"):
            return payload

        status_code = payload.get("error_code") or response.status_code
        raise classify_telegram_error(status_code, payload.get("description") or response.text)

    async def send_message(
        self,
        chat_id: str,
        text: str,
        parse_mode: Optional[str] = "Markdown",
        reply_to_message_id: Optional[int] = None,
    ) -> dict:
        data = {"chat_id": chat_id, "text": text}
        if parse_mode:
            data["parse_mode"] = parse_mode
        if reply_to_message_id:
            data["reply_to_message_id"] = reply_to_message_id
        return await self._make_request("sendMessage", data)

    async def send_text(self, target: str, text: str, parse_mode: Optional[str] = None) -> Optional[str]:
        try:
            payload = await self.send_message(target, text, parse_mode=parse_mode)
        except DeliveryError as e:
            if e.code != "parse_error" or not parse_mode:
                raise
            logger.warning("Telegram rejected formatting, resending as plain text")
            payload = await self.send_message(target, text, parse_mode=None)

        message_id = (payload.get("result") or {}).get("message_id")
        return str(message_id) if message_id is not None else None

    async def set_webhook(self, url: str, secret_token: Optional[str] = None) -> dict:
        data = {"url": url, "allowed_updates": ["message", "edited_message"]}
        if secret_token:
            data["secret_token"] = secret_token
        return await self._make_request("setWebhook", data)

    async def get_webhook_info(self) -> dict:
        payload = await self._make_request("getWebhookInfo")
        return payload.get("result") or {}
