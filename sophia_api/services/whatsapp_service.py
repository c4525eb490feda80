import base64
import hashlib
import hmac
import re
from typing import Mapping, Optional

import httpx

from sophia_api.logging_config import get_logger, mask_identifier
from sophia_api.schemas.whatsapp import WHATSAPP_PREFIX, strip_whatsapp_prefix
from sophia_api.services.delivery_service import DeliveryError, MessageSender

logger = get_logger("whatsapp_service")

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

# Twilio error codes that will fail the same way on every retry.
PERMANENT_ERROR_CODES = {
    21211: "invalid_phone_number",
    21614: "invalid_phone_number",
    20003: "authentication_failed",
    21408: "permission_denied",
}
RATE_LIMIT_ERROR_CODE = 20429

_MARKDOWN_BOLD = re.compile(r"\*\*(.+?)\*\*", re.DOTALL)


def to_whatsapp_address(phone: str) -> str:
    phone = strip_whatsapp_prefix(phone)
    return f"{WHATSAPP_PREFIX}{phone}"


def to_whatsapp_formatting(text: str) -> str:
    """WhatsApp marks bold with single asterisks."""
    return _MARKDOWN_BOLD.sub(r"*\1*", text)


def classify_twilio_error(status_code: int, payload: dict) -> DeliveryError:
    code = payload.get("code")
    message = payload.get("message") or f"Twilio API error {status_code}"
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None

    if code in PERMANENT_ERROR_CODES:
        return DeliveryError(message, permanent=True, code=PERMANENT_ERROR_CODES[code], status_code=status_code)
    if status_code in (401, 403):
        return DeliveryError(message, permanent=True, code="authentication_failed", status_code=status_code)
    if code == RATE_LIMIT_ERROR_CODE or status_code == 429:
        return DeliveryError(message, permanent=False, code="rate_limited", status_code=status_code)
    return DeliveryError(message, permanent=False, code=str(code) if code else "provider_error", status_code=status_code)


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """HMAC-SHA1 over the full URL followed by the sorted form parameters, base64 encoded."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(auth_token: str, url: str, params: Mapping[str, str], signature: Optional[str]) -> bool:
    if not auth_token or not signature:
        return False
    expected = compute_twilio_signature(auth_token, url, params)
    return hmac.compare_digest(expected, signature)


class TwilioWhatsAppService(MessageSender):
    """Sends WhatsApp messages through the Twilio Messages API."""

    platform = "whatsapp"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_key_sid: Optional[str] = None,
        api_key_secret: Optional[str] = None,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_key_sid = api_key_sid
        self.api_key_secret = api_key_secret
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        has_auth = bool(self.auth_token) or bool(self.api_key_sid and self.api_key_secret)
        return bool(self.account_sid and self.from_number and has_auth)

    def _auth(self) -> tuple[str, str]:
        if self.api_key_sid and self.api_key_secret:
            return self.api_key_sid, self.api_key_secret
        return self.account_sid, self.auth_token

    async def send_text(self, target: str, text: str, parse_mode: Optional[str] = None) -> Optional[str]:
        url = TWILIO_MESSAGES_URL.format(sid=self.account_sid)
        form = {
            "From": to_whatsapp_address(self.from_number),
            "To": to_whatsapp_address(target),
            "Body": to_whatsapp_formatting(text) if parse_mode else text,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, data=form, auth=self._auth())
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Twilio request timed out: {e}", code="timeout") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Twilio network error: {e}", code="network_error") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code in (200, 201):
            logger.debug(
                "Twilio accepted message",
                extra={"context": {"to": mask_identifier(target), "sid": payload.get("sid")}},
            )
            return payload.get("sid")

        raise classify_twilio_error(response.status_code, payload)
