from sophia_api.schemas.inbound import InboundUpdate, Platform
from sophia_api.schemas.telegram import TelegramUpdate, TelegramWebhookResponse
from sophia_api.schemas.whatsapp import TwilioInboundForm

__all__ = [
    "InboundUpdate",
    "Platform",
    "TelegramUpdate",
    "TelegramWebhookResponse",
    "TwilioInboundForm",
]
