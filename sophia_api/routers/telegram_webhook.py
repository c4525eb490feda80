import json
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from sophia_api.database import get_db
from sophia_api.dependencies import ServiceContainer, get_container
from sophia_api.logging_config import get_logger
from sophia_api.schemas.inbound import InboundUpdate, Platform
from sophia_api.schemas.telegram import TelegramUpdate, TelegramWebhookResponse, TelegramWebhookStatus
from sophia_api.services.delivery_service import DeliveryError
from sophia_api.services.message_pipeline import process_in_background
from sophia_api.services.webhook_gatekeeper import GateDecision, verify_secret

logger = get_logger("telegram_webhook")

router = APIRouter()


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        body = await request.json()
        return body if isinstance(body, dict) else None
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            decoded = json.loads(raw.decode(enc, errors="replace"))
            return decoded if isinstance(decoded, dict) else None
        except Exception:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


def to_inbound_update(update: TelegramUpdate) -> Optional[InboundUpdate]:
    """None when the update has no sender or no text to act on."""
    message = update.effective_message
    if message is None or message.from_user is None or message.from_user.is_bot:
        return None
    text = message.text or message.caption
    if not text:
        return None
    sender = message.from_user
    name = " ".join(part for part in (sender.first_name, sender.last_name) if part)
    return InboundUpdate(
        platform=Platform.TELEGRAM,
        external_update_id=str(update.update_id),
        sender_id=str(sender.id),
        chat_id=str(message.chat.id),
        text=text,
        sender_name=name or None,
        username=sender.username,
    )


@router.post("/telegram-webhook", response_model=TelegramWebhookResponse)
async def handle_telegram_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    secret_token: Optional[str] = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
):
    """
    Acknowledge a Telegram update and schedule its processing.
    Every outcome except a bad secret is a 200 so Telegram does not redeliver.
    """
    if not verify_secret(container.settings.telegram_webhook_secret, secret_token):
        logger.warning("Telegram webhook secret mismatch")
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        body = await parse_telegram_update(request)
        if body is None:
            return TelegramWebhookResponse(message="Invalid payload ignored")

        try:
            update = TelegramUpdate(**body)
        except ValidationError as e:
            logger.warning("Telegram update failed validation", extra={"context": {"errors": e.error_count()}})
            return TelegramWebhookResponse(message="Invalid payload ignored")

        inbound = to_inbound_update(update)
        if inbound is None:
            return TelegramWebhookResponse(message="No actionable content")

        decision = await container.gatekeeper.admit(db, inbound)
        if decision != GateDecision.ACCEPTED:
            return TelegramWebhookResponse(message=decision.value)

        background_tasks.add_task(process_in_background, container.pipeline, container.session_factory, inbound)
        return TelegramWebhookResponse(message=decision.value)

    except Exception as e:
        logger.error(f"Telegram webhook error: {e}", exc_info=True)
        return TelegramWebhookResponse(message="Error logged")


@router.get("/telegram-webhook", response_model=TelegramWebhookStatus)
async def telegram_webhook_status(container: ServiceContainer = Depends(get_container)):
    settings = container.settings
    webhook_url = f"{settings.public_base_url.rstrip('/')}/telegram-webhook" if settings.public_base_url else None
    status = TelegramWebhookStatus(
        bot_token_configured=bool(settings.telegram_bot_token),
        webhook_secret_configured=bool(settings.telegram_webhook_secret),
        webhook_url=webhook_url,
    )
    if not settings.telegram_bot_token:
        return status

    try:
        info = await container.telegram.get_webhook_info()
    except DeliveryError as e:
        logger.warning("getWebhookInfo failed", extra={"context": {"error": e.message}})
        return status
    status.registered_url = info.get("url") or None
    status.pending_update_count = info.get("pending_update_count")
    status.last_error_message = info.get("last_error_message")
    return status


@router.post("/telegram-webhook/register")
async def register_telegram_webhook(
    container: ServiceContainer = Depends(get_container),
    x_webhook_secret: Optional[str] = Header(default=None, alias="X-Webhook-Secret"),
):
    """Point Telegram at this service's webhook URL."""
    settings = container.settings
    if not settings.telegram_webhook_secret or not verify_secret(settings.telegram_webhook_secret, x_webhook_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not settings.public_base_url or not settings.telegram_bot_token:
        raise HTTPException(status_code=400, detail="PUBLIC_BASE_URL and TELEGRAM_BOT_TOKEN must be configured")

    url = f"{settings.public_base_url.rstrip('/')}/telegram-webhook"
    try:
        await container.telegram.set_webhook(url, secret_token=settings.telegram_webhook_secret)
    except DeliveryError as e:
        logger.error("setWebhook failed", extra={"context": {"error": e.message}})
        raise HTTPException(status_code=502, detail="Telegram rejected the webhook registration")
    return {"success": True, "url": url}
