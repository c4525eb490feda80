from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, Response
from pydantic import ValidationError
from sqlalchemy.orm import Session

from sophia_api.database import get_db
from sophia_api.dependencies import ServiceContainer, get_container
from sophia_api.logging_config import get_logger, mask_identifier
from sophia_api.schemas.inbound import InboundUpdate, Platform
from sophia_api.schemas.whatsapp import TwilioInboundForm
from sophia_api.services.conversation_service import update_delivery_status
from sophia_api.services.message_pipeline import process_in_background
from sophia_api.services.webhook_gatekeeper import GateDecision
from sophia_api.services.whatsapp_service import verify_twilio_signature

logger = get_logger("whatsapp_webhook")

router = APIRouter()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def twiml_ack() -> Response:
    """Twilio only needs a 200; an empty TwiML document sends no auto-reply."""
    return Response(content=EMPTY_TWIML, media_type="application/xml")


def _signature_url(request: Request, public_base_url: str) -> str:
    if public_base_url:
        return f"{public_base_url.rstrip('/')}{request.url.path}"
    return str(request.url)


def handle_status_callback(db: Session, payload: TwilioInboundForm) -> int:
    """Record a delivery-status push against the outbound conversation log."""
    try:
        updated = update_delivery_status(db, payload.message_sid, payload.message_status)
    except Exception as e:
        db.rollback()
        logger.warning("Failed to apply delivery status", extra={"context": {"error": str(e)}})
        return 0
    logger.info(
        "Delivery status received",
        extra={
            "context": {
                "message_sid": payload.message_sid,
                "status": payload.message_status,
                "error_code": payload.error_code,
                "rows": updated,
            }
        },
    )
    return updated


@router.post("/whatsapp-webhook")
async def handle_whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    twilio_signature: Optional[str] = Header(default=None, alias="X-Twilio-Signature"),
):
    """Twilio inbound messages and status callbacks. Always answers 200."""
    settings = container.settings
    try:
        form = await request.form()
        params = {key: str(value) for key, value in form.items()}
    except Exception as e:
        logger.warning("Unreadable WhatsApp webhook body", extra={"context": {"error": str(e)}})
        return twiml_ack()

    try:
        if settings.whatsapp_validate_signature:
            url = _signature_url(request, settings.public_base_url)
            if not verify_twilio_signature(settings.twilio_auth_token, url, params, twilio_signature):
                logger.warning("Twilio signature check failed")
                return twiml_ack()

        try:
            payload = TwilioInboundForm.model_validate(params)
        except ValidationError:
            logger.warning("WhatsApp payload failed validation")
            return twiml_ack()

        if payload.is_status_callback():
            handle_status_callback(db, payload)
            return twiml_ack()

        sender = payload.sender_phone
        if not sender or not payload.message_sid:
            logger.info("WhatsApp event without sender ignored")
            return twiml_ack()

        text = (payload.body or "").strip()
        if not text:
            logger.info("WhatsApp message without text ignored", extra={"context": {"sender": mask_identifier(sender)}})
            return twiml_ack()

        inbound = InboundUpdate(
            platform=Platform.WHATSAPP,
            external_update_id=payload.message_sid,
            sender_id=sender,
            chat_id=sender,
            text=text,
            sender_name=payload.profile_name,
        )

        decision = await container.gatekeeper.admit(db, inbound)
        if decision == GateDecision.ACCEPTED:
            background_tasks.add_task(process_in_background, container.pipeline, container.session_factory, inbound)
        return twiml_ack()

    except Exception as e:
        logger.error(f"WhatsApp webhook error: {e}", exc_info=True)
        return twiml_ack()
