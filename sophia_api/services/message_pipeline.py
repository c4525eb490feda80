"""Post-acknowledgement processing of one accepted inbound update."""

from typing import Optional

from sqlalchemy.orm import Session

from sophia_api.logging_config import LoggerAdapter, get_logger
from sophia_api.schemas.inbound import InboundUpdate
from sophia_api.services.conversation_service import INBOUND, OUTBOUND, log_message
from sophia_api.services.delivery_service import DeliveryResult, DeliveryService, DeliveryStatus
from sophia_api.services.document_session_service import DocumentSessionManager
from sophia_api.services.intent_router import IntentRouter, RouteOutcome
from sophia_api.services.registration_service import RegistrationService

logger = get_logger("message_pipeline")

MSG_PROCESSING_ERROR = "An error occurred processing your message. Please try again later."
REPLY_PARSE_MODE = "Markdown"


class MessagePipeline:
    def __init__(
        self,
        registration: RegistrationService,
        router: IntentRouter,
        delivery: dict[str, DeliveryService],
        session_manager: DocumentSessionManager,
    ):
        self.registration = registration
        self.router = router
        self.delivery = delivery
        self.session_manager = session_manager

    async def process(self, db: Session, update: InboundUpdate) -> Optional[DeliveryResult]:
        log = LoggerAdapter(logger, {"platform": update.platform.value, "update_id": update.external_update_id})

        try:
            registration = self.registration.handle(db, update)
        except Exception as e:
            db.rollback()
            log.error("Registration step failed", context={"error": str(e)}, exc_info=True)
            return await self.reply(update, MSG_PROCESSING_ERROR)

        if registration.consumed:
            log.info("Message consumed by registration", context={"state": registration.state.value})
            return await self.reply(update, registration.reply)

        user = registration.platform_user
        route: Optional[RouteOutcome] = None
        try:
            route = await self.router.route(db, update, user)
            db.commit()
            reply_text = route.reply
            log.info("Message routed", context={"kind": route.kind.value})
        except Exception as e:
            db.rollback()
            log.error("Routing failed", context={"error": str(e)}, exc_info=True)
            reply_text = MSG_PROCESSING_ERROR

        log_message(
            db,
            agent_id=user.agent_id,
            platform=update.platform.value,
            chat_id=update.chat_id,
            direction=INBOUND,
            text=update.text,
            message_id=update.external_update_id,
        )

        result = await self.reply(update, reply_text)

        log_message(
            db,
            agent_id=user.agent_id,
            platform=update.platform.value,
            chat_id=update.chat_id,
            direction=OUTBOUND,
            text=reply_text,
            message_id=result.message_id,
            delivery_status="sent" if result.success else "failed",
        )

        if route is not None and route.document_ready:
            self._finish_document(db, route, result, log)
        return result

    def _finish_document(self, db: Session, route: RouteOutcome, result: DeliveryResult, log: LoggerAdapter) -> None:
        if not result.success:
            log.warning(
                "Generated document was not delivered",
                context={"session_id": str(route.session.id), "delivery": result.describe()},
            )
            return
        try:
            self.session_manager.mark_sent(db, route.session)
            db.commit()
        except Exception as e:
            db.rollback()
            log.error("Failed to mark document session sent", context={"error": str(e)})

    async def reply(self, update: InboundUpdate, text: Optional[str]) -> DeliveryResult:
        service = self.delivery.get(update.platform.value)
        if service is None or not text:
            return DeliveryResult(
                status=DeliveryStatus.NOT_ATTEMPTED,
                platform=update.platform.value,
                error="No reply to send" if service else "No delivery service",
            )
        return await service.send(update.chat_id, text, parse_mode=REPLY_PARSE_MODE)


async def process_in_background(pipeline: MessagePipeline, session_factory, update: InboundUpdate) -> None:
    """Background-task entry point. Errors are logged here and never reach the HTTP layer."""
    db = session_factory()
    try:
        await pipeline.process(db, update)
    except Exception as e:
        logger.error(
            "Background processing failed",
            extra={"context": {"platform": update.platform.value, "update_id": update.external_update_id, "error": str(e)}},
            exc_info=True,
        )
    finally:
        db.close()
