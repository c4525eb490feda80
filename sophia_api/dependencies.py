from dataclasses import dataclass
from typing import Callable

import redis.asyncio as redis_async
from fastapi import Request
from sqlalchemy.orm import Session

from sophia_api.config import Settings
from sophia_api.database import SessionLocal
from sophia_api.logging_config import get_logger
from sophia_api.services.ai_service import AIService
from sophia_api.services.dedup_service import UpdateDeduplicator
from sophia_api.services.delivery_service import DeliveryService, MessageSender
from sophia_api.services.document_session_service import DocumentSessionManager
from sophia_api.services.document_templates import TemplateCatalog
from sophia_api.services.forward_service import ForwardService
from sophia_api.services.intent_router import IntentRouter
from sophia_api.services.llm import OpenAIProvider
from sophia_api.services.message_pipeline import MessagePipeline
from sophia_api.services.rate_limiter import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from sophia_api.services.registration_service import InMemoryPendingRegistrationStore, RegistrationService
from sophia_api.services.telegram_service import TelegramService
from sophia_api.services.webhook_gatekeeper import WebhookGatekeeper
from sophia_api.services.whatsapp_service import TwilioWhatsAppService

logger = get_logger("dependencies")


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: Callable[[], Session]
    inbound_limiters: dict[str, RateLimiter]
    outbound_limiters: dict[str, RateLimiter]
    senders: dict[str, MessageSender]
    delivery: dict[str, DeliveryService]
    registration: RegistrationService
    session_manager: DocumentSessionManager
    forward_service: ForwardService
    ai_service: AIService
    router: IntentRouter
    pipeline: MessagePipeline
    gatekeeper: WebhookGatekeeper

    @property
    def telegram(self) -> TelegramService:
        return self.senders["telegram"]

    def run_maintenance(self, db: Session) -> dict:
        """Purge expired in-memory state and abandon idle document sessions."""
        purged_windows = sum(limiter.purge_expired() for limiter in self.inbound_limiters.values())
        purged_windows += sum(limiter.purge_expired() for limiter in self.outbound_limiters.values())
        purged_pending = self.registration.pending_store.purge_expired()
        abandoned = self.session_manager.sweep_idle_sessions(db)
        db.commit()
        return {
            "purged_rate_windows": purged_windows,
            "purged_pending_registrations": purged_pending,
            "abandoned_sessions": abandoned,
        }


def _build_limiter(max_requests: int, window_seconds: float, redis_client, prefix: str) -> RateLimiter:
    if redis_client is not None:
        return RedisRateLimiter(redis_client, max_requests, window_seconds, key_prefix=prefix)
    return InMemoryRateLimiter(max_requests, window_seconds)


def build_container(settings: Settings, session_factory: Callable[[], Session] = SessionLocal) -> ServiceContainer:
    redis_client = None
    if settings.rate_limit_backend == "redis":
        redis_client = redis_async.from_url(settings.redis_url, socket_timeout=0.5, socket_connect_timeout=0.5)
        logger.info("Using Redis rate limiter")

    inbound_limiters = {
        "telegram": _build_limiter(
            settings.telegram_rate_limit, settings.telegram_rate_window_seconds, redis_client, "sophia:rl:in"
        ),
        "whatsapp": _build_limiter(
            settings.whatsapp_rate_limit, settings.whatsapp_rate_window_seconds, redis_client, "sophia:rl:in"
        ),
    }
    outbound_limiters = {
        "telegram": _build_limiter(
            settings.telegram_outbound_limit,
            settings.telegram_outbound_window_seconds,
            redis_client,
            "sophia:rl:out",
        ),
        "whatsapp": _build_limiter(
            settings.whatsapp_outbound_limit,
            settings.whatsapp_outbound_window_seconds,
            redis_client,
            "sophia:rl:out",
        ),
    }

    senders: dict[str, MessageSender] = {
        "telegram": TelegramService(settings.telegram_bot_token, timeout_seconds=settings.delivery_timeout_seconds),
        "whatsapp": TwilioWhatsAppService(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_whatsapp_number,
            api_key_sid=settings.twilio_api_key_sid,
            api_key_secret=settings.twilio_api_key_secret,
            timeout_seconds=settings.delivery_timeout_seconds,
        ),
    }
    delivery = {
        platform: DeliveryService(
            sender,
            outbound_limiter=outbound_limiters[platform],
            max_attempts=settings.delivery_max_attempts,
            base_delay_seconds=settings.delivery_base_delay_seconds,
            timeout_seconds=settings.delivery_timeout_seconds,
        )
        for platform, sender in senders.items()
    }

    registration = RegistrationService(
        InMemoryPendingRegistrationStore(ttl_seconds=settings.registration_pending_ttl_seconds)
    )
    session_manager = DocumentSessionManager(TemplateCatalog(), idle_minutes=settings.session_idle_minutes)
    forward_service = ForwardService(delivery)
    ai_service = AIService(
        OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.openai_model,
            timeout_seconds=settings.ai_timeout_seconds,
        ),
        timeout_seconds=settings.ai_timeout_seconds,
        max_attempts=settings.ai_max_attempts,
    )
    router = IntentRouter(forward_service, session_manager, ai_service, history_limit=settings.ai_history_limit)
    pipeline = MessagePipeline(registration, router, delivery, session_manager)
    gatekeeper = WebhookGatekeeper(inbound_limiters, UpdateDeduplicator(), senders)

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        inbound_limiters=inbound_limiters,
        outbound_limiters=outbound_limiters,
        senders=senders,
        delivery=delivery,
        registration=registration,
        session_manager=session_manager,
        forward_service=forward_service,
        ai_service=ai_service,
        router=router,
        pipeline=pipeline,
        gatekeeper=gatekeeper,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
