import asyncio
import hmac
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from sophia_api.logging_config import get_logger, mask_identifier
from sophia_api.schemas.inbound import InboundUpdate
from sophia_api.services.dedup_service import UpdateDeduplicator
from sophia_api.services.delivery_service import MessageSender
from sophia_api.services.rate_limiter import RateLimiter

logger = get_logger("webhook_gatekeeper")

MSG_RATE_LIMITED = "⏳ You're sending messages too quickly. Please wait a moment and try again."
RATE_LIMIT_NOTICE_TIMEOUT_SECONDS = 3.0


class GateDecision(str, Enum):
    ACCEPTED = "accepted"
    RATE_LIMITED = "rate_limited"
    DUPLICATE = "duplicate"


def verify_secret(expected: Optional[str], provided: Optional[str]) -> bool:
    """Constant-time comparison. An unset secret disables the check."""
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


class WebhookGatekeeper:
    """Rate limiting and deduplication ahead of asynchronous processing."""

    def __init__(
        self,
        limiters: dict[str, RateLimiter],
        deduplicator: UpdateDeduplicator,
        senders: dict[str, MessageSender],
    ):
        self.limiters = limiters
        self.deduplicator = deduplicator
        self.senders = senders

    async def admit(self, db: Session, update: InboundUpdate) -> GateDecision:
        platform = update.platform.value
        limiter = self.limiters.get(platform)
        if limiter is not None:
            limit = await limiter.check_limit(update.rate_limit_key)
            if not limit.allowed:
                logger.info(
                    "Inbound rate limit exceeded",
                    extra={"context": {"platform": platform, "sender": mask_identifier(update.sender_id)}},
                )
                await self.notify_rate_limited(update)
                return GateDecision.RATE_LIMITED

        if not self.deduplicator.record_seen(db, platform, update.external_update_id):
            return GateDecision.DUPLICATE

        return GateDecision.ACCEPTED

    async def notify_rate_limited(self, update: InboundUpdate) -> None:
        """Single best-effort send; failures are ignored."""
        sender = self.senders.get(update.platform.value)
        if sender is None or not sender.is_configured:
            return
        try:
            await asyncio.wait_for(
                sender.send_text(update.chat_id, MSG_RATE_LIMITED),
                timeout=RATE_LIMIT_NOTICE_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.debug("Rate limit notice not delivered", extra={"context": {"error": str(e)}})
