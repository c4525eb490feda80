import re
import uuid
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from sophia_api.logging_config import get_logger, mask_identifier
from sophia_api.models import Agent, MessageForward, PlatformUser
from sophia_api.schemas.inbound import Platform
from sophia_api.services.delivery_service import DeliveryResult, DeliveryService, DeliveryStatus

logger = get_logger("forward_service")

FORWARD_PREFIX = re.compile(r"^\s*(?:forward\s+to\b|/forward\b)", re.IGNORECASE)
FORWARD_PATTERNS = (
    re.compile(r"^\s*forward\s+to\s+(\+?\d+)\s*:\s*(.+)$", re.IGNORECASE | re.DOTALL),
    re.compile(r"^\s*/forward\s+(\+?\d+)\s+(.+)$", re.IGNORECASE | re.DOTALL),
)
PHONE_PATTERN = re.compile(r"^\+?(\d{1,4})?\d{8,15}$")

MSG_FORWARD_USAGE = (
    "To forward a message use one of:\n"
    "`forward to +35799123456: your message`\n"
    "`/forward +35799123456 your message`"
)
MSG_INVALID_PHONE = "❌ {phone} is not a valid phone number. Include the country code, e.g. +35799123456."
MSG_FORWARD_SENT = "✅ Message forwarded to {phone} on {platform}."
MSG_FORWARD_FAILED = "❌ The message could not be forwarded. Please try again later."
MSG_RECIPIENT_NOT_ON_TELEGRAM = "❌ {phone} is not linked to a registered Telegram user, so the message was not forwarded."

# Reasons safe to show to the sender.
USER_FACING_REASONS = {
    "invalid_phone_number": "{phone} cannot receive WhatsApp messages (invalid number).",
    "permission_denied": "messages to {phone} are not permitted.",
    "forbidden": "the recipient has blocked the bot.",
}


@dataclass(frozen=True)
class ForwardCommand:
    recipient: Optional[str]
    message: Optional[str]

    @property
    def is_complete(self) -> bool:
        return bool(self.recipient) and bool(self.message)


@dataclass
class ForwardOutcome:
    success: bool
    reply: str
    delivery: Optional[DeliveryResult] = None


def parse_forward_command(text: Optional[str]) -> Optional[ForwardCommand]:
    """Return None for ordinary text, a ForwardCommand for anything that starts like one."""
    if not text or not FORWARD_PREFIX.match(text):
        return None
    for pattern in FORWARD_PATTERNS:
        match = pattern.match(text.strip())
        if match:
            message = match.group(2).strip()
            return ForwardCommand(recipient=match.group(1), message=message or None)
    return ForwardCommand(recipient=None, message=None)


def normalize_phone_number(raw: Optional[str]) -> Optional[str]:
    """Validated E.164-style number with a leading '+', or None."""
    if not raw:
        return None
    cleaned = re.sub(r"[\s\-]", "", raw)
    if not PHONE_PATTERN.match(cleaned):
        return None
    return cleaned if cleaned.startswith("+") else f"+{cleaned}"


class ForwardService:
    def __init__(self, delivery: dict[str, DeliveryService]):
        self.delivery = delivery

    def resolve_telegram_chat(self, db: Session, phone: str) -> Optional[str]:
        """Telegram chat of an active registered user whose agent owns the phone number."""
        user = (
            db.query(PlatformUser)
            .join(Agent, PlatformUser.agent_id == Agent.id)
            .filter(
                Agent.phone_number == phone,
                PlatformUser.platform == Platform.TELEGRAM.value,
                PlatformUser.is_active.is_(True),
            )
            .first()
        )
        return user.chat_id if user else None

    async def forward(
        self,
        db: Session,
        *,
        agent_id: Optional[UUID],
        source_platform: Platform,
        source_chat_id: str,
        command: ForwardCommand,
    ) -> ForwardOutcome:
        if not command.is_complete:
            return ForwardOutcome(success=False, reply=MSG_FORWARD_USAGE)

        phone = normalize_phone_number(command.recipient)
        if phone is None:
            return ForwardOutcome(success=False, reply=MSG_INVALID_PHONE.format(phone=command.recipient))

        destination = source_platform.other
        audit = {
            "agent_id": agent_id,
            "source_platform": source_platform,
            "source_chat_id": source_chat_id,
            "destination": destination,
            "phone": phone,
            "message": command.message,
        }
        if destination == Platform.TELEGRAM:
            target = self.resolve_telegram_chat(db, phone)
            if target is None:
                self._record(db, **audit, status="failed", error="Recipient not registered on Telegram")
                return ForwardOutcome(success=False, reply=MSG_RECIPIENT_NOT_ON_TELEGRAM.format(phone=phone))
        else:
            target = phone

        service = self.delivery.get(destination.value)
        if service is None:
            self._record(db, **audit, status="failed", error="No delivery service")
            return ForwardOutcome(success=False, reply=MSG_FORWARD_FAILED)

        result = await service.send(target, command.message)
        status = "sent" if result.success else "failed"
        error = None if result.success else result.describe()
        self._record(db, **audit, status=status, provider_message_id=result.message_id, error=error)

        logger.info(
            "Forward processed",
            extra={
                "context": {
                    "destination_platform": destination.value,
                    "destination": mask_identifier(phone),
                    "status": result.status.value,
                    "attempts": len(result.attempts),
                }
            },
        )

        if result.success:
            reply = MSG_FORWARD_SENT.format(phone=phone, platform=destination.value.capitalize())
            return ForwardOutcome(success=True, reply=reply, delivery=result)

        reason = USER_FACING_REASONS.get(result.error_code or "")
        if result.status == DeliveryStatus.FAILED_PERMANENT and reason:
            return ForwardOutcome(success=False, reply="❌ Could not forward: " + reason.format(phone=phone), delivery=result)
        return ForwardOutcome(success=False, reply=MSG_FORWARD_FAILED, delivery=result)

    def _record(
        self,
        db: Session,
        agent_id: Optional[UUID],
        source_platform: Platform,
        source_chat_id: str,
        destination: Platform,
        phone: str,
        message: str,
        status: str,
        provider_message_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Write the audit row. Storage errors never block the reply."""
        try:
            db.add(
                MessageForward(
                    id=uuid.uuid4(),
                    agent_id=agent_id,
                    source_platform=source_platform.value,
                    source_chat_id=str(source_chat_id),
                    destination_platform=destination.value,
                    destination_identifier=phone,
                    message_content=message,
                    forward_status=status,
                    provider_message_id=provider_message_id,
                    error_message=error,
                )
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Failed to log message forward", extra={"context": {"error": str(e)}})
