import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from sophia_api.logging_config import get_logger
from sophia_api.models import ConversationLog

logger = get_logger("conversation_service")

INBOUND = "inbound"
OUTBOUND = "outbound"


def log_message(
    db: Session,
    *,
    agent_id: Optional[UUID],
    platform: str,
    chat_id: str,
    direction: str,
    text: str,
    message_id: Optional[str] = None,
    delivery_status: Optional[str] = None,
) -> Optional[ConversationLog]:
    """Write a conversation log row. Failures are logged and swallowed."""
    if not text:
        return None
    row = ConversationLog(
        id=uuid.uuid4(),
        agent_id=agent_id,
        platform=platform,
        chat_id=str(chat_id),
        direction=direction,
        message_text=text,
        message_id=message_id,
        delivery_status=delivery_status,
        created_at=datetime.now(timezone.utc),
    )
    try:
        db.add(row)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(
            "Failed to write conversation log",
            extra={"context": {"platform": platform, "direction": direction, "error": str(e)}},
        )
        return None
    return row


def get_recent_history(db: Session, agent_id: UUID, platform: str, limit: int = 10) -> list[dict]:
    """Last messages for an agent on one platform, oldest first, as chat roles."""
    if limit <= 0:
        return []
    try:
        rows = (
            db.query(ConversationLog)
            .filter(ConversationLog.agent_id == agent_id, ConversationLog.platform == platform)
            .order_by(ConversationLog.created_at.desc())
            .limit(limit)
            .all()
        )
    except Exception as e:
        logger.warning("Failed to load conversation history", extra={"context": {"error": str(e)}})
        return []

    history = []
    for row in reversed(rows):
        role = "user" if row.direction == INBOUND else "assistant"
        history.append({"role": role, "content": row.message_text})
    return history


def update_delivery_status(db: Session, message_id: str, status: str) -> int:
    """Apply a provider delivery-status push to the matching outbound log rows."""
    if not message_id or not status:
        return 0
    rows = db.query(ConversationLog).filter(ConversationLog.message_id == message_id).all()
    now = datetime.now(timezone.utc)
    for row in rows:
        row.delivery_status = status
        row.updated_at = now
    db.commit()
    return len(rows)
