import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from sophia_api.database import Base


class MessageForward(Base):
    """Audit row written once per forward attempt."""

    __tablename__ = "message_forwards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    agent_id = Column(UUID(as_uuid=True), ForeignKey("agents.id"))
    source_platform = Column(Text, nullable=False)
    source_chat_id = Column(Text, nullable=False)
    destination_platform = Column(Text, nullable=False)
    destination_identifier = Column(Text, nullable=False)
    message_content = Column(Text, nullable=False)
    forward_status = Column(Text, nullable=False, default="pending")  # pending, sent, failed
    provider_message_id = Column(Text)
    error_message = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
