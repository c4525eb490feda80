import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from sophia_api.database import Base


class ConversationLog(Base):
    __tablename__ = "conversation_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    agent_id = Column(UUID(as_uuid=True), ForeignKey("agents.id"))
    platform = Column(Text, nullable=False)
    chat_id = Column(Text, nullable=False)
    direction = Column(Text, nullable=False)  # inbound, outbound
    message_text = Column(Text, nullable=False)
    message_id = Column(Text)
    delivery_status = Column(Text)  # sent, delivered, read, failed, undelivered
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True))
