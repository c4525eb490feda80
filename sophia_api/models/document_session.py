import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from sophia_api.database import Base


class DocumentSession(Base):
    __tablename__ = "document_sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    agent_id = Column(UUID(as_uuid=True), ForeignKey("agents.id"), nullable=False)
    template_id = Column(Text, nullable=False)
    platform = Column(Text)
    chat_id = Column(Text)
    collected_fields = Column(JSONB, nullable=False, default=dict)
    missing_fields = Column(JSONB, nullable=False, default=list)
    validation_errors = Column(JSONB, nullable=False, default=list)
    status = Column(Text, nullable=False, default="collecting")
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)
    completed_at = Column(TIMESTAMP(timezone=True))
