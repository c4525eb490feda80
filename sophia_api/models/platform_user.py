import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from sophia_api.database import Base


class PlatformUser(Base):
    """A chat-platform account linked to an agent after registration."""

    __tablename__ = "platform_users"
    __table_args__ = (UniqueConstraint("platform", "external_user_id", name="uq_platform_users_platform_user"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform = Column(Text, nullable=False)  # telegram, whatsapp
    external_user_id = Column(Text, nullable=False)
    agent_id = Column(UUID(as_uuid=True), ForeignKey("agents.id"))
    chat_id = Column(Text)
    username = Column(Text)
    display_name = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    registered_at = Column(TIMESTAMP(timezone=True))
    last_active_at = Column(TIMESTAMP(timezone=True))

    agent = relationship("Agent", back_populates="platform_users")
