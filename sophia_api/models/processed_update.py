import uuid

from sqlalchemy import Column, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from sophia_api.database import Base


class ProcessedUpdate(Base):
    __tablename__ = "processed_updates"
    __table_args__ = (UniqueConstraint("platform", "external_id", name="uq_processed_updates_platform_external"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform = Column(Text, nullable=False)
    external_id = Column(Text, nullable=False)
    received_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
