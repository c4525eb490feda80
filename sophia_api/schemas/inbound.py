from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"

    @property
    def other(self) -> "Platform":
        return Platform.WHATSAPP if self is Platform.TELEGRAM else Platform.TELEGRAM


class InboundUpdate(BaseModel):
    """Normalized inbound message, immutable once received."""

    platform: Platform
    external_update_id: str
    sender_id: str
    chat_id: str
    text: str = ""
    sender_name: Optional[str] = None
    username: Optional[str] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def rate_limit_key(self) -> str:
        return f"{self.platform.value}:{self.sender_id}"
