from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class DocumentSessionResponse(BaseModel):
    id: UUID
    agent_id: UUID
    template_id: str
    status: str
    collected_fields: dict[str, Any]
    missing_fields: list[str]
    validation_errors: list[dict[str, Any]] = []
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class DocumentSessionActionResponse(BaseModel):
    success: bool
    message: str
    session: Optional[DocumentSessionResponse] = None
