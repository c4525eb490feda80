from typing import Optional

from pydantic import BaseModel, ConfigDict


class TelegramUser(BaseModel):
    id: int
    is_bot: bool = False
    first_name: str
    last_name: Optional[str] = None
    username: Optional[str] = None


class TelegramChat(BaseModel):
    id: int
    type: str  # private, group, supergroup, channel
    title: Optional[str] = None
    username: Optional[str] = None


class TelegramMessage(BaseModel):
    message_id: int
    date: int
    chat: TelegramChat
    from_user: Optional[TelegramUser] = None  # "from" is reserved in Python
    text: Optional[str] = None
    caption: Optional[str] = None
    message_thread_id: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)

    def __init__(self, **data):
        # Handle "from" -> "from_user" mapping
        if "from" in data:
            data["from_user"] = data.pop("from")
        super().__init__(**data)


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
    edited_message: Optional[TelegramMessage] = None

    @property
    def effective_message(self) -> Optional[TelegramMessage]:
        return self.message or self.edited_message


class TelegramWebhookResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = None


class TelegramWebhookStatus(BaseModel):
    bot_token_configured: bool
    webhook_secret_configured: bool
    webhook_url: Optional[str] = None
    registered_url: Optional[str] = None
    pending_update_count: Optional[int] = None
    last_error_message: Optional[str] = None
