from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

WHATSAPP_PREFIX = "whatsapp:"


def strip_whatsapp_prefix(address: Optional[str]) -> str:
    if not address:
        return ""
    address = address.strip()
    if address.startswith(WHATSAPP_PREFIX):
        address = address[len(WHATSAPP_PREFIX):]
    return address


class TwilioInboundForm(BaseModel):
    """Form fields posted by Twilio for inbound WhatsApp messages and status pushes."""

    message_sid: Optional[str] = Field(default=None, alias="MessageSid")
    from_address: Optional[str] = Field(default=None, alias="From")
    to_address: Optional[str] = Field(default=None, alias="To")
    body: Optional[str] = Field(default=None, alias="Body")
    profile_name: Optional[str] = Field(default=None, alias="ProfileName")
    wa_id: Optional[str] = Field(default=None, alias="WaId")
    message_status: Optional[str] = Field(default=None, alias="MessageStatus")
    sms_status: Optional[str] = Field(default=None, alias="SmsStatus")
    error_code: Optional[str] = Field(default=None, alias="ErrorCode")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def sender_phone(self) -> str:
        return strip_whatsapp_prefix(self.from_address)

    def is_status_callback(self) -> bool:
        """Status pushes carry a message id and a status but no body."""
        return bool(self.message_sid and self.message_status and not self.body)
