from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class SendMessageRequest(BaseModel):
    to: str
    text: Optional[str] = None
    media_url: Optional[str] = None
    media_mime_type: Optional[str] = None
    media_caption: Optional[str] = None
    media_filename: Optional[str] = None
    conversation_id: Optional[UUID] = None
    department: Optional[str] = None
    attendant_name: Optional[str] = None
    sender: Literal["operator", "ai"] = "operator"
    operator_id: Optional[str] = None

    @model_validator(mode="after")
    def require_content(self):
        if not (self.text and self.text.strip()) and not self.media_url:
            raise ValueError("text or media_url is required")
        return self


class SendMessageResponse(BaseModel):
    success: bool
    message_id: Optional[UUID] = None
    wa_message_id: Optional[str] = None
    channel: Optional[str] = None
    delivery_status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class OutboundLogRequest(BaseModel):
    """Confirmation the relay posts back after delivering a message."""

    phone_number: str
    message_body: Optional[str] = None
    message_id: Optional[str] = None
    message_type: str = "text"
    conversation_id: Optional[UUID] = None
    template_name: Optional[str] = None
    media_url: Optional[str] = None
    department_code: Optional[str] = None
    local_message_id: Optional[UUID] = Field(default=None, description="Ledger row id sent in the relay payload")


class OutboundLogResponse(BaseModel):
    success: bool
    message_id: Optional[UUID] = None
    duplicate: bool = False
    error: Optional[str] = None
