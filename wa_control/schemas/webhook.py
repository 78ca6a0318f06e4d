from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CloudMedia(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


class CloudText(BaseModel):
    body: Optional[str] = None


class CloudButton(BaseModel):
    text: Optional[str] = None
    payload: Optional[str] = None


class CloudButtonReply(BaseModel):
    id: Optional[str] = None
    title: Optional[str] = None


class CloudInteractive(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    button_reply: Optional[CloudButtonReply] = None


class CloudLocation(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None


class CloudMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    from_: str = Field(alias="from")
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[CloudText] = None
    button: Optional[CloudButton] = None
    interactive: Optional[CloudInteractive] = None
    image: Optional[CloudMedia] = None
    audio: Optional[CloudMedia] = None
    voice: Optional[CloudMedia] = None
    video: Optional[CloudMedia] = None
    document: Optional[CloudMedia] = None
    sticker: Optional[CloudMedia] = None
    location: Optional[CloudLocation] = None


class CloudStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    errors: Optional[list[dict[str, Any]]] = None


class CloudMetadata(BaseModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class CloudChangeValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    messaging_product: Optional[str] = None
    metadata: Optional[CloudMetadata] = None
    messages: list[CloudMessage] = []
    statuses: list[CloudStatus] = []


class CloudChange(BaseModel):
    field: Optional[str] = None
    value: CloudChangeValue = CloudChangeValue()


class CloudEntry(BaseModel):
    id: Optional[str] = None
    changes: list[CloudChange] = []


class CloudWebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: list[CloudEntry] = []


class InboundMessageResult(BaseModel):
    wa_message_id: str
    message_id: Optional[UUID] = None
    conversation_id: Optional[UUID] = None
    duplicate: bool = False
    owner: Optional[str] = None
    ai_dispatched: bool = False
    department: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    messages: list[InboundMessageResult] = []
    statuses_applied: int = 0
