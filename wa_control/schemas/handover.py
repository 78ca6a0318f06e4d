from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ClaimRequest(BaseModel):
    operator_id: str = Field(min_length=1)


class ReleaseRequest(BaseModel):
    released_by: Optional[str] = None


class ConversationStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    phone_number: str
    is_ai_active: bool
    owner: str
    operator_id: Optional[str] = None
    operator_takeover_at: Optional[datetime] = None
    ai_started_at: Optional[datetime] = None
    last_human_message_at: Optional[datetime] = None
    last_ai_message_at: Optional[datetime] = None


class OwnershipEventItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    phone_number: str
    event_type: str
    operator_id: Optional[str] = None
    occurred_at: datetime
    details: dict[str, Any] = {}


class ReleaseStaleRequest(BaseModel):
    timeout_minutes: int = Field(default=30, ge=1)
    dry_run: bool = False


class ReleasedConversation(BaseModel):
    phone: str
    takeover_at: str
    operator_id: Optional[str] = None
    minutes_waiting: int
    had_customer_messages: bool


class SkippedConversation(BaseModel):
    phone: str
    reason: str
    takeover_at: str


class FailedConversation(BaseModel):
    phone: str
    takeover_at: str
    error: str


class ReleaseStaleResponse(BaseModel):
    success: bool
    dry_run: bool
    timeout_minutes: int
    cutoff_time: str
    total_checked: int
    released: int
    skipped: int
    failed: int = 0
    released_conversations: list[ReleasedConversation] = []
    skipped_conversations: list[SkippedConversation] = []
    failed_conversations: list[FailedConversation] = []
