import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid

from wa_control.database import Base


class ConversationState(Base):
    """Current owner of the conversation with one phone number."""

    __tablename__ = "conversation_states"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    phone_number = Column(Text, nullable=False, unique=True)
    is_ai_active = Column(Boolean, nullable=False, default=True)
    operator_id = Column(Text)
    operator_takeover_at = Column(DateTime(timezone=True))
    ai_started_at = Column(DateTime(timezone=True))
    last_human_message_at = Column(DateTime(timezone=True))
    last_ai_message_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
