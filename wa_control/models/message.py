import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from wa_control.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    wa_message_id = Column(Text, unique=True)  # provider id, dedup key
    local_ref = Column(Text)  # synthetic id until the provider acknowledges
    wa_from = Column(Text)
    wa_to = Column(Text)
    direction = Column(Text, nullable=False)  # inbound, outbound
    body = Column(Text)
    wa_timestamp = Column(DateTime(timezone=True), nullable=False)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"))
    department_code = Column(Text)
    media_type = Column(Text)
    media_url = Column(Text)
    media_mime_type = Column(Text)
    media_caption = Column(Text)
    media_filename = Column(Text)
    is_template = Column(Boolean, nullable=False, default=False)
    template_name = Column(Text)
    delivery_status = Column(Text)  # pending, relayed, sent, delivered, read, failed
    last_error = Column(Text)
    raw = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        Index("ix_messages_wa_to_direction", "wa_to", "direction"),
        Index("ix_messages_wa_from_direction", "wa_from", "direction"),
    )
