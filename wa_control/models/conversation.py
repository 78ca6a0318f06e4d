import uuid

from sqlalchemy import Column, DateTime, Index, Text, Uuid
from sqlalchemy.orm import relationship

from wa_control.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    phone_number = Column(Text, nullable=False)
    department_code = Column(Text)  # leasing, sales, administrative, marketing, new_development; NULL = triage
    stage_id = Column(Text)
    status = Column(Text, nullable=False, default="active")  # active, closed
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_message_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    messages = relationship("Message", back_populates="conversation")

    __table_args__ = (Index("ix_conversations_phone_status", "phone_number", "status"),)
