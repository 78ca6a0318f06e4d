import uuid

from sqlalchemy import JSON, Column, DateTime, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from wa_control.database import Base


class OwnershipEvent(Base):
    __tablename__ = "ownership_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    phone_number = Column(Text, nullable=False, index=True)
    event_type = Column(Text, nullable=False)  # claim, release, timeout_release
    operator_id = Column(Text)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    details = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
