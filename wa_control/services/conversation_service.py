from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from wa_control.models import Conversation
from wa_control.services.phone import phone_variations

STATUS_ACTIVE = "active"
STATUS_CLOSED = "closed"


def get_conversation(db: Session, conversation_id: UUID) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def find_active_conversation(db: Session, phone: str) -> Optional[Conversation]:
    """Most recent active conversation for any variation of the phone number."""
    return (
        db.query(Conversation)
        .filter(
            Conversation.phone_number.in_(phone_variations(phone)),
            Conversation.status == STATUS_ACTIVE,
        )
        .order_by(Conversation.created_at.desc())
        .first()
    )


def find_or_create_conversation(db: Session, phone: str, department: Optional[str] = None) -> tuple[Conversation, bool]:
    """Find active conversation or create an un-triaged one."""
    conversation = find_active_conversation(db, phone)
    if conversation:
        return conversation, False

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        phone_number=phone,
        department_code=department,
        status=STATUS_ACTIVE,
        created_at=now,
        last_message_at=now,
        updated_at=now,
    )
    db.add(conversation)
    db.flush()
    return conversation, True


def touch_last_message(db: Session, conversation: Optional[Conversation], at: Optional[datetime] = None) -> None:
    if conversation is None:
        return
    now = at or datetime.now(timezone.utc)
    conversation.last_message_at = now
    conversation.updated_at = now
    db.flush()
