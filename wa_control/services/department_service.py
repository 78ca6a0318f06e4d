from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from wa_control.logging_config import get_logger
from wa_control.models import Conversation
from wa_control.services.conversation_service import find_active_conversation, get_conversation
from wa_control.services.result import ALREADY_ASSIGNED, INVALID_REQUEST, NOT_FOUND, Result
from wa_control.services.routing import Department, parse_department

logger = get_logger("department_service")


class DepartmentResolver:
    """Maps a conversation or phone to its department.

    Lookups are cached for the lifetime of the instance; create one per request
    or unit of work so a triage assignment made elsewhere is picked up next time.
    """

    def __init__(self, db: Session):
        self.db = db
        self._by_conversation: dict[UUID, Optional[Department]] = {}
        self._by_phone: dict[str, Optional[Department]] = {}

    def resolve(self, conversation_id: Optional[UUID] = None, phone: Optional[str] = None) -> Optional[Department]:
        """Department or None (un-triaged, unknown conversation or unknown code)."""
        if conversation_id is not None:
            if conversation_id not in self._by_conversation:
                conversation = get_conversation(self.db, conversation_id)
                self._by_conversation[conversation_id] = self._department_of(conversation)
            return self._by_conversation[conversation_id]

        if phone:
            if phone not in self._by_phone:
                conversation = find_active_conversation(self.db, phone)
                self._by_phone[phone] = self._department_of(conversation)
            return self._by_phone[phone]

        return None

    def forget(self, conversation_id: UUID) -> None:
        self._by_conversation.pop(conversation_id, None)
        self._by_phone.clear()

    @staticmethod
    def _department_of(conversation: Optional[Conversation]) -> Optional[Department]:
        if conversation is None:
            return None
        return parse_department(conversation.department_code)


def assign_department(
    db: Session,
    conversation_id: UUID,
    department: Union[str, Department],
    *,
    reassign: bool = False,
    stage_id: Optional[str] = None,
) -> Result[Conversation]:
    """Triage: set the department of an un-triaged conversation.

    Changing a department that is already set is an operator reassignment and
    needs ``reassign=True``.
    """
    parsed = parse_department(department)
    if parsed is None:
        return Result.failure(f"Unknown department: {department}", code=INVALID_REQUEST)

    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        return Result.failure(f"Conversation not found: {conversation_id}", code=NOT_FOUND)

    current = conversation.department_code
    if current and current != parsed.value and not reassign:
        return Result.failure(
            f"Conversation already assigned to {current}",
            code=ALREADY_ASSIGNED,
            value=conversation,
        )

    conversation.department_code = parsed.value
    if stage_id is not None:
        conversation.stage_id = stage_id
    conversation.updated_at = datetime.now(timezone.utc)
    db.flush()

    logger.info(
        "Department assigned",
        extra={
            "context": {
                "conversation_id": str(conversation_id),
                "previous": current,
                "department": parsed.value,
                "reassign": reassign,
            }
        },
    )
    return Result.success(conversation)
