from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from wa_control.database import dialect_insert
from wa_control.logging_config import get_logger
from wa_control.models import ConversationState, OwnershipEvent
from wa_control.services.state_machine import HandoverPhase, can_transition, phase_of

logger = get_logger("state_service")

EVENT_CLAIM = "claim"
EVENT_RELEASE = "release"
EVENT_TIMEOUT_RELEASE = "timeout_release"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stores without timezone support hand back naive UTC datetimes."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now else datetime.now(timezone.utc)


def _load(db: Session, phone: str) -> Optional[ConversationState]:
    return (
        db.query(ConversationState)
        .populate_existing()
        .filter(ConversationState.phone_number == phone)
        .first()
    )


def default_state(phone: str) -> ConversationState:
    """Transient AI-owned state for phones that never had a row."""
    return ConversationState(
        phone_number=phone,
        is_ai_active=True,
        operator_id=None,
        operator_takeover_at=None,
        ai_started_at=None,
        last_human_message_at=None,
        last_ai_message_at=None,
    )


def get_state(db: Session, phone: str) -> ConversationState:
    return _load(db, phone) or default_state(phone)


def _upsert(db: Session, phone: str, now: datetime, insert_values: dict[str, Any], update_values: dict[str, Any]) -> ConversationState:
    values = {
        "id": uuid4(),
        "phone_number": phone,
        "is_ai_active": True,
        "created_at": now,
        "updated_at": now,
        **insert_values,
    }
    stmt = dialect_insert(db, ConversationState).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["phone_number"],
        set_={**update_values, "updated_at": now},
    )
    db.execute(stmt)
    return _load(db, phone)


def _append_event(
    db: Session,
    phone: str,
    event_type: str,
    now: datetime,
    operator_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    db.add(
        OwnershipEvent(
            phone_number=phone,
            event_type=event_type,
            operator_id=operator_id,
            occurred_at=now,
            details=details or {},
        )
    )
    db.flush()


def claim_by_operator(db: Session, phone: str, operator_id: str, *, now: Optional[datetime] = None) -> ConversationState:
    """Hand the conversation to a human operator. Repeated claims refresh the takeover timestamp."""
    now = _now(now)
    ownership = {"is_ai_active": False, "operator_id": operator_id, "operator_takeover_at": now}
    state = _upsert(db, phone, now, ownership, ownership)
    _append_event(db, phone, EVENT_CLAIM, now, operator_id=operator_id)
    logger.info(
        "Operator claimed conversation",
        extra={"context": {"phone": phone, "operator_id": operator_id}},
    )
    return state


def release_to_ai(
    db: Session,
    phone: str,
    *,
    reason: str = "manual",
    released_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConversationState:
    """Return ownership to the AI agent. Releasing an AI-owned conversation is a no-op."""
    now = _now(now)
    current = _load(db, phone)
    if current is None or not can_transition(phase_of(current.is_ai_active, False), HandoverPhase.AI_OWNED):
        return current or default_state(phone)

    previous_operator = current.operator_id
    takeover_at = ensure_utc(current.operator_takeover_at)
    ownership = {"is_ai_active": True, "operator_id": None, "operator_takeover_at": None, "ai_started_at": now}
    state = _upsert(db, phone, now, ownership, ownership)

    event_type = EVENT_TIMEOUT_RELEASE if reason == "timeout" else EVENT_RELEASE
    _append_event(
        db,
        phone,
        event_type,
        now,
        operator_id=previous_operator,
        details={
            "reason": reason,
            "released_by": released_by,
            "takeover_at": takeover_at.isoformat() if takeover_at else None,
        },
    )
    logger.info(
        "Conversation released to AI",
        extra={"context": {"phone": phone, "reason": reason, "previous_operator": previous_operator}},
    )
    return state


def record_ai_send(db: Session, phone: str, *, now: Optional[datetime] = None) -> ConversationState:
    now = _now(now)
    return _upsert(db, phone, now, {"last_ai_message_at": now}, {"last_ai_message_at": now})


def record_human_send(db: Session, phone: str, *, now: Optional[datetime] = None) -> ConversationState:
    now = _now(now)
    return _upsert(db, phone, now, {"last_human_message_at": now}, {"last_human_message_at": now})


def list_ownership_events(db: Session, phone: str, *, limit: int = 100) -> list[OwnershipEvent]:
    return (
        db.query(OwnershipEvent)
        .filter(OwnershipEvent.phone_number == phone)
        .order_by(OwnershipEvent.occurred_at.desc())
        .limit(limit)
        .all()
    )


def check_invariants(state: ConversationState) -> list[str]:
    """Ownership invariant violations for one state row."""
    violations = []

    if state.is_ai_active and state.operator_takeover_at is not None:
        violations.append("ai_active_with_takeover")

    if not state.is_ai_active and state.operator_takeover_at is None:
        violations.append("operator_owned_without_takeover")

    if not state.is_ai_active and not state.operator_id:
        violations.append("operator_owned_without_operator")

    return violations
