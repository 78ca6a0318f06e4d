from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from wa_control.config import settings
from wa_control.logging_config import get_logger
from wa_control.models import ConversationState, Message
from wa_control.services.reconciler_service import find_stale_handovers
from wa_control.services.state_service import check_invariants

logger = get_logger("health_service")


def find_invariant_violations(db: Session) -> list[dict]:
    """Rows breaking the ownership invariant. Reported only; the timeout path is the sole corrector."""
    violations = []
    for state in db.query(ConversationState).all():
        issues = check_invariants(state)
        if issues:
            violations.append({"phone": state.phone_number, "issues": issues})
            logger.warning(f"Ownership invariant violated for {state.phone_number}: {', '.join(issues)}")
    return violations


def get_system_health(db: Session, timeout_minutes: Optional[int] = None) -> dict:
    """Ownership counts, stale handover candidates and invariant violations."""
    now = datetime.now(timezone.utc)
    timeout_minutes = timeout_minutes or settings.handover_timeout_minutes

    ai_owned = db.query(ConversationState).filter(ConversationState.is_ai_active.is_(True)).count()
    operator_owned = db.query(ConversationState).filter(ConversationState.is_ai_active.is_(False)).count()

    stale = find_stale_handovers(db, now - timedelta(minutes=timeout_minutes))

    failed_deliveries = db.query(Message).filter(Message.delivery_status == "failed").count()
    pending_deliveries = db.query(Message).filter(Message.delivery_status == "pending").count()

    return {
        "ownership": {
            "ai_owned": ai_owned,
            "operator_owned": operator_owned,
        },
        "stale_handovers": {
            "timeout_minutes": timeout_minutes,
            "count": len(stale),
            "phones": [state.phone_number for state in stale],
        },
        "deliveries": {
            "failed": failed_deliveries,
            "pending": pending_deliveries,
        },
        "invariant_violations": find_invariant_violations(db),
        "checked_at": now.isoformat(),
    }
