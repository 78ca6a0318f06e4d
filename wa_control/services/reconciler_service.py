"""Release conversations whose operator never answered after taking over.

A claim leaves the conversation waiting for the operator's first reply. If no
outbound message reaches the customer within the timeout, the conversation is
handed back to the AI agent so the customer is not left in a dead zone.
Customer messages never extend the timeout.

A database error on one row is rolled back, reported under `failed` and the
sweep moves on to the next candidate.

The operator-reply check runs at read time; a reply racing the sweep can be
missed and the conversation released anyway.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wa_control.config import settings
from wa_control.logging_config import ContextLogger, get_logger
from wa_control.models import ConversationState
from wa_control.services.alert_service import alert_warning
from wa_control.services import message_ledger, state_service
from wa_control.services.state_machine import HandoverPhase, phase_of
from wa_control.services.state_service import ensure_utc

logger = get_logger("reconciler")

SKIP_OPERATOR_RESPONDED = "operator_responded"


def find_stale_handovers(db: Session, cutoff: datetime) -> list[ConversationState]:
    return (
        db.query(ConversationState)
        .filter(
            ConversationState.is_ai_active.is_(False),
            ConversationState.operator_takeover_at.isnot(None),
            ConversationState.operator_takeover_at < cutoff,
        )
        .order_by(ConversationState.operator_takeover_at)
        .all()
    )


def release_stale_handovers(
    db: Session,
    timeout_minutes: Optional[int] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """One sweep. ``dry_run`` reports would-be releases without writing anything."""
    timeout_minutes = timeout_minutes or settings.handover_timeout_minutes
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=timeout_minutes)

    candidates = [
        (state.phone_number, ensure_utc(state.operator_takeover_at), state.operator_id)
        for state in find_stale_handovers(db, cutoff)
    ]
    logger.info(
        "Stale handover sweep started",
        extra={"context": {"timeout_minutes": timeout_minutes, "dry_run": dry_run, "candidates": len(candidates)}},
    )

    released: list[dict[str, Any]] = []
    skipped: list[dict[str, Any]] = []
    failed: list[dict[str, Any]] = []

    for phone, takeover_at, operator_id in candidates:
        log = ContextLogger(logger, {"phone": phone, "operator_id": operator_id})
        try:
            operator_replied = message_ledger.has_outbound_since(db, phone, takeover_at)
            if phase_of(False, operator_replied) == HandoverPhase.OPERATOR_ACTIVE:
                log.info("Operator responded, keeping ownership")
                skipped.append(
                    {"phone": phone, "reason": SKIP_OPERATOR_RESPONDED, "takeover_at": takeover_at.isoformat()}
                )
                continue

            had_customer_messages = message_ledger.has_inbound_since(db, phone, takeover_at)
            minutes_waiting = int((now - takeover_at).total_seconds() // 60)

            if not dry_run:
                state_service.release_to_ai(db, phone, reason="timeout", now=now)
                db.commit()
                log.info("Released to AI after timeout", context={"minutes_waiting": minutes_waiting})
        except SQLAlchemyError as exc:
            db.rollback()
            log.error("Stale handover check failed", context={"error": str(exc)})
            failed.append({"phone": phone, "takeover_at": takeover_at.isoformat(), "error": str(exc)})
            continue

        released.append(
            {
                "phone": phone,
                "takeover_at": takeover_at.isoformat(),
                "operator_id": operator_id,
                "minutes_waiting": minutes_waiting,
                "had_customer_messages": had_customer_messages,
            }
        )

    summary = {
        "success": not failed,
        "dry_run": dry_run,
        "timeout_minutes": timeout_minutes,
        "cutoff_time": cutoff.isoformat(),
        "total_checked": len(candidates),
        "released": len(released),
        "skipped": len(skipped),
        "failed": len(failed),
        "released_conversations": released,
        "skipped_conversations": skipped,
        "failed_conversations": failed,
    }
    logger.info(
        "Stale handover sweep finished",
        extra={"context": {k: summary[k] for k in ("dry_run", "total_checked", "released", "skipped", "failed")}},
    )
    if failed:
        alert_warning(
            "Stale handover sweep skipped rows after database errors",
            {"failed": len(failed), "phones": ", ".join(row["phone"] for row in failed)},
        )
    return summary
