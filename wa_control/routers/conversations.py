from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from wa_control.config import settings
from wa_control.database import get_db
from wa_control.models import ConversationState
from wa_control.routers.admin import require_admin_token, require_operator_token
from wa_control.schemas.department import AssignDepartmentRequest, AssignDepartmentResponse
from wa_control.schemas.handover import (
    ClaimRequest,
    ConversationStateResponse,
    OwnershipEventItem,
    ReleaseRequest,
)
from wa_control.services import state_service
from wa_control.services.department_service import assign_department
from wa_control.services.phone import normalize_phone
from wa_control.services.result import ALREADY_ASSIGNED, NOT_FOUND
from wa_control.services.routing import build_channel_map, select_channel
from wa_control.services.state_machine import owner_of

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _phone_or_400(phone: str) -> str:
    normalized = normalize_phone(phone)
    if not normalized:
        raise HTTPException(status_code=400, detail=f"Invalid phone number: {phone}")
    return normalized


def _state_response(state: ConversationState) -> ConversationStateResponse:
    return ConversationStateResponse(
        phone_number=state.phone_number,
        is_ai_active=state.is_ai_active,
        owner=owner_of(state.is_ai_active).value,
        operator_id=state.operator_id,
        operator_takeover_at=state_service.ensure_utc(state.operator_takeover_at),
        ai_started_at=state_service.ensure_utc(state.ai_started_at),
        last_human_message_at=state_service.ensure_utc(state.last_human_message_at),
        last_ai_message_at=state_service.ensure_utc(state.last_ai_message_at),
    )


@router.get("/{phone}/state", response_model=ConversationStateResponse, dependencies=[Depends(require_operator_token)])
def get_conversation_state(phone: str, db: Session = Depends(get_db)):
    return _state_response(state_service.get_state(db, _phone_or_400(phone)))


@router.post("/{phone}/claim", response_model=ConversationStateResponse, dependencies=[Depends(require_operator_token)])
def claim_conversation(phone: str, request: ClaimRequest, db: Session = Depends(get_db)):
    """Operator takes over; the AI stops answering this phone."""
    state = state_service.claim_by_operator(db, _phone_or_400(phone), request.operator_id)
    db.commit()
    return _state_response(state)


@router.post("/{phone}/release", response_model=ConversationStateResponse, dependencies=[Depends(require_operator_token)])
def release_conversation(phone: str, request: ReleaseRequest = ReleaseRequest(), db: Session = Depends(get_db)):
    state = state_service.release_to_ai(db, _phone_or_400(phone), reason="manual", released_by=request.released_by)
    db.commit()
    return _state_response(state)


@router.get(
    "/{phone}/ownership-events",
    response_model=list[OwnershipEventItem],
    dependencies=[Depends(require_operator_token)],
)
def ownership_events(phone: str, limit: int = 100, db: Session = Depends(get_db)):
    return state_service.list_ownership_events(db, _phone_or_400(phone), limit=limit)


@router.post(
    "/{conversation_id}/department",
    response_model=AssignDepartmentResponse,
    dependencies=[Depends(require_admin_token)],
)
def set_department(conversation_id: UUID, request: AssignDepartmentRequest, db: Session = Depends(get_db)):
    """Triage assignment, or operator reassignment with ``reassign=true``."""
    result = assign_department(
        db,
        conversation_id,
        request.department,
        reassign=request.reassign,
        stage_id=request.stage_id,
    )
    if not result.ok:
        status_code = {NOT_FOUND: 404, ALREADY_ASSIGNED: 409}.get(result.error_code, 400)
        raise HTTPException(status_code=status_code, detail=result.error)

    db.commit()
    department = result.value.department_code
    channel = select_channel(department, build_channel_map(settings.relay_department_codes))
    return AssignDepartmentResponse(
        success=True,
        conversation_id=conversation_id,
        department=department,
        channel=channel.value,
    )
