from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from wa_control.config import settings
from wa_control.database import get_db
from wa_control.routers.admin import require_operator_token
from wa_control.schemas.message import (
    OutboundLogRequest,
    OutboundLogResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from wa_control.services.message_router import (
    MessageRouter,
    RelayConfirmation,
    SendRequest,
    build_message_router,
    record_relay_confirmation,
)
from wa_control.services.result import DELIVERY_FAILED, MISSING_CONFIG

router = APIRouter(prefix="/messages", tags=["messages"])

ERROR_STATUS = {
    DELIVERY_FAILED: status.HTTP_502_BAD_GATEWAY,
    MISSING_CONFIG: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_message_router(db: Session = Depends(get_db)) -> MessageRouter:
    return build_message_router(db)


def require_relay_api_key(
    x_api_key: Optional[str] = Header(default=None, alias="X-Api-Key"),
    authorization: Optional[str] = Header(default=None),
) -> None:
    expected = settings.relay_api_key
    provided = x_api_key
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]
    if not expected or provided != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/send", response_model=SendMessageResponse, dependencies=[Depends(require_operator_token)])
async def send_message(request: SendMessageRequest, message_router: MessageRouter = Depends(get_message_router)):
    """Send an outbound message through the department's delivery channel."""
    result = await message_router.send(SendRequest(**request.model_dump()))

    if result.ok:
        receipt = result.value
        return SendMessageResponse(
            success=True,
            message_id=receipt.message_id,
            wa_message_id=receipt.wa_message_id,
            channel=receipt.channel.value,
            delivery_status=receipt.delivery_status,
        )

    receipt = result.value
    body = SendMessageResponse(
        success=False,
        message_id=receipt.message_id if receipt else None,
        channel=receipt.channel.value if receipt else None,
        delivery_status=receipt.delivery_status if receipt else None,
        error=result.error,
        error_code=result.error_code,
    )
    return JSONResponse(
        status_code=ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
        content=body.model_dump(mode="json"),
    )


@router.post("/outbound-log", response_model=OutboundLogResponse, dependencies=[Depends(require_relay_api_key)])
def log_outbound_message(request: OutboundLogRequest, db: Session = Depends(get_db)):
    """Relay confirmation of a message it delivered on our behalf."""
    result = record_relay_confirmation(db, RelayConfirmation(**request.model_dump()))
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.error)

    message, duplicate = result.value
    return OutboundLogResponse(success=True, message_id=message.id, duplicate=duplicate)
