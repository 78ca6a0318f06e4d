from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from wa_control.database import get_db
from wa_control.logging_config import get_logger
from wa_control.schemas.webhook import CloudWebhookPayload, WebhookResponse
from wa_control.services.inbound_service import (
    InboundProcessor,
    SeenSet,
    build_seen_set,
    verify_signature,
    verify_subscription,
)

logger = get_logger("webhook")

router = APIRouter(tags=["webhook"])

_seen_set: Optional[SeenSet] = None


def get_seen_set() -> Optional[SeenSet]:
    global _seen_set
    if _seen_set is None:
        _seen_set = build_seen_set()
    return _seen_set


@router.get("/webhook/whatsapp", response_class=PlainTextResponse)
def verify_webhook(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    """Provider subscription handshake."""
    answer = verify_subscription(mode, token, challenge)
    if answer is None:
        logger.warning("Webhook verification rejected", extra={"context": {"mode": mode}})
        raise HTTPException(status_code=403, detail="Verification failed")
    return answer


@router.post("/webhook/whatsapp", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(default=None, alias="X-Hub-Signature-256"),
    db: Session = Depends(get_db),
    seen_set: Optional[SeenSet] = Depends(get_seen_set),
):
    """Inbound messages and delivery statuses. The provider delivers at least once."""
    body = await request.body()
    if not verify_signature(body, x_hub_signature_256):
        logger.warning("Webhook signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = CloudWebhookPayload.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Malformed webhook payload", extra={"context": {"errors": e.errors()[:3]}})
        raise HTTPException(status_code=400, detail="Malformed payload")

    return await InboundProcessor(db, seen_set=seen_set).process(payload)
