"""Cloud API webhook processing: inbound messages and delivery statuses."""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from wa_control.config import settings
from wa_control.logging_config import get_logger
from wa_control.schemas.webhook import (
    CloudMessage,
    CloudStatus,
    CloudWebhookPayload,
    InboundMessageResult,
    WebhookResponse,
)
from wa_control.services import message_ledger, state_service
from wa_control.services.conversation_service import find_or_create_conversation, touch_last_message
from wa_control.services.department_service import DepartmentResolver, assign_department
from wa_control.services.phone import normalize_phone
from wa_control.services.routing import Department, parse_department
from wa_control.services.state_machine import Owner, owner_of

logger = get_logger("inbound_service")

MEDIA_TYPES = ("image", "audio", "voice", "video", "document", "sticker")

TRIAGE_BUTTON_IDS = {
    "btn_leasing": Department.LEASING,
    "btn_sales": Department.SALES,
    "btn_admin": Department.ADMINISTRATIVE,
}


def verify_subscription(mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
    """Challenge to echo back when the provider's handshake matches the verify token."""
    expected = settings.whatsapp_verify_token
    if mode == "subscribe" and expected and token and hmac.compare_digest(token, expected):
        return challenge or ""
    return None


def verify_signature(body: bytes, signature_header: Optional[str], app_secret: Optional[str] = None) -> bool:
    """Check ``X-Hub-Signature-256``. Without a configured app secret every payload passes."""
    secret = app_secret if app_secret is not None else settings.whatsapp_app_secret
    if not secret:
        return True
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header.split("=", 1)[1])


class SeenSet:
    """Redis fast path in front of the ledger's dedup. The ledger stays authoritative."""

    KEY_PREFIX = "wa_control:inbound:"

    def __init__(self, client: redis.Redis, ttl_seconds: int = 86400):
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def is_seen(self, wa_message_id: str) -> bool:
        try:
            return bool(await self.client.exists(self.KEY_PREFIX + wa_message_id))
        except RedisError as exc:
            logger.warning("Seen-set lookup failed", extra={"context": {"error": str(exc)}})
            return False

    async def mark(self, wa_message_id: str) -> None:
        try:
            await self.client.set(self.KEY_PREFIX + wa_message_id, "1", ex=self.ttl_seconds)
        except RedisError as exc:
            logger.warning("Seen-set write failed", extra={"context": {"error": str(exc)}})


def build_seen_set() -> Optional[SeenSet]:
    if not settings.redis_url:
        return None
    client = redis.from_url(settings.redis_url, decode_responses=True)
    return SeenSet(client, ttl_seconds=settings.inbound_dedup_ttl_seconds)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def extract_content(message: CloudMessage) -> dict[str, Any]:
    """Body and media fields for the ledger row of one inbound message."""
    body = None
    if message.text and message.text.body:
        body = message.text.body
    elif message.button and message.button.text:
        body = message.button.text
    elif message.interactive and message.interactive.button_reply:
        body = message.interactive.button_reply.title

    content: dict[str, Any] = {"body": body}
    if message.type in MEDIA_TYPES:
        media = getattr(message, message.type, None)
        if media is not None:
            content.update(
                media_type=message.type,
                media_mime_type=media.mime_type,
                media_caption=media.caption if message.type in ("image", "video", "document") else None,
                media_filename=media.filename if message.type == "document" else None,
                media_id=media.id,
            )
            content["body"] = body or media.caption or message.type
    elif message.type == "location" and message.location:
        location = message.location
        content.update(
            media_type="location",
            media_caption="\n".join(part for part in (location.name, location.address) if part) or None,
        )
        content["body"] = body or content["media_caption"] or "location"
    return content


def triage_choice(message: CloudMessage) -> Optional[Department]:
    """Department picked through a triage button, if this message is such a reply."""
    reply = message.interactive.button_reply if message.interactive else None
    if reply and reply.id in TRIAGE_BUTTON_IDS:
        return TRIAGE_BUTTON_IDS[reply.id]
    if message.button and message.button.payload:
        return parse_department(message.button.payload)
    return None


async def dispatch_to_ai(payload: dict[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None) -> bool:
    """Forward an AI-owned inbound message to the agent. Failures are logged, never raised."""
    url = settings.ai_agent_webhook_url
    if not url:
        return False
    try:
        async with httpx.AsyncClient(timeout=settings.ai_agent_timeout_seconds, transport=transport) as client:
            response = await client.post(url, json=payload)
    except httpx.HTTPError as exc:
        logger.error(
            "AI agent dispatch failed",
            extra={"context": {"phone": payload.get("phone"), "error": str(exc)}},
        )
        return False
    if response.status_code >= 400:
        logger.error(
            "AI agent rejected message",
            extra={"context": {"phone": payload.get("phone"), "status": response.status_code, "body": response.text[:200]}},
        )
        return False
    return True


class InboundProcessor:
    def __init__(
        self,
        db: Session,
        seen_set: Optional[SeenSet] = None,
        ai_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.db = db
        self.seen_set = seen_set
        self.ai_transport = ai_transport
        self.resolver = DepartmentResolver(db)

    async def process(self, payload: CloudWebhookPayload) -> WebhookResponse:
        results: list[InboundMessageResult] = []
        statuses_applied = 0
        for entry in payload.entry:
            for change in entry.changes:
                business_number = change.value.metadata.display_phone_number if change.value.metadata else None
                for message in change.value.messages:
                    result = await self.handle_message(message, business_number)
                    if result is not None:
                        results.append(result)
                for status in change.value.statuses:
                    if self.handle_status(status):
                        statuses_applied += 1
        return WebhookResponse(success=True, messages=results, statuses_applied=statuses_applied)

    async def handle_message(self, message: CloudMessage, business_number: Optional[str] = None) -> Optional[InboundMessageResult]:
        phone = normalize_phone(message.from_)
        if not phone:
            logger.warning("Inbound message with unusable sender", extra={"context": {"from": message.from_, "wa_message_id": message.id}})
            return None

        if self.seen_set and await self.seen_set.is_seen(message.id):
            logger.info("Inbound message already seen", extra={"context": {"wa_message_id": message.id}})
            return InboundMessageResult(wa_message_id=message.id, duplicate=True)

        content = extract_content(message)
        media_id = content.pop("media_id", None)
        stored, created = message_ledger.record(
            self.db,
            message_ledger.LedgerEntry(
                direction=message_ledger.INBOUND,
                wa_message_id=message.id,
                wa_from=phone,
                wa_to=normalize_phone(business_number, country_code="") if business_number else None,
                wa_timestamp=parse_timestamp(message.timestamp),
                delivery_status="received",
                raw={"type": message.type, "media_id": media_id, "message": message.model_dump(by_alias=True, exclude_none=True)},
                **content,
            ),
        )

        if not created:
            self.db.commit()
            await self._mark_seen(message.id)
            return InboundMessageResult(
                wa_message_id=message.id,
                message_id=stored.id,
                conversation_id=stored.conversation_id,
                duplicate=True,
            )

        # Only the delivery that won the ledger insert may create the conversation.
        conversation, _ = find_or_create_conversation(self.db, phone)
        stored.conversation_id = conversation.id
        stored.department_code = conversation.department_code
        touch_last_message(self.db, conversation)

        choice = triage_choice(message)
        if choice is not None and not conversation.department_code:
            assign_department(self.db, conversation.id, choice)
            self.resolver.forget(conversation.id)

        department = self.resolver.resolve(conversation_id=conversation.id)
        state = state_service.get_state(self.db, phone)
        owner = owner_of(state.is_ai_active)
        conversation_id = conversation.id
        message_id = stored.id
        body = stored.body
        self.db.commit()
        await self._mark_seen(message.id)

        ai_dispatched = False
        if owner == Owner.AI:
            ai_dispatched = await dispatch_to_ai(
                {
                    "phone": phone,
                    "body": body,
                    "conversation_id": str(conversation_id),
                    "department": department.value if department else None,
                    "wa_message_id": message.id,
                },
                transport=self.ai_transport,
            )
        else:
            logger.info(
                "Operator owns conversation, AI skipped",
                extra={"context": {"phone": phone, "operator_id": state.operator_id}},
            )

        return InboundMessageResult(
            wa_message_id=message.id,
            message_id=message_id,
            conversation_id=conversation_id,
            owner=owner.value,
            ai_dispatched=ai_dispatched,
            department=department.value if department else None,
        )

    def handle_status(self, status: CloudStatus) -> bool:
        updated = message_ledger.update_delivery_status(
            self.db,
            status.id,
            status.status,
            timestamp=parse_timestamp(status.timestamp),
            errors=status.errors,
        )
        self.db.commit()
        if updated is None:
            logger.info("Status for unknown message", extra={"context": {"wa_message_id": status.id, "status": status.status}})
            return False
        return True

    async def _mark_seen(self, wa_message_id: str) -> None:
        if self.seen_set:
            await self.seen_set.mark(wa_message_id)
