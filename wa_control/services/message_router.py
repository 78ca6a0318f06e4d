"""Outbound delivery: department routing, ledger-first writes and channel dispatch."""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from wa_control.config import settings
from wa_control.logging_config import get_logger
from wa_control.models import Conversation
from wa_control.services import message_ledger, state_service
from wa_control.services.alert_service import alert_error
from wa_control.services.channel_service import (
    ChannelError,
    CloudApiService,
    RelayService,
    build_cloud_api_service,
    build_relay_service,
    resolve_media_kind,
)
from wa_control.services.conversation_service import find_active_conversation, get_conversation, touch_last_message
from wa_control.services.department_service import DepartmentResolver
from wa_control.services.phone import normalize_phone
from wa_control.services.result import DELIVERY_FAILED, INVALID_PHONE, INVALID_REQUEST, MISSING_CONFIG, Result
from wa_control.services.routing import Department, DeliveryChannel, build_channel_map, parse_department, select_channel

logger = get_logger("message_router")

SENDER_AI = "ai"
SENDER_OPERATOR = "operator"

STATUS_PENDING = "pending"
STATUS_RELAYED = "relayed"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"


@dataclass
class SendRequest:
    to: str
    text: Optional[str] = None
    media_url: Optional[str] = None
    media_mime_type: Optional[str] = None
    media_caption: Optional[str] = None
    media_filename: Optional[str] = None
    conversation_id: Optional[UUID] = None
    department: Optional[str] = None
    attendant_name: Optional[str] = None
    sender: str = SENDER_OPERATOR
    operator_id: Optional[str] = None


@dataclass
class SendReceipt:
    message_id: UUID
    channel: DeliveryChannel
    delivery_status: str
    wa_message_id: Optional[str] = None


class MessageRouter:
    def __init__(
        self,
        db: Session,
        relay: Optional[RelayService] = None,
        cloud_api: Optional[CloudApiService] = None,
        channel_map: Optional[Mapping[Department, DeliveryChannel]] = None,
        resolver: Optional[DepartmentResolver] = None,
    ):
        self.db = db
        self.relay = relay
        self.cloud_api = cloud_api
        self.channel_map = channel_map
        self.resolver = resolver or DepartmentResolver(db)

    def route(self, department) -> DeliveryChannel:
        return select_channel(department, self.channel_map)

    def _conversation_for(self, request: SendRequest, phone: str) -> Optional[Conversation]:
        if request.conversation_id is not None:
            return get_conversation(self.db, request.conversation_id)
        return find_active_conversation(self.db, phone)

    def _missing_config(self, channel: DeliveryChannel) -> Optional[str]:
        if channel == DeliveryChannel.RELAY and self.relay is None:
            return "RELAY_WEBHOOK_URL not configured"
        if channel == DeliveryChannel.DIRECT and self.cloud_api is None:
            return "WHATSAPP_ACCESS_TOKEN/WHATSAPP_PHONE_NUMBER_ID not configured"
        return None

    async def send(self, request: SendRequest) -> Result[SendReceipt]:
        phone = normalize_phone(request.to)
        if not phone:
            return Result.failure(f"Invalid phone number: {request.to!r}", code=INVALID_PHONE)
        if not (request.text and request.text.strip()) and not request.media_url:
            return Result.failure("Message needs text or media", code=INVALID_REQUEST)

        conversation = self._conversation_for(request, phone)
        department = parse_department(request.department)
        if department is None and conversation is not None:
            department = self.resolver.resolve(conversation_id=conversation.id)

        channel = self.route(department)
        config_error = self._missing_config(channel)
        if config_error:
            logger.error(config_error, extra={"context": {"phone": phone, "channel": channel.value}})
            await asyncio.to_thread(
                alert_error, "Outbound send blocked: missing configuration", {"phone": phone, "error": config_error}
            )
            return Result.failure(config_error, code=MISSING_CONFIG)

        now = datetime.now(timezone.utc)
        body = request.text or request.media_caption
        message, _ = message_ledger.record(
            self.db,
            message_ledger.LedgerEntry(
                direction=message_ledger.OUTBOUND,
                body=body,
                wa_to=phone,
                wa_timestamp=now,
                conversation_id=conversation.id if conversation else None,
                department_code=department.value if department else None,
                media_type=resolve_media_kind(request.media_mime_type) if request.media_url else None,
                media_url=request.media_url,
                media_mime_type=request.media_mime_type,
                media_caption=request.media_caption,
                media_filename=request.media_filename,
                delivery_status=STATUS_PENDING,
                raw={
                    "sender": request.sender,
                    "operator_id": request.operator_id,
                    "attendant": request.attendant_name,
                    "channel": channel.value,
                },
            ),
            now=now,
        )
        self.db.commit()
        message_id = message.id

        try:
            if channel == DeliveryChannel.RELAY:
                await self.relay.send(self._relay_payload(request, phone, department, conversation, message_id, now))
                wa_message_id = None
            else:
                wa_message_id = await self._send_direct(request, phone)
        except ChannelError as exc:
            message_ledger.mark_delivery(self.db, message, STATUS_FAILED, str(exc))
            self.db.commit()
            logger.error(
                "Outbound delivery failed",
                extra={"context": {"phone": phone, "channel": channel.value, "message_id": str(message_id), "error": str(exc)}},
            )
            await asyncio.to_thread(
                alert_error, "WhatsApp send failed", {"phone": phone, "channel": channel.value, "error": str(exc)}
            )
            receipt = SendReceipt(message_id=message_id, channel=channel, delivery_status=STATUS_FAILED)
            return Result.failure(str(exc), code=DELIVERY_FAILED, value=receipt)

        if wa_message_id:
            message = message_ledger.attach_provider_id(self.db, message, wa_message_id)
            status = STATUS_SENT
        else:
            status = STATUS_RELAYED
        # A relay confirmation may already have landed and marked the row sent.
        if message.delivery_status in (None, STATUS_PENDING):
            message_ledger.mark_delivery(self.db, message, status)

        touch_last_message(self.db, conversation, now)
        if request.sender == SENDER_AI:
            state_service.record_ai_send(self.db, phone, now=now)
        else:
            state_service.record_human_send(self.db, phone, now=now)
        self.db.commit()

        logger.info(
            "Outbound message delivered",
            extra={
                "context": {
                    "phone": phone,
                    "channel": channel.value,
                    "message_id": str(message_id),
                    "wa_message_id": wa_message_id,
                    "sender": request.sender,
                }
            },
        )
        return Result.success(
            SendReceipt(message_id=message_id, channel=channel, delivery_status=status, wa_message_id=wa_message_id)
        )

    async def _send_direct(self, request: SendRequest, phone: str) -> str:
        if request.media_url:
            return await self.cloud_api.send_media(
                phone,
                request.media_url,
                mime_type=request.media_mime_type,
                caption=request.media_caption or request.text,
                filename=request.media_filename,
            )
        return await self.cloud_api.send_text(phone, request.text)

    @staticmethod
    def _relay_payload(
        request: SendRequest,
        phone: str,
        department: Optional[Department],
        conversation: Optional[Conversation],
        message_id: UUID,
        now: datetime,
    ) -> dict:
        return {
            "action": "send_message",
            "phone": phone,
            "message": request.text,
            "media_url": request.media_url,
            "media_type": resolve_media_kind(request.media_mime_type) if request.media_url else None,
            "caption": request.media_caption,
            "filename": request.media_filename,
            "attendant": request.attendant_name,
            "department": department.value if department else None,
            "conversation_id": str(conversation.id) if conversation else None,
            "message_id": str(message_id),
            "timestamp": now.isoformat(),
        }


def build_message_router(db: Session) -> MessageRouter:
    return MessageRouter(
        db,
        relay=build_relay_service(),
        cloud_api=build_cloud_api_service(),
        channel_map=build_channel_map(settings.relay_department_codes),
    )


@dataclass
class RelayConfirmation:
    phone_number: str
    message_body: Optional[str] = None
    message_id: Optional[str] = None
    message_type: str = "text"
    conversation_id: Optional[UUID] = None
    template_name: Optional[str] = None
    media_url: Optional[str] = None
    department_code: Optional[str] = None
    local_message_id: Optional[UUID] = None


def record_relay_confirmation(db: Session, confirmation: RelayConfirmation) -> Result[tuple]:
    """Reconcile a relay's delivery confirmation with the ledger.

    Returns ``(message, duplicate)``. When ``local_message_id`` names the row
    written before the relay call, the provider id is attached to that row;
    otherwise the message goes through the ledger's dedup write.
    """
    phone = normalize_phone(confirmation.phone_number)
    if not phone:
        return Result.failure(f"Invalid phone number: {confirmation.phone_number!r}", code=INVALID_PHONE)

    now = datetime.now(timezone.utc)
    if confirmation.local_message_id is not None:
        local = message_ledger.get_message(db, confirmation.local_message_id)
        if local is not None:
            message = message_ledger.attach_provider_id(db, local, confirmation.message_id)
            message_ledger.mark_delivery(db, message, STATUS_SENT)
            conversation = get_conversation(db, message.conversation_id) if message.conversation_id else None
            touch_last_message(db, conversation, now)
            db.commit()
            return Result.success((message, message.id != confirmation.local_message_id))
        logger.warning(
            "Relay confirmation names an unknown ledger row",
            extra={"context": {"local_message_id": str(confirmation.local_message_id), "phone": phone}},
        )

    if confirmation.conversation_id is not None:
        conversation = get_conversation(db, confirmation.conversation_id)
    else:
        conversation = find_active_conversation(db, phone)
    department_code = confirmation.department_code or (conversation.department_code if conversation else None)

    message, created = message_ledger.record(
        db,
        message_ledger.LedgerEntry(
            direction=message_ledger.OUTBOUND,
            body=confirmation.message_body or "",
            wa_message_id=confirmation.message_id,
            wa_to=phone,
            wa_timestamp=now,
            conversation_id=conversation.id if conversation else None,
            department_code=department_code,
            media_url=confirmation.media_url,
            is_template=bool(confirmation.template_name),
            template_name=confirmation.template_name,
            delivery_status=STATUS_SENT,
            raw={"source": "relay_callback", "message_type": confirmation.message_type, "logged_at": now.isoformat()},
        ),
        now=now,
    )
    if created:
        touch_last_message(db, conversation, now)
    db.commit()
    return Result.success((message, not created))
