"""Idempotent, append-only persistence of WhatsApp messages.

Provider message ids (``wa_message_id``) are the dedup key. Rows are written
with a conditional insert against the unique constraint, so concurrent
deliveries of the same webhook event collapse into one row without a
read-then-write window. Messages the provider has not acknowledged yet carry a
synthetic ``local_ref`` instead, which never takes part in dedup.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wa_control.database import dialect_insert
from wa_control.logging_config import get_logger
from wa_control.models import Message
from wa_control.services.phone import phone_variations

logger = get_logger("message_ledger")

INBOUND = "inbound"
OUTBOUND = "outbound"


@dataclass
class LedgerEntry:
    direction: str
    body: Optional[str] = None
    wa_message_id: Optional[str] = None
    wa_from: Optional[str] = None
    wa_to: Optional[str] = None
    wa_timestamp: Optional[datetime] = None
    conversation_id: Optional[uuid.UUID] = None
    department_code: Optional[str] = None
    media_type: Optional[str] = None
    media_url: Optional[str] = None
    media_mime_type: Optional[str] = None
    media_caption: Optional[str] = None
    media_filename: Optional[str] = None
    is_template: bool = False
    template_name: Optional[str] = None
    delivery_status: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


def build_local_ref(source: str) -> str:
    return f"{source}_{uuid.uuid4().hex}"


def _clean_provider_id(wa_message_id: Optional[str]) -> Optional[str]:
    if wa_message_id is None:
        return None
    cleaned = wa_message_id.strip()
    return cleaned or None


def record(db: Session, entry: LedgerEntry, *, now: Optional[datetime] = None) -> tuple[Message, bool]:
    """Persist a message; returns (row, created). Duplicates return the stored row unchanged."""
    now = now or datetime.now(timezone.utc)
    wa_message_id = _clean_provider_id(entry.wa_message_id)
    row_id = uuid.uuid4()
    values = {
        "id": row_id,
        "wa_message_id": wa_message_id,
        "local_ref": None if wa_message_id else build_local_ref(entry.direction),
        "wa_from": entry.wa_from,
        "wa_to": entry.wa_to,
        "direction": entry.direction,
        "body": entry.body,
        "wa_timestamp": entry.wa_timestamp or now,
        "conversation_id": entry.conversation_id,
        "department_code": entry.department_code,
        "media_type": entry.media_type,
        "media_url": entry.media_url,
        "media_mime_type": entry.media_mime_type,
        "media_caption": entry.media_caption,
        "media_filename": entry.media_filename,
        "is_template": entry.is_template,
        "template_name": entry.template_name,
        "delivery_status": entry.delivery_status,
        "raw": entry.raw or {},
        "created_at": now,
    }

    stmt = dialect_insert(db, Message).values(**values)
    if wa_message_id:
        stmt = stmt.on_conflict_do_nothing(index_elements=["wa_message_id"])
    db.execute(stmt)

    if wa_message_id:
        stored = find_by_provider_id(db, wa_message_id)
    else:
        stored = db.query(Message).filter(Message.id == row_id).first()

    created = stored is not None and stored.id == row_id
    if stored is not None and not created:
        logger.info(
            "Duplicate provider message absorbed",
            extra={"context": {"wa_message_id": wa_message_id, "existing_id": str(stored.id)}},
        )
    return stored, created


def find_by_provider_id(db: Session, wa_message_id: str) -> Optional[Message]:
    wa_message_id = _clean_provider_id(wa_message_id)
    if not wa_message_id:
        return None
    return db.query(Message).filter(Message.wa_message_id == wa_message_id).first()


def get_message(db: Session, message_id: uuid.UUID) -> Optional[Message]:
    return db.query(Message).filter(Message.id == message_id).first()


def attach_provider_id(db: Session, message: Message, wa_message_id: Optional[str]) -> Message:
    """Attach the provider id to a row recorded before the provider acknowledged it.

    If another row already holds that id (e.g. a relay callback won the race),
    that row stays authoritative and this one keeps its synthetic reference.
    Callers commit their own pending work before attaching: a unique-constraint
    conflict rolls the session back.
    """
    wa_message_id = _clean_provider_id(wa_message_id)
    if not wa_message_id or message.wa_message_id:
        return message

    existing = find_by_provider_id(db, wa_message_id)
    if existing is not None and existing.id != message.id:
        logger.warning(
            "Provider id already recorded on another row",
            extra={"context": {"wa_message_id": wa_message_id, "row_id": str(message.id), "existing_id": str(existing.id)}},
        )
        return existing

    message_id = message.id
    try:
        message.wa_message_id = wa_message_id
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.warning(
            "Provider id attached concurrently by another writer",
            extra={"context": {"wa_message_id": wa_message_id, "row_id": str(message_id)}},
        )
        return find_by_provider_id(db, wa_message_id) or get_message(db, message_id)
    return message


def mark_delivery(db: Session, message: Message, status: str, error: Optional[str] = None) -> None:
    message.delivery_status = status
    if error is not None:
        message.last_error = error[:1000]
    db.flush()


def update_delivery_status(
    db: Session,
    wa_message_id: str,
    status: str,
    *,
    timestamp: Optional[datetime] = None,
    errors: Optional[list[dict[str, Any]]] = None,
) -> Optional[Message]:
    """Apply a provider status callback (sent/delivered/read/failed), merging into raw instead of overwriting it."""
    message = find_by_provider_id(db, wa_message_id)
    if message is None:
        return None

    status_info: dict[str, Any] = {"status": status}
    if timestamp is not None:
        status_info["timestamp"] = timestamp.isoformat()
    if errors:
        status_info["errors"] = errors

    merged = dict(message.raw or {})
    merged["status"] = status_info
    message.raw = merged
    message.delivery_status = status
    if status == "failed" and errors:
        first = errors[0]
        message.last_error = f"{first.get('code')}: {first.get('title') or first.get('message') or 'failed'}"
    db.flush()
    return message


def _phone_filter(column, phone: str):
    return column.in_(phone_variations(phone))


def has_outbound_since(db: Session, phone: str, since: datetime) -> bool:
    """Any outbound message to/from this phone stamped strictly after ``since``."""
    row = (
        db.query(Message.id)
        .filter(
            Message.direction == OUTBOUND,
            or_(_phone_filter(Message.wa_to, phone), _phone_filter(Message.wa_from, phone)),
            Message.wa_timestamp > since,
        )
        .first()
    )
    return row is not None


def has_inbound_since(db: Session, phone: str, since: datetime) -> bool:
    row = (
        db.query(Message.id)
        .filter(
            Message.direction == INBOUND,
            _phone_filter(Message.wa_from, phone),
            Message.wa_timestamp > since,
        )
        .first()
    )
    return row is not None
