import asyncio
import threading
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest

from wa_control.models import Conversation, Message
from wa_control.services import state_service
from wa_control.services.channel_service import ChannelError
from wa_control.services.message_router import (
    MessageRouter,
    RelayConfirmation,
    SendRequest,
    record_relay_confirmation,
)
from wa_control.services.result import DELIVERY_FAILED, INVALID_PHONE, INVALID_REQUEST, MISSING_CONFIG
from wa_control.services.routing import DeliveryChannel

PHONE = "5548999990000"


@pytest.fixture(autouse=True)
def no_alerts():
    with patch("wa_control.services.message_router.alert_error") as mock_alert:
        yield mock_alert


def _conversation(db, department=None):
    now = datetime.now(timezone.utc)
    conversation = Conversation(phone_number=PHONE, department_code=department, status="active", created_at=now)
    db.add(conversation)
    db.commit()
    return conversation


def _router(db, relay=None, cloud_api=None):
    return MessageRouter(db, relay=relay, cloud_api=cloud_api)


def _cloud_api(wa_message_id="wamid.OUT"):
    cloud_api = Mock()
    cloud_api.send_text = AsyncMock(return_value=wa_message_id)
    cloud_api.send_media = AsyncMock(return_value=wa_message_id)
    return cloud_api


def _relay():
    relay = Mock()
    relay.send = AsyncMock(return_value={"response": "Accepted"})
    return relay


class TestRoute:
    def test_route_uses_routing_table(self, db_session):
        router = _router(db_session)
        assert router.route("leasing") == DeliveryChannel.RELAY
        assert router.route(None) == DeliveryChannel.DIRECT


class TestSendDirect:
    def test_direct_send_attaches_provider_id(self, db_session):
        cloud_api = _cloud_api()
        result = asyncio.run(_router(db_session, cloud_api=cloud_api).send(SendRequest(to="48999990000", text="Oi")))

        assert result.ok is True
        assert result.value.channel == DeliveryChannel.DIRECT
        assert result.value.wa_message_id == "wamid.OUT"
        message = db_session.query(Message).one()
        assert message.wa_message_id == "wamid.OUT"
        assert message.delivery_status == "sent"
        assert message.wa_to == PHONE
        cloud_api.send_text.assert_awaited_once_with(PHONE, "Oi")

    def test_operator_send_updates_human_timestamp_only(self, db_session):
        asyncio.run(_router(db_session, cloud_api=_cloud_api()).send(SendRequest(to=PHONE, text="Oi", sender="operator")))

        state = state_service.get_state(db_session, PHONE)
        assert state.last_human_message_at is not None
        assert state.last_ai_message_at is None
        assert state.is_ai_active is True

    def test_ai_send_updates_ai_timestamp(self, db_session):
        asyncio.run(_router(db_session, cloud_api=_cloud_api()).send(SendRequest(to=PHONE, text="Oi", sender="ai")))

        state = state_service.get_state(db_session, PHONE)
        assert state.last_ai_message_at is not None

    def test_media_send(self, db_session):
        cloud_api = _cloud_api()
        result = asyncio.run(
            _router(db_session, cloud_api=cloud_api).send(
                SendRequest(to=PHONE, media_url="https://cdn/p.jpg", media_mime_type="image/jpeg", media_caption="Planta")
            )
        )

        assert result.ok is True
        cloud_api.send_media.assert_awaited_once()
        assert db_session.query(Message).one().media_type == "image"

    def test_conversation_timestamp_updated(self, db_session):
        conversation = _conversation(db_session, department="marketing")
        asyncio.run(_router(db_session, cloud_api=_cloud_api()).send(SendRequest(to=PHONE, text="Oi")))

        db_session.refresh(conversation)
        assert conversation.last_message_at is not None
        assert db_session.query(Message).one().conversation_id == conversation.id


class TestSendRelay:
    def test_leasing_goes_through_relay(self, db_session):
        conversation = _conversation(db_session, department="leasing")
        relay = _relay()

        result = asyncio.run(
            _router(db_session, relay=relay).send(SendRequest(to=PHONE, text="Oi", attendant_name="Ana"))
        )

        assert result.ok is True
        assert result.value.channel == DeliveryChannel.RELAY
        assert result.value.wa_message_id is None
        message = db_session.query(Message).one()
        assert message.delivery_status == "relayed"
        assert message.local_ref is not None

        payload = relay.send.await_args.args[0]
        assert payload["action"] == "send_message"
        assert payload["phone"] == PHONE
        assert payload["department"] == "leasing"
        assert payload["attendant"] == "Ana"
        assert payload["conversation_id"] == str(conversation.id)
        assert payload["message_id"] == str(message.id)

    def test_explicit_department_overrides_conversation(self, db_session):
        _conversation(db_session, department="leasing")
        cloud_api = _cloud_api()

        result = asyncio.run(
            _router(db_session, relay=_relay(), cloud_api=cloud_api).send(
                SendRequest(to=PHONE, text="Oi", department="marketing")
            )
        )

        assert result.value.channel == DeliveryChannel.DIRECT


class TestSendFailures:
    def test_invalid_phone(self, db_session):
        result = asyncio.run(_router(db_session, cloud_api=_cloud_api()).send(SendRequest(to="12", text="Oi")))
        assert result.error_code == INVALID_PHONE

    def test_empty_message(self, db_session):
        result = asyncio.run(_router(db_session, cloud_api=_cloud_api()).send(SendRequest(to=PHONE, text="  ")))
        assert result.error_code == INVALID_REQUEST

    def test_missing_config_reported_before_ledger_write(self, db_session, no_alerts):
        _conversation(db_session, department="leasing")

        result = asyncio.run(_router(db_session, cloud_api=_cloud_api()).send(SendRequest(to=PHONE, text="Oi")))

        assert result.error_code == MISSING_CONFIG
        assert db_session.query(Message).count() == 0
        no_alerts.assert_called_once()

    def test_channel_failure_keeps_failed_row(self, db_session, no_alerts):
        cloud_api = _cloud_api()
        cloud_api.send_text = AsyncMock(side_effect=ChannelError("direct", "timed out after 15.0s"))

        result = asyncio.run(_router(db_session, cloud_api=cloud_api).send(SendRequest(to=PHONE, text="Oi")))

        assert result.ok is False
        assert result.error_code == DELIVERY_FAILED
        message = db_session.query(Message).one()
        assert message.delivery_status == "failed"
        assert "timed out" in message.last_error
        assert result.value.message_id == message.id
        cloud_api.send_text.assert_awaited_once()
        no_alerts.assert_called_once()

    def test_failed_send_does_not_touch_state(self, db_session):
        cloud_api = _cloud_api()
        cloud_api.send_text = AsyncMock(side_effect=ChannelError("direct", "HTTP 500"))

        asyncio.run(_router(db_session, cloud_api=cloud_api).send(SendRequest(to=PHONE, text="Oi", sender="ai")))

        assert state_service.get_state(db_session, PHONE).last_ai_message_at is None

    def test_failure_alert_runs_off_the_event_loop_thread(self, db_session, no_alerts):
        alert_threads = []
        no_alerts.side_effect = lambda *args: alert_threads.append(threading.get_ident())
        cloud_api = _cloud_api()
        cloud_api.send_text = AsyncMock(side_effect=ChannelError("direct", "HTTP 500"))

        asyncio.run(_router(db_session, cloud_api=cloud_api).send(SendRequest(to=PHONE, text="Oi")))

        assert len(alert_threads) == 1
        assert alert_threads[0] != threading.get_ident()


class TestRelayConfirmation:
    def test_attaches_provider_id_to_pre_written_row(self, db_session):
        _conversation(db_session, department="leasing")
        result = asyncio.run(_router(db_session, relay=_relay()).send(SendRequest(to=PHONE, text="Oi")))

        confirmation = record_relay_confirmation(
            db_session,
            RelayConfirmation(phone_number=PHONE, message_body="Oi", message_id="wamid.R1", local_message_id=result.value.message_id),
        )

        message, duplicate = confirmation.value
        assert duplicate is False
        assert message.id == result.value.message_id
        assert message.wa_message_id == "wamid.R1"
        assert message.delivery_status == "sent"
        assert db_session.query(Message).count() == 1

    def test_without_local_id_records_through_dedup(self, db_session):
        first = record_relay_confirmation(db_session, RelayConfirmation(phone_number=PHONE, message_body="a", message_id="wamid.R2"))
        second = record_relay_confirmation(db_session, RelayConfirmation(phone_number=PHONE, message_body="a", message_id="wamid.R2"))

        assert first.value[1] is False
        assert second.value[1] is True
        assert db_session.query(Message).count() == 1

    def test_template_flag(self, db_session):
        result = record_relay_confirmation(
            db_session,
            RelayConfirmation(phone_number=PHONE, message_id="wamid.T", message_type="template", template_name="follow_up"),
        )

        message, _ = result.value
        assert message.is_template is True
        assert message.template_name == "follow_up"

    def test_invalid_phone(self, db_session):
        result = record_relay_confirmation(db_session, RelayConfirmation(phone_number="abc"))
        assert result.error_code == INVALID_PHONE
