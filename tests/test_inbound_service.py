import asyncio
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, Mock, patch

import httpx

from wa_control.models import Conversation, Message
from wa_control.schemas.webhook import CloudMessage, CloudWebhookPayload
from wa_control.services import message_ledger, state_service
from wa_control.services.inbound_service import (
    InboundProcessor,
    extract_content,
    triage_choice,
    verify_signature,
    verify_subscription,
)
from wa_control.services.routing import Department

PHONE = "5548999990000"


def _payload(messages=None, statuses=None):
    return CloudWebhookPayload.model_validate(
        {
            "object": "whatsapp_business_account",
            "entry": [
                {
                    "id": "WABA",
                    "changes": [
                        {
                            "field": "messages",
                            "value": {
                                "messaging_product": "whatsapp",
                                "metadata": {"display_phone_number": "554830000000", "phone_number_id": "PNID"},
                                "messages": messages or [],
                                "statuses": statuses or [],
                            },
                        }
                    ],
                }
            ],
        }
    )


def _text(wa_message_id="wamid.ABC", body="Oi, quero alugar"):
    return {"from": PHONE, "id": wa_message_id, "timestamp": "1741608000", "type": "text", "text": {"body": body}}


class TestInboundDedup:
    def test_same_message_twice_creates_one_row(self, db_session):
        processor = InboundProcessor(db_session)

        first = asyncio.run(processor.process(_payload([_text()])))
        second = asyncio.run(processor.process(_payload([_text()])))

        assert first.messages[0].duplicate is False
        assert second.messages[0].duplicate is True
        assert db_session.query(Message).filter(Message.wa_message_id == "wamid.ABC").count() == 1
        assert db_session.query(Conversation).count() == 1

    def test_seen_set_short_circuits(self, db_session):
        seen_set = Mock()
        seen_set.is_seen = AsyncMock(return_value=True)
        seen_set.mark = AsyncMock()

        result = asyncio.run(InboundProcessor(db_session, seen_set=seen_set).process(_payload([_text()])))

        assert result.messages[0].duplicate is True
        assert db_session.query(Message).count() == 0

    def test_seen_set_marked_after_commit(self, db_session):
        seen_set = Mock()
        seen_set.is_seen = AsyncMock(return_value=False)
        seen_set.mark = AsyncMock()

        asyncio.run(InboundProcessor(db_session, seen_set=seen_set).process(_payload([_text()])))

        seen_set.mark.assert_awaited_once_with("wamid.ABC")

    def test_duplicate_delivery_leaves_no_conversation_behind(self, db_session):
        message_ledger.record(
            db_session,
            message_ledger.LedgerEntry(direction=message_ledger.INBOUND, wa_message_id="wamid.ABC", wa_from=PHONE),
        )
        db_session.commit()

        result = asyncio.run(InboundProcessor(db_session).process(_payload([_text()])))

        assert result.messages[0].duplicate is True
        assert db_session.query(Conversation).count() == 0

    def test_new_row_is_linked_to_its_conversation(self, db_session):
        result = asyncio.run(InboundProcessor(db_session).process(_payload([_text()])))

        stored = db_session.query(Message).one()
        conversation = db_session.query(Conversation).one()
        assert stored.conversation_id == conversation.id
        assert result.messages[0].conversation_id == conversation.id


class TestOwnership:
    @patch("wa_control.services.inbound_service.dispatch_to_ai", new_callable=AsyncMock)
    def test_ai_owned_message_is_dispatched(self, mock_dispatch, db_session):
        mock_dispatch.return_value = True

        result = asyncio.run(InboundProcessor(db_session).process(_payload([_text()])))

        item = result.messages[0]
        assert item.owner == "ai"
        assert item.ai_dispatched is True
        payload = mock_dispatch.await_args.args[0]
        assert payload["phone"] == PHONE
        assert payload["body"] == "Oi, quero alugar"
        assert payload["wa_message_id"] == "wamid.ABC"

    @patch("wa_control.services.inbound_service.dispatch_to_ai", new_callable=AsyncMock)
    def test_operator_owned_message_skips_ai(self, mock_dispatch, db_session):
        state_service.claim_by_operator(db_session, PHONE, "U1")
        db_session.commit()

        result = asyncio.run(InboundProcessor(db_session).process(_payload([_text()])))

        assert result.messages[0].owner == "operator"
        mock_dispatch.assert_not_awaited()

    @patch("wa_control.services.inbound_service.dispatch_to_ai", new_callable=AsyncMock)
    def test_duplicate_is_not_dispatched_again(self, mock_dispatch, db_session):
        processor = InboundProcessor(db_session)
        asyncio.run(processor.process(_payload([_text()])))
        asyncio.run(processor.process(_payload([_text()])))

        assert mock_dispatch.await_count == 1


class TestTriageButtons:
    @patch("wa_control.services.inbound_service.dispatch_to_ai", new_callable=AsyncMock)
    def test_button_reply_assigns_department(self, mock_dispatch, db_session):
        message = {
            "from": PHONE,
            "id": "wamid.BTN",
            "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "btn_leasing", "title": "Alugar"}},
        }

        result = asyncio.run(InboundProcessor(db_session).process(_payload([message])))

        assert result.messages[0].department == "leasing"
        assert db_session.query(Conversation).one().department_code == "leasing"

    def test_triage_choice_from_template_payload(self):
        message = CloudMessage.model_validate(
            {"from": PHONE, "id": "wamid.X", "type": "button", "button": {"text": "Comprar", "payload": "sales"}}
        )
        assert triage_choice(message) == Department.SALES

    def test_plain_text_is_not_a_triage_choice(self):
        assert triage_choice(CloudMessage.model_validate(_text())) is None


class TestExtractContent:
    def test_image_caption_becomes_body(self):
        message = CloudMessage.model_validate(
            {"from": PHONE, "id": "wamid.I", "type": "image", "image": {"id": "m1", "mime_type": "image/jpeg", "caption": "Fachada"}}
        )

        content = extract_content(message)

        assert content["body"] == "Fachada"
        assert content["media_type"] == "image"
        assert content["media_id"] == "m1"

    def test_document_keeps_filename(self):
        message = CloudMessage.model_validate(
            {"from": PHONE, "id": "wamid.D", "type": "document", "document": {"id": "m2", "filename": "rg.pdf"}}
        )

        content = extract_content(message)

        assert content["media_filename"] == "rg.pdf"
        assert content["body"] == "document"

    def test_audio_has_no_caption(self):
        message = CloudMessage.model_validate(
            {"from": PHONE, "id": "wamid.A", "type": "audio", "audio": {"id": "m3", "mime_type": "audio/ogg"}}
        )
        assert extract_content(message)["media_caption"] is None


class TestStatuses:
    def test_status_updates_outbound_row(self, db_session):
        from wa_control.services import message_ledger

        message_ledger.record(
            db_session,
            message_ledger.LedgerEntry(direction=message_ledger.OUTBOUND, wa_message_id="wamid.OUT", wa_to=PHONE),
        )
        db_session.commit()

        result = asyncio.run(
            InboundProcessor(db_session).process(
                _payload(statuses=[{"id": "wamid.OUT", "status": "read", "timestamp": "1741608100", "recipient_id": PHONE}])
            )
        )

        assert result.statuses_applied == 1
        assert db_session.query(Message).one().delivery_status == "read"

    def test_status_for_unknown_message_is_ignored(self, db_session):
        result = asyncio.run(
            InboundProcessor(db_session).process(_payload(statuses=[{"id": "wamid.NOPE", "status": "sent"}]))
        )
        assert result.statuses_applied == 0


class TestVerification:
    @patch("wa_control.services.inbound_service.settings")
    def test_subscription_handshake(self, mock_settings):
        mock_settings.whatsapp_verify_token = "verify-me"

        assert verify_subscription("subscribe", "verify-me", "12345") == "12345"
        assert verify_subscription("subscribe", "wrong", "12345") is None
        assert verify_subscription("unsubscribe", "verify-me", "12345") is None

    def test_signature(self):
        body = json.dumps({"entry": []}).encode()
        digest = hmac.new(b"secret", body, hashlib.sha256).hexdigest()

        assert verify_signature(body, f"sha256={digest}", app_secret="secret") is True
        assert verify_signature(body, "sha256=deadbeef", app_secret="secret") is False
        assert verify_signature(body, None, app_secret="secret") is False

    def test_signature_skipped_without_secret(self):
        assert verify_signature(b"{}", None, app_secret="") is True


class TestDispatchToAi:
    @patch("wa_control.services.inbound_service.settings")
    def test_failures_are_swallowed(self, mock_settings):
        from wa_control.services.inbound_service import dispatch_to_ai

        mock_settings.ai_agent_webhook_url = "https://agent.test/inbound"
        mock_settings.ai_agent_timeout_seconds = 1.0

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert asyncio.run(dispatch_to_ai({"phone": PHONE}, transport=httpx.MockTransport(handler))) is False

    @patch("wa_control.services.inbound_service.settings")
    def test_posts_to_agent(self, mock_settings):
        from wa_control.services.inbound_service import dispatch_to_ai

        mock_settings.ai_agent_webhook_url = "https://agent.test/inbound"
        mock_settings.ai_agent_timeout_seconds = 1.0
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(202)

        assert asyncio.run(dispatch_to_ai({"phone": PHONE}, transport=httpx.MockTransport(handler))) is True
        assert seen["body"] == {"phone": PHONE}
