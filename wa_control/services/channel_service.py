"""Delivery channel clients: the business-automation relay and the WhatsApp Cloud API."""

from typing import Any, Optional

import httpx

from wa_control.config import settings
from wa_control.logging_config import get_logger

logger = get_logger("channel_service")

MEDIA_KINDS = ("image", "video", "audio", "document")


class ChannelError(Exception):
    """Channel call failed, timed out or was rejected."""

    def __init__(self, channel: str, message: str, status_code: Optional[int] = None):
        self.channel = channel
        self.status_code = status_code
        super().__init__(f"{channel}: {message}")


def resolve_media_kind(mime_type: Optional[str]) -> str:
    """Cloud API media kind for a MIME type. Anything unrecognised goes out as a document."""
    mime = (mime_type or "").strip().lower()
    for prefix in ("image", "video", "audio"):
        if mime.startswith(f"{prefix}/"):
            return prefix
    return "document"


class RelayService:
    """POSTs outbound messages to the business-automation webhook that owns relayed departments."""

    name = "relay"

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.transport = transport

    async def send(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.webhook_url, json=payload)
        except httpx.TimeoutException as exc:
            raise ChannelError(self.name, f"timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise ChannelError(self.name, str(exc)) from exc

        logger.info(
            "Relay response",
            extra={"context": {"status": response.status_code, "phone": payload.get("phone"), "body": response.text[:200]}},
        )
        if response.status_code >= 400:
            raise ChannelError(self.name, f"HTTP {response.status_code}: {response.text[:200]}", response.status_code)

        try:
            return response.json()
        except ValueError:
            # The relay acknowledges with plain text as often as with JSON.
            return {"response": response.text}


class CloudApiService:
    """Direct sends through the WhatsApp Cloud API. Returns the provider message id."""

    name = "direct"

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v18.0",
        base_url: str = "https://graph.facebook.com",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.timeout = timeout
        self.transport = transport
        self.messages_url = f"{base_url.rstrip('/')}/{api_version}/{phone_number_id}/messages"

    async def _post(self, body: dict[str, Any]) -> str:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.messages_url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ChannelError(self.name, f"timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise ChannelError(self.name, str(exc)) from exc

        if response.status_code >= 400:
            logger.warning(
                "Cloud API rejected message",
                extra={"context": {"status": response.status_code, "to": body.get("to"), "body": response.text[:500]}},
            )
            raise ChannelError(self.name, f"HTTP {response.status_code}: {response.text[:200]}", response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise ChannelError(self.name, "response is not JSON") from exc

        messages = data.get("messages") or []
        wa_message_id = messages[0].get("id") if messages else None
        if not wa_message_id:
            raise ChannelError(self.name, "response carries no message id")
        return wa_message_id

    async def send_text(self, to: str, text: str) -> str:
        return await self._post(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": to,
                "type": "text",
                "text": {"body": text},
            }
        )

    async def send_media(
        self,
        to: str,
        media_url: str,
        *,
        mime_type: Optional[str] = None,
        caption: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> str:
        kind = resolve_media_kind(mime_type)
        media: dict[str, Any] = {"link": media_url}
        if caption and kind in ("image", "video"):
            media["caption"] = caption
        if filename and kind == "document":
            media["filename"] = filename
        return await self._post(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": to,
                "type": kind,
                kind: media,
            }
        )


def build_relay_service() -> Optional[RelayService]:
    if not settings.relay_webhook_url:
        return None
    return RelayService(settings.relay_webhook_url, timeout=settings.relay_timeout_seconds)


def build_cloud_api_service() -> Optional[CloudApiService]:
    if not settings.whatsapp_access_token or not settings.whatsapp_phone_number_id:
        return None
    return CloudApiService(
        settings.whatsapp_access_token,
        settings.whatsapp_phone_number_id,
        api_version=settings.whatsapp_api_version,
        base_url=settings.whatsapp_api_base_url,
        timeout=settings.whatsapp_timeout_seconds,
    )
