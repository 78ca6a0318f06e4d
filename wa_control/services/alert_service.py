"""Operational alerts to a Telegram chat."""

import os
from typing import Optional

import httpx

from wa_control.logging_config import get_logger

logger = get_logger("alert_service")

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
LEVEL_MARKERS = {"INFO": "[i]", "WARNING": "[!]", "ERROR": "[x]", "CRITICAL": "[!!!]"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_MARKERS.get(level, '[*]')} *{level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send an alert to the configured chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict (phone, error, channel, ...)

    Returns:
        True if Telegram accepted the alert
    """
    bot_token = os.environ.get("ALERT_BOT_TOKEN")
    chat_id = os.environ.get("ALERT_CHAT_ID")
    if not bot_token or not chat_id:
        logger.warning("Alert not configured", extra={"context": {"level": level, "alert": message, **(context or {})}})
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                TELEGRAM_API_URL.format(token=bot_token),
                json={"chat_id": chat_id, "text": format_alert(level, message, context), "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("CRITICAL", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)
