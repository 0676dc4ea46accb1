"""Ops alerts for session trouble, posted to a Telegram chat."""

import time
from typing import Optional

import httpx

from flowdesk.config import settings
from flowdesk.logging_config import get_logger

logger = get_logger("alert_service")

LEVEL_MARKERS = {"WARNING": "⚠️", "ERROR": "❌"}

# (level, message, tenant_id) -> monotonic time of the last post
_last_sent: dict[tuple, float] = {}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_MARKERS.get(level, '📢')} *{level}* flowdesk\n\n{message}"
    if context:
        lines = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{lines}\n```"
    return text


def _throttled(key: tuple) -> bool:
    now = time.monotonic()
    last = _last_sent.get(key)
    if last is not None and now - last < settings.alert_cooldown_seconds:
        return True
    _last_sent[key] = now
    return False


def reset_throttle() -> None:
    _last_sent.clear()


async def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Post an alert to the ops chat.

    The same alert for the same tenant is posted at most once per
    `alert_cooldown_seconds`. Returns True only when Telegram accepted it.
    """
    context = context or {}
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context})
        return False

    if _throttled((level, message, context.get("tenant_id"))):
        logger.info(f"Alert suppressed: {message}", extra={"context": context})
        return False

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                f"https://api.telegram.org/bot{settings.alert_bot_token}/sendMessage",
                json={
                    "chat_id": settings.alert_chat_id,
                    "text": format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}", extra={"context": context})
        return False

    if response.status_code != 200:
        logger.error(f"Telegram rejected alert: {response.status_code}", extra={"context": context})
        return False
    return True


async def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("ERROR", message, context)


async def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("WARNING", message, context)
