"""
Telegram Bot API client for channel posts and out-of-handler messages.

Simple wrapper over the HTTP Bot API. Inside update handlers we reply via
python-telegram-bot's context; from services (publisher, top ideas, FastAPI
routes) we call the Bot API directly.
"""

from typing import Optional, Any

import httpx

from ideabot.config import get_settings
from ideabot.errors import UpstreamError, UpstreamTimeout


class TelegramAPIError(UpstreamError):
    """Bot API answered ok=false (or a non-JSON error)."""

    def __init__(self, method: str, description: str, error_code: Optional[int] = None):
        super().__init__(f"{method}: {description}")
        self.method = method
        self.description = description
        self.error_code = error_code

    @property
    def not_modified(self) -> bool:
        return "message is not modified" in self.description.lower()

    @property
    def message_gone(self) -> bool:
        text = self.description.lower()
        return (
            "message to edit not found" in text
            or "message not found" in text
            or "chat not found" in text
            or self.error_code == 403
        )


async def call_api(method: str, payload: dict[str, Any]) -> Any:
    """
    POST a Bot API method and return its "result".

    Raises:
        UpstreamTimeout: no answer within telegram_timeout_seconds
        TelegramAPIError: Telegram rejected the call
        UpstreamError: network failure
    """
    settings = get_settings()

    url = f"https://api.telegram.org/bot{settings.telegram_bot_token}/{method}"

    try:
        async with httpx.AsyncClient(timeout=settings.telegram_timeout_seconds) as client:
            response = await client.post(url, json=payload)
    except httpx.TimeoutException as e:
        raise UpstreamTimeout(f"{method}: timeout") from e
    except httpx.HTTPError as e:
        raise UpstreamError(f"{method}: {e}") from e

    try:
        data = response.json()
    except ValueError:
        raise TelegramAPIError(method, response.text[:200], response.status_code)

    if not data.get("ok"):
        raise TelegramAPIError(
            method,
            data.get("description", "unknown error"),
            data.get("error_code", response.status_code)
        )

    return data.get("result")


async def send_message(
    chat_id: int | str,
    text: str,
    parse_mode: Optional[str] = None,
    reply_markup: Optional[dict] = None,
    disable_web_page_preview: bool = True
) -> dict:
    """
    Send message to a chat or channel.

    Args:
        chat_id: Telegram chat ID (or @channelusername)
        text: Message text
        parse_mode: Optional parse mode (Markdown, HTML)
        reply_markup: Optional {"inline_keyboard": [[...]]}

    Returns:
        The sent Message as a dict (message_id, chat, ...)
    """
    payload = {
        "chat_id": chat_id,
        "text": text,
        "disable_web_page_preview": disable_web_page_preview
    }

    if parse_mode:
        payload["parse_mode"] = parse_mode

    if reply_markup:
        payload["reply_markup"] = reply_markup

    return await call_api("sendMessage", payload)


async def edit_message_reply_markup(
    chat_id: int | str,
    message_id: int,
    reply_markup: dict
) -> None:
    """Replace the inline keyboard of an existing message."""
    await call_api("editMessageReplyMarkup", {
        "chat_id": chat_id,
        "message_id": message_id,
        "reply_markup": reply_markup
    })


async def edit_message_text(
    chat_id: int | str,
    message_id: int,
    text: str,
    parse_mode: Optional[str] = None,
    reply_markup: Optional[dict] = None
) -> None:
    """
    Edit an existing message.

    Args:
        chat_id: Telegram chat ID
        message_id: ID of message to edit
        text: New message text
        parse_mode: Optional parse mode
    """
    payload = {
        "chat_id": chat_id,
        "message_id": message_id,
        "text": text,
        "disable_web_page_preview": True
    }

    if parse_mode:
        payload["parse_mode"] = parse_mode

    if reply_markup:
        payload["reply_markup"] = reply_markup

    await call_api("editMessageText", payload)


async def pin_chat_message(chat_id: int | str, message_id: int) -> None:
    await call_api("pinChatMessage", {
        "chat_id": chat_id,
        "message_id": message_id,
        "disable_notification": True
    })
