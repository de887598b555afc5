"""
Channel publisher.

Publishes feature requests to the Telegram channel with voting and payment
buttons, and keeps the displayed tally in sync with the ledger.

PUBLISH FLOW:
=============
1. Validate title/description/tags (nothing is written on failure)
2. Insert the request row (status=pending)
3. Post the message with tally 0 and the keyboard
4. Bind channel_chat_id/channel_message_id back onto the row (status=published)

If step 4 fails the request exists without a message binding. The renderer
skips unbound requests, so nothing downstream breaks.

RENDERING:
==========
render_and_sync is best-effort: it runs after a ledger mutation has already
been committed, so it logs and never raises.
"""

from __future__ import annotations

import html
import logging
from typing import Optional

from ideabot.config import Settings, get_settings
from ideabot.errors import ContentTooShort, ValidationError
from ideabot.schemas import FeatureRequest, PublishResult, RequestStatus, VoteDirection
from ideabot.supabase_client import get_supabase_admin
from ideabot.telegram_bot.callbacks import pay_action, unvote_action, vote_action
from ideabot.telegram_bot import telegram_api
from ideabot.telegram_bot.telegram_api import TelegramAPIError

logger = logging.getLogger(__name__)


def validate_submission(
    title: str,
    description: str,
    tags: Optional[list] = None,
    settings: Optional[Settings] = None
) -> None:
    """
    Check a submission before anything is persisted.

    Raises:
        ContentTooShort: title or description below the minimum length
        ValidationError: tags is not a list of strings
    """
    settings = settings or get_settings()

    if not isinstance(title, str) or len(title.strip()) < settings.min_title_length:
        raise ContentTooShort(
            f"title must be a string with at least {settings.min_title_length} characters",
            field="title"
        )

    if not isinstance(description, str) or len(description.strip()) < settings.min_description_length:
        raise ContentTooShort(
            f"description must be a string with at least {settings.min_description_length} characters",
            field="description"
        )

    if tags is not None and (not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)):
        raise ValidationError("tags must be an array of strings", field="tags")


def format_request_message(request: FeatureRequest) -> str:
    """HTML text of the channel post."""
    tags_text = ", ".join(html.escape(t) for t in request.tags) if request.tags else "—"
    author_text = f"@{html.escape(request.author_username)}" if request.author_username else "—"
    author_id_text = request.author_tg_id if request.author_tg_id else "—"

    return (
        f"🧩 <b>{html.escape(request.title)}</b>\n\n"
        f"{html.escape(request.description)}\n\n"
        f"Теги: {tags_text}\n"
        f"Автор: {author_text} (id:{author_id_text})\n"
        f"ID: {request.id}"
    )


def build_vote_keyboard(
    request_id: int,
    tally: int,
    has_priority: bool = False,
    settings: Optional[Settings] = None
) -> dict:
    """Inline keyboard with the current tally on the upvote button."""
    settings = settings or get_settings()

    if has_priority:
        priority_text = "⭐ Приоритет получен"
    else:
        priority_text = f"⭐ Клинический приоритет ({settings.priority_price_stars} Stars)"

    return {
        "inline_keyboard": [
            [
                {"text": f"👍 За ({tally})", "callback_data": vote_action(request_id, VoteDirection.UP).encode()},
                {"text": "👎 Против", "callback_data": vote_action(request_id, VoteDirection.DOWN).encode()},
            ],
            [
                {"text": "🗳 Снять голос", "callback_data": unvote_action(request_id).encode()},
            ],
            [
                {"text": priority_text, "callback_data": pay_action(request_id).encode()},
            ],
        ]
    }


class ChannelPublisher:
    """Posts requests to the channel and re-renders their tally."""

    def __init__(self, supabase=None, settings: Optional[Settings] = None):
        self.supabase = supabase if supabase is not None else get_supabase_admin()
        self.settings = settings or get_settings()

    async def publish(
        self,
        author_id: Optional[int],
        title: str,
        description: str,
        tags: Optional[list] = None,
        author_username: Optional[str] = None,
        domain: str = ""
    ) -> PublishResult:
        """
        Create the request and post it to the channel.

        Raises:
            ContentTooShort / ValidationError: before any write
            UpstreamError: channel post failed (request row stays pending)
        """
        tags = tags if tags is not None else []
        validate_submission(title, description, tags, self.settings)

        title = title.strip()
        description = description.strip()

        # 1. Create request row
        insert_result = self.supabase.table("requests").insert({
            "author_tg_id": author_id,
            "author_username": author_username or "Anonymous",
            "title": title,
            "description": description,
            "tags": tags,
            "domain": domain or "",
            "status": RequestStatus.PENDING.value,
            "vote_count": 0,
            "priority_boost": 0,
            "has_priority": False,
        }).execute()

        request = FeatureRequest.model_validate(insert_result.data[0])
        logger.info(f"Created request id={request.id} author={author_id}")

        # 2. Post to channel with initial tally
        message = await telegram_api.send_message(
            self.settings.telegram_channel_id,
            format_request_message(request),
            parse_mode="HTML",
            reply_markup=build_vote_keyboard(request.id, 0, settings=self.settings)
        )

        message_id = message["message_id"]
        chat_id = str(message.get("chat", {}).get("id", self.settings.telegram_channel_id))
        logger.info(f"Published request id={request.id}: message_id={message_id}, chat_id={chat_id}")

        # 3. Bind message to request
        try:
            self.supabase.table("requests").update({
                "channel_chat_id": chat_id,
                "channel_message_id": message_id,
                "status": RequestStatus.PUBLISHED.value,
            }).eq("id", request.id).execute()
        except Exception as e:
            logger.error(f"Failed to bind message {message_id} to request {request.id}: {e}", exc_info=True)

        return PublishResult(
            request_id=request.id,
            channel_message_id=message_id,
            channel_chat_id=chat_id
        )

    async def render_and_sync(self, request_id: int, tally: int) -> bool:
        """
        Re-render the channel post's keyboard with the given tally.

        Returns True if the post shows the tally afterwards, False if it was
        skipped or failed. Never raises.
        """
        try:
            result = self.supabase.table("requests").select(
                "id, has_priority, channel_chat_id, channel_message_id"
            ).eq("id", request_id).limit(1).execute()
        except Exception as e:
            logger.warning(f"Render: failed to load request {request_id}: {e}")
            return False

        if not result.data:
            logger.warning(f"Render: request {request_id} not found")
            return False

        row = result.data[0]
        chat_id = row.get("channel_chat_id")
        message_id = row.get("channel_message_id")

        if not chat_id or not message_id:
            logger.debug(f"Render: request {request_id} has no channel message, skipping")
            return False

        keyboard = build_vote_keyboard(
            request_id, tally, bool(row.get("has_priority")), self.settings
        )

        try:
            await telegram_api.edit_message_reply_markup(chat_id, message_id, keyboard)
        except TelegramAPIError as e:
            if e.not_modified:
                return True
            if e.message_gone:
                logger.warning(f"Render: channel message for request {request_id} is gone: {e.description}")
            else:
                logger.warning(f"Render: Telegram rejected edit for request {request_id}: {e.description}")
            return False
        except Exception as e:
            logger.warning(f"Render: failed to edit message for request {request_id}: {e}")
            return False

        return True


# Singleton instance
_publisher: Optional[ChannelPublisher] = None


def get_publisher() -> ChannelPublisher:
    global _publisher
    if _publisher is None:
        _publisher = ChannelPublisher()
    return _publisher
