"""
Pinned "top ideas" post in the channel.

Lists the highest-tallied published requests with links to their posts.
The pinned message id is kept in system_messages (type='top_ideas') so the
same post is edited on each refresh; if editing fails (deleted, too old) a
new post is sent and pinned.
"""

from __future__ import annotations

import html
import logging
from datetime import datetime, timezone
from typing import Optional

from ideabot.config import Settings, get_settings
from ideabot.supabase_client import get_supabase_admin
from ideabot.telegram_bot import telegram_api
from ideabot.telegram_bot.telegram_api import TelegramAPIError

logger = logging.getLogger(__name__)

TOP_IDEAS_TYPE = "top_ideas"
MEDALS = ["🥇", "🥈", "🥉"]


def message_link(chat_id: Optional[str], message_id: Optional[int], public_username: str = "") -> Optional[str]:
    """t.me link to a channel post, or None if it cannot be built."""
    if not message_id:
        return None
    if public_username:
        return f"https://t.me/{public_username.lstrip('@')}/{message_id}"
    chat = str(chat_id or "")
    if chat.startswith("-100"):
        return f"https://t.me/c/{chat[4:]}/{message_id}"
    if chat.startswith("@"):
        return f"https://t.me/{chat[1:]}/{message_id}"
    return None


def format_top_ideas(rows: list[dict], public_username: str = "", now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    lines = ["🏆 <b>ТОП ИДЕЙ ПО ГОЛОСАМ</b>", ""]

    for index, row in enumerate(rows):
        medal = MEDALS[index] if index < len(MEDALS) else f"{index + 1}."
        votes = row.get("vote_count") or 0
        title = html.escape((row.get("title") or row.get("description") or "Без описания")[:80])
        star = " ⭐" if row.get("has_priority") else ""

        lines.append(f"{medal} <b>{votes} голосов</b>{star}")
        lines.append(f"   {title}")
        link = message_link(row.get("channel_chat_id"), row.get("channel_message_id"), public_username)
        if link:
            lines.append(f"   <a href=\"{link}\">Перейти →</a>")
        lines.append("")

    lines.append(f"<i>Обновлено: {now.strftime('%d.%m.%Y %H:%M')} UTC</i>")
    return "\n".join(lines)


async def refresh_top_ideas(supabase=None, settings: Optional[Settings] = None) -> Optional[int]:
    """
    Create or update the pinned top ideas post.

    Returns the pinned message id, or None if there is nothing to show.
    """
    supabase = supabase if supabase is not None else get_supabase_admin()
    settings = settings or get_settings()

    result = supabase.table("requests").select(
        "id, title, description, vote_count, has_priority, channel_chat_id, channel_message_id"
    ).eq("status", "published").order("vote_count", desc=True).limit(settings.top_ideas_limit).execute()

    rows = result.data or []
    if not rows:
        logger.info("Top ideas: no published requests yet")
        return None

    text = format_top_ideas(rows, settings.channel_public_username)
    channel_id = settings.telegram_channel_id

    pinned = supabase.table("system_messages").select("message_id").eq(
        "type", TOP_IDEAS_TYPE
    ).limit(1).execute()

    if pinned.data:
        message_id = pinned.data[0]["message_id"]
        try:
            await telegram_api.edit_message_text(channel_id, message_id, text, parse_mode="HTML")
            logger.info(f"Top ideas post {message_id} updated")
            return message_id
        except TelegramAPIError as e:
            if e.not_modified:
                return message_id
            logger.warning(f"Top ideas: cannot edit {message_id} ({e.description}), posting a new one")

    message = await telegram_api.send_message(channel_id, text, parse_mode="HTML")
    message_id = message["message_id"]
    await telegram_api.pin_chat_message(channel_id, message_id)

    supabase.table("system_messages").upsert({
        "type": TOP_IDEAS_TYPE,
        "message_id": message_id,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }, on_conflict="type").execute()

    logger.info(f"Top ideas post {message_id} created and pinned")
    return message_id
