"""
Conversation analytics.

One row per exchange with the dialog SaaS. Write-only: nothing in the bot
reads these rows back, so a failed insert is logged and dropped.
"""

import logging

from ideabot.supabase_client import get_supabase_admin

logger = logging.getLogger(__name__)


def log_turn(
    tg_user_id: int,
    session_id: str,
    turn: int,
    user_text: str,
    bot_text: str,
    ready_to_publish: bool = False,
    supabase=None,
) -> None:
    """Log one dialog turn to the conversations table. Fire-and-forget, never raises."""
    try:
        supabase = supabase if supabase is not None else get_supabase_admin()
        supabase.table("conversations").insert({
            "tg_user_id": tg_user_id,
            "session_id": session_id,
            "turn": turn,
            "user_text": user_text,
            "bot_text": bot_text,
            "ready_to_publish": ready_to_publish,
        }).execute()
    except Exception as e:
        logger.warning(f"Failed to log conversation turn: {e}")


def make_session_id(tg_user_id: int, started_at: float, prefix: str = "tg") -> str:
    return f"{prefix}-{tg_user_id}-{int(started_at)}"
