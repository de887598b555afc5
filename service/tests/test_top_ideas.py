"""
Tests for the pinned top ideas post.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from ideabot.services import top_ideas
from ideabot.services.top_ideas import format_top_ideas, message_link, refresh_top_ideas
from ideabot.telegram_bot.telegram_api import TelegramAPIError

from conftest import seed_request


@pytest.fixture
def telegram(monkeypatch):
    mocks = {
        "send": AsyncMock(return_value={"message_id": 900}),
        "edit": AsyncMock(return_value=True),
        "pin": AsyncMock(return_value=True),
    }
    monkeypatch.setattr(top_ideas.telegram_api, "send_message", mocks["send"])
    monkeypatch.setattr(top_ideas.telegram_api, "edit_message_text", mocks["edit"])
    monkeypatch.setattr(top_ideas.telegram_api, "pin_chat_message", mocks["pin"])
    return mocks


class TestMessageLink:
    """Tests for message_link."""

    def test_public_username(self):
        assert message_link("-1001234567890", 5, "@ideas") == "https://t.me/ideas/5"

    def test_private_channel(self):
        assert message_link("-1001234567890", 5) == "https://t.me/c/1234567890/5"

    def test_channel_handle_as_chat_id(self):
        assert message_link("@ideas", 5) == "https://t.me/ideas/5"

    def test_no_message(self):
        assert message_link("-1001234567890", None) is None


class TestFormatTopIdeas:
    def test_medals_and_links(self):
        rows = [
            {"title": "Dark theme", "vote_count": 12, "has_priority": True,
             "channel_chat_id": "-1001234567890", "channel_message_id": 3},
            {"title": "Export <csv>", "vote_count": 4},
            {"title": "Search", "vote_count": 2},
            {"title": "Tags", "vote_count": 1},
        ]

        text = format_top_ideas(rows, now=datetime(2026, 1, 2, 3, 4, tzinfo=timezone.utc))

        assert "🥇 <b>12 голосов</b> ⭐" in text
        assert "🥈 <b>4 голосов</b>" in text
        assert "4. <b>1 голосов</b>" in text
        assert "Export &lt;csv&gt;" in text
        assert "https://t.me/c/1234567890/3" in text
        assert "02.01.2026 03:04" in text


class TestRefreshTopIdeas:
    """Tests for refresh_top_ideas."""

    async def test_nothing_published(self, db, settings, telegram):
        seed_request(db, status="pending")

        assert await refresh_top_ideas(db, settings) is None
        telegram["send"].assert_not_awaited()

    async def test_first_run_sends_and_pins(self, db, settings, telegram):
        seed_request(db, vote_count=3)

        assert await refresh_top_ideas(db, settings) == 900

        telegram["pin"].assert_awaited_once_with(settings.telegram_channel_id, 900)
        assert db.rows("system_messages", type="top_ideas")[0]["message_id"] == 900

    async def test_edits_existing_post(self, db, settings, telegram):
        seed_request(db, vote_count=3)
        db.insert_row("system_messages", {"type": "top_ideas", "message_id": 77})

        assert await refresh_top_ideas(db, settings) == 77

        telegram["edit"].assert_awaited_once()
        telegram["send"].assert_not_awaited()

    async def test_not_modified_keeps_post(self, db, settings, telegram):
        seed_request(db, vote_count=3)
        db.insert_row("system_messages", {"type": "top_ideas", "message_id": 77})
        telegram["edit"].side_effect = TelegramAPIError(
            "editMessageText", "Bad Request: message is not modified", 400
        )

        assert await refresh_top_ideas(db, settings) == 77
        telegram["send"].assert_not_awaited()

    async def test_deleted_post_is_replaced(self, db, settings, telegram):
        seed_request(db, vote_count=3)
        db.insert_row("system_messages", {"type": "top_ideas", "message_id": 77})
        telegram["edit"].side_effect = TelegramAPIError(
            "editMessageText", "Bad Request: message to edit not found", 400
        )

        assert await refresh_top_ideas(db, settings) == 900

        rows = db.rows("system_messages", type="top_ideas")
        assert len(rows) == 1
        assert rows[0]["message_id"] == 900

    async def test_orders_by_tally(self, db, settings, telegram):
        seed_request(db, title="Low", vote_count=1)
        seed_request(db, title="High", vote_count=9)

        await refresh_top_ideas(db, settings)

        text = telegram["send"].await_args.args[1]
        assert text.index("High") < text.index("Low")
