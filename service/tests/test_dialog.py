"""
Tests for the dialog relay clients.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from openai import APITimeoutError

from ideabot.errors import UpstreamError, UpstreamTimeout
from ideabot.services import dialog
from ideabot.services.dialog import (
    BotpressClient, DialogReply, OpenAIDialogClient, VoiceflowClient,
    create_dialog_client, parse_draft, truncate,
)

REAL_ASYNC_CLIENT = httpx.AsyncClient


@pytest.fixture
def voiceflow_settings(settings):
    return settings.model_copy(update={
        "voiceflow_api_key": "VF.DM.test",
        "voiceflow_version_id": "production",
    })


def mock_http(monkeypatch, handler):
    """Route every httpx.AsyncClient the dialog module creates through handler."""
    def factory(*args, **kwargs):
        return REAL_ASYNC_CLIENT(*args, transport=httpx.MockTransport(handler), **kwargs)
    monkeypatch.setattr(dialog.httpx, "AsyncClient", factory)


class TestTruncate:
    """Tests for truncate."""

    def test_short_text_unchanged(self):
        assert truncate("hello") == "hello"

    def test_long_text_marked(self):
        result = truncate("x" * 10, max_len=4)
        assert result.startswith("xxxx")
        assert result.endswith("[обрезано]")

    def test_empty(self):
        assert truncate("") == ""
        assert truncate(None) == ""


class TestParseDraft:
    """Tests for parse_draft."""

    def test_russian_labels(self):
        text = "Отлично!\nНазвание: Тёмная тема\nОписание: Добавить тёмную тему.\nЧтобы глаза не уставали."
        assert parse_draft(text) == {
            "title": "Тёмная тема",
            "description": "Добавить тёмную тему.\nЧтобы глаза не уставали.",
        }

    def test_english_labels(self):
        draft = parse_draft("Title: Dark theme\nDescription: Add a dark theme")
        assert draft == {"title": "Dark theme", "description": "Add a dark theme"}

    def test_no_summary(self):
        assert parse_draft("Расскажите подробнее, для кого эта функция?") is None

    def test_title_without_description(self):
        assert parse_draft("Название: Тёмная тема") is None


class TestVoiceflowClient:
    """Tests for VoiceflowClient.interact."""

    async def test_relays_text_traces(self, monkeypatch, voiceflow_settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=[
                {"type": "text", "payload": {"message": "Привет!"}},
                {"type": "visual", "payload": {"image": "x.png"}},
                {"type": "speak", "payload": {"message": "Какая у вас идея?"}},
            ])

        mock_http(monkeypatch, handler)

        reply = await VoiceflowClient(voiceflow_settings).interact("42", "Hello", {})

        assert reply.messages == ["Привет!", "Какая у вас идея?"]
        assert reply.ended is False
        assert seen["url"].endswith("/state/production/user/42/interact")
        assert seen["auth"] == "VF.DM.test"
        assert seen["body"] == {"request": {"type": "text", "payload": "Hello"}}

    async def test_end_trace(self, monkeypatch, voiceflow_settings):
        mock_http(monkeypatch, lambda request: httpx.Response(200, json=[
            {"type": "text", "payload": {"message": "Заявка готова"}},
            {"type": "end"},
        ]))

        reply = await VoiceflowClient(voiceflow_settings).interact("42", "да", {})

        assert reply.ended is True
        assert reply.text == "Заявка готова"

    async def test_http_error(self, monkeypatch, voiceflow_settings):
        mock_http(monkeypatch, lambda request: httpx.Response(500, text="oops"))

        with pytest.raises(UpstreamError):
            await VoiceflowClient(voiceflow_settings).interact("42", "Hello", {})

    async def test_timeout(self, monkeypatch, voiceflow_settings):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        mock_http(monkeypatch, handler)

        with pytest.raises(UpstreamTimeout):
            await VoiceflowClient(voiceflow_settings).interact("42", "Hello", {})

    async def test_not_configured(self, settings):
        with pytest.raises(UpstreamError):
            await VoiceflowClient(settings).interact("42", "Hello", {})


SENT_AT = "2026-01-01T00:00:01.000Z"


class TestBotpressClient:
    """Tests for BotpressClient.interact."""

    @pytest.fixture
    def botpress_settings(self, settings, monkeypatch):
        monkeypatch.setattr(BotpressClient, "POLL_INTERVAL_SECONDS", 0)
        return settings.model_copy(update={
            "dialog_provider": "botpress",
            "botpress_api_key": "bp-key",
            "botpress_bot_id": "bot-1",
            "dialog_timeout_seconds": 0.05,
        })

    def handler(self, seen: list, messages: list):
        def handle(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            seen.append((request.method, path))
            if request.method == "POST" and path.endswith("/chat/conversations"):
                return httpx.Response(200, json={"conversation": {"id": "conv-new"}})
            if request.method == "POST" and path.endswith("/chat/messages"):
                return httpx.Response(200, json={"message": {"createdAt": SENT_AT}})
            return httpx.Response(200, json={"messages": messages})
        return handle

    async def test_creates_conversation(self, monkeypatch, botpress_settings):
        seen = []
        mock_http(monkeypatch, self.handler(seen, [
            {"direction": "outgoing", "createdAt": "2026-01-01T00:00:02.000Z", "payload": {"text": "Привет!"}},
        ]))

        reply = await BotpressClient(botpress_settings).interact("42", "Hello", {})

        assert reply.messages == ["Привет!"]
        assert reply.context_updates == {"botpress_conversation_id": "conv-new"}
        assert seen[0] == ("POST", "/v1/chat/conversations")

    async def test_reuses_stored_conversation(self, monkeypatch, botpress_settings):
        seen = []
        mock_http(monkeypatch, self.handler(seen, [
            {"direction": "outgoing", "createdAt": "2026-01-01T00:00:02.000Z", "payload": {"text": "ok"}},
        ]))

        reply = await BotpressClient(botpress_settings).interact(
            "42", "Hello", {"botpress_conversation_id": "conv-1"}
        )

        assert reply.context_updates == {}
        assert ("POST", "/v1/chat/conversations") not in seen
        assert ("GET", "/v1/chat/conversations/conv-1/messages") in seen

    async def test_only_new_outgoing_messages(self, monkeypatch, botpress_settings):
        """Earlier bot replies and the user's own message are not relayed again."""
        mock_http(monkeypatch, self.handler([], [
            {"direction": "outgoing", "createdAt": "2026-01-01T00:00:03.000Z", "payload": {"text": "second"}},
            {"direction": "outgoing", "createdAt": "2026-01-01T00:00:00.500Z", "payload": {"text": "old"}},
            {"direction": "incoming", "createdAt": SENT_AT, "payload": {"text": "Hello"}},
            {"direction": "outgoing", "createdAt": "2026-01-01T00:00:02.000Z", "payload": {"text": "first"}},
            {"direction": "outgoing", "createdAt": "2026-01-01T00:00:04.000Z", "payload": {"type": "image"}},
        ]))

        reply = await BotpressClient(botpress_settings).interact("42", "Hello", {"botpress_conversation_id": "c"})

        assert reply.messages == ["first", "second"]

    async def test_no_reply_before_deadline(self, monkeypatch, botpress_settings):
        mock_http(monkeypatch, self.handler([], [
            {"direction": "outgoing", "createdAt": "2026-01-01T00:00:00.500Z", "payload": {"text": "old"}},
        ]))

        with pytest.raises(UpstreamTimeout):
            await BotpressClient(botpress_settings).interact("42", "Hello", {"botpress_conversation_id": "c"})

    async def test_not_configured(self, settings):
        with pytest.raises(UpstreamError):
            await BotpressClient(settings).interact("42", "Hello", {})

    def test_selected_by_provider(self, botpress_settings):
        assert isinstance(create_dialog_client(botpress_settings), BotpressClient)


def completion(content: str):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestOpenAIDialogClient:
    """Tests for OpenAIDialogClient.interact."""

    @pytest.fixture
    def openai_client(self):
        return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=AsyncMock())))

    async def test_keeps_history(self, settings, openai_client):
        openai_client.chat.completions.create.return_value = completion("Для кого эта функция?")
        client = OpenAIDialogClient(settings, client=openai_client)

        reply = await client.interact("42", "Хочу тёмную тему", {"history": []})

        assert reply.messages == ["Для кого эта функция?"]
        assert reply.ended is False
        assert reply.context_updates["history"] == [
            {"role": "user", "content": "Хочу тёмную тему"},
            {"role": "assistant", "content": "Для кого эта функция?"},
        ]
        messages = openai_client.chat.completions.create.await_args.kwargs["messages"]
        assert messages[0]["role"] == "system"

    async def test_ready_marker(self, settings, openai_client):
        openai_client.chat.completions.create.return_value = completion(
            "Название: Тёмная тема\nОписание: Добавить тёмную тему\n[READY]"
        )
        client = OpenAIDialogClient(settings, client=openai_client)

        reply = await client.interact("42", "Всё", {})

        assert reply.ended is True
        assert "[READY]" not in reply.text

    async def test_history_is_bounded(self, settings, openai_client):
        openai_client.chat.completions.create.return_value = completion("ok")
        history = [{"role": "user", "content": str(i)} for i in range(30)]
        client = OpenAIDialogClient(settings, client=openai_client)

        reply = await client.interact("42", "next", {"history": history})

        assert len(reply.context_updates["history"]) == dialog.OPENAI_HISTORY_LIMIT

    async def test_timeout(self, settings, openai_client):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        openai_client.chat.completions.create.side_effect = APITimeoutError(request=request)
        client = OpenAIDialogClient(settings, client=openai_client)

        with pytest.raises(UpstreamTimeout):
            await client.interact("42", "Hello", {})


class TestCreateDialogClient:
    """Tests for create_dialog_client."""

    def test_voiceflow_is_default(self, settings):
        assert isinstance(create_dialog_client(settings), VoiceflowClient)

    def test_unknown_provider(self, settings):
        with pytest.raises(ValueError):
            create_dialog_client(settings.model_copy(update={"dialog_provider": "dialogflow"}))

    def test_reply_text_joins_segments(self):
        assert DialogReply(messages=["a", "b"]).text == "a\nb"
