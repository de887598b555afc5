"""
Dialog relay: forwards user text to the dialog SaaS and returns its reply.

Providers (settings.dialog_provider):
- voiceflow: Dialog Runtime API, state keyed by telegram user id
- botpress:  Chat API, one conversation per user (id kept in session context)
- openai:    chat completions, history kept in session context

Every provider returns a DialogReply with zero or more text segments that
are relayed verbatim. Timeouts raise UpstreamTimeout, any other transport or
API failure raises UpstreamError.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from openai import AsyncOpenAI, APITimeoutError, OpenAIError

from ideabot.config import Settings, get_settings
from ideabot.errors import UpstreamError, UpstreamTimeout

logger = logging.getLogger(__name__)

# Telegram caps a message at 4096 chars; the SaaS accepts more but keep it sane
MAX_DIALOG_TEXT = 6000
TRUNCATED_MARKER = "\n…[обрезано]"

OPENAI_HISTORY_LIMIT = 20
READY_MARKER = "[READY]"

OPENAI_SYSTEM_PROMPT = f"""You help users turn an idea for an AI product in medicine into a clear feature request.

Ask short clarifying questions, one at a time, in the user's language:
- what problem it solves and for whom
- how it should work
- what result the user expects

When you have enough for a title and a description of at least two sentences,
summarise the request as:
Название: <title>
Описание: <description>
and append {READY_MARKER} on its own line."""


def truncate(text: str, max_len: int = MAX_DIALOG_TEXT) -> str:
    if not text:
        return ""
    return text[:max_len] + TRUNCATED_MARKER if len(text) > max_len else text


@dataclass
class DialogReply:
    messages: list[str] = field(default_factory=list)
    ended: bool = False  # the dialog considers the request ready to publish
    context_updates: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return "\n".join(self.messages)


class DialogClient:
    """Base class; subclasses implement interact()."""

    provider = "base"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def interact(self, user_id: str, text: str, context: dict[str, Any]) -> DialogReply:
        raise NotImplementedError

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> Any:
        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"{self.provider}: timeout") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"{self.provider} API error {e.response.status_code}: {e.response.text[:300]}")
            raise UpstreamError(f"{self.provider}: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamError(f"{self.provider}: {e}") from e


class VoiceflowClient(DialogClient):
    provider = "voiceflow"

    async def interact(self, user_id: str, text: str, context: dict[str, Any]) -> DialogReply:
        if not self.settings.voiceflow_api_key or not self.settings.voiceflow_version_id:
            raise UpstreamError("Voiceflow is not configured")

        url = (
            f"{self.settings.voiceflow_runtime_url}/state/"
            f"{self.settings.voiceflow_version_id}/user/{user_id}/interact"
        )

        async with httpx.AsyncClient(timeout=self.settings.dialog_timeout_seconds) as client:
            traces = await self._request(
                client, "POST", url,
                json={"request": {"type": "text", "payload": truncate(text)}},
                headers={"Authorization": self.settings.voiceflow_api_key}
            )

        reply = DialogReply()
        for trace in traces or []:
            trace_type = trace.get("type")
            payload = trace.get("payload") or {}
            if trace_type in ("text", "speak") and payload.get("message"):
                reply.messages.append(payload["message"])
            elif trace_type == "end":
                reply.ended = True

        return reply


class BotpressClient(DialogClient):
    provider = "botpress"

    POLL_INTERVAL_SECONDS = 1.0

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.botpress_api_key}",
            "x-bot-id": self.settings.botpress_bot_id,
        }

    async def interact(self, user_id: str, text: str, context: dict[str, Any]) -> DialogReply:
        if not self.settings.botpress_api_key or not self.settings.botpress_bot_id:
            raise UpstreamError("Botpress is not configured")

        base_url = self.settings.botpress_api_url
        reply = DialogReply()

        async with httpx.AsyncClient(
            base_url=base_url,
            headers=self._headers(),
            timeout=self.settings.dialog_timeout_seconds
        ) as client:
            conversation_id = context.get("botpress_conversation_id")
            if not conversation_id:
                data = await self._request(client, "POST", "/chat/conversations", json={"userId": user_id})
                conversation_id = data["conversation"]["id"]
                reply.context_updates["botpress_conversation_id"] = conversation_id

            sent = await self._request(client, "POST", "/chat/messages", json={
                "conversationId": conversation_id,
                "payload": {"type": "text", "text": truncate(text)},
            })
            sent_at = (sent.get("message") or {}).get("createdAt", "")

            # The bot answers asynchronously; poll until it does or we run out of time
            deadline = asyncio.get_running_loop().time() + self.settings.dialog_timeout_seconds
            while True:
                await asyncio.sleep(self.POLL_INTERVAL_SECONDS)
                data = await self._request(client, "GET", f"/chat/conversations/{conversation_id}/messages")
                outgoing = [
                    m for m in data.get("messages", [])
                    if m.get("direction") == "outgoing" and m.get("createdAt", "") > sent_at
                ]
                if outgoing:
                    outgoing.sort(key=lambda m: m.get("createdAt", ""))
                    reply.messages = [
                        m["payload"]["text"] for m in outgoing
                        if (m.get("payload") or {}).get("text")
                    ]
                    return reply
                if asyncio.get_running_loop().time() >= deadline:
                    raise UpstreamTimeout("botpress: no reply")


class OpenAIDialogClient(DialogClient):
    provider = "openai"

    def __init__(self, settings: Optional[Settings] = None, client: Optional[AsyncOpenAI] = None):
        super().__init__(settings)
        self.client = client or AsyncOpenAI(
            api_key=self.settings.openai_api_key,
            timeout=self.settings.dialog_timeout_seconds,
            max_retries=0
        )

    async def interact(self, user_id: str, text: str, context: dict[str, Any]) -> DialogReply:
        history = list(context.get("history", []))
        history.append({"role": "user", "content": truncate(text)})

        try:
            response = await self.client.chat.completions.create(
                model=self.settings.openai_model,
                messages=[{"role": "system", "content": OPENAI_SYSTEM_PROMPT}, *history],
                temperature=0.3
            )
        except APITimeoutError as e:
            raise UpstreamTimeout("openai: timeout") from e
        except OpenAIError as e:
            raise UpstreamError(f"openai: {e}") from e

        content = (response.choices[0].message.content or "").strip()
        ended = READY_MARKER in content
        content = content.replace(READY_MARKER, "").strip()

        history.append({"role": "assistant", "content": content})

        return DialogReply(
            messages=[content] if content else [],
            ended=ended,
            context_updates={"history": history[-OPENAI_HISTORY_LIMIT:]}
        )


_PROVIDERS: dict[str, type[DialogClient]] = {
    VoiceflowClient.provider: VoiceflowClient,
    BotpressClient.provider: BotpressClient,
    OpenAIDialogClient.provider: OpenAIDialogClient,
}

_dialog_client: Optional[DialogClient] = None


def create_dialog_client(settings: Optional[Settings] = None) -> DialogClient:
    settings = settings or get_settings()
    provider = settings.dialog_provider.lower()
    if provider not in _PROVIDERS:
        raise ValueError(f"Unknown dialog provider: {settings.dialog_provider!r}")
    return _PROVIDERS[provider](settings)


def get_dialog_client() -> DialogClient:
    """Get or create the dialog client for the configured provider."""
    global _dialog_client
    if _dialog_client is None:
        _dialog_client = create_dialog_client()
    return _dialog_client


def parse_draft(text: str) -> Optional[dict[str, str]]:
    """
    Pull a "Название: ... / Описание: ..." summary out of a dialog reply.

    Returns {"title", "description"} or None if the reply has no summary.
    """
    title = None
    description_lines: list[str] = []
    in_description = False

    for line in (text or "").splitlines():
        stripped = line.strip()
        lowered = stripped.lower()
        if lowered.startswith(("название:", "title:")):
            title = stripped.split(":", 1)[1].strip()
            in_description = False
        elif lowered.startswith(("описание:", "description:")):
            description_lines = [stripped.split(":", 1)[1].strip()]
            in_description = True
        elif in_description and stripped:
            description_lines.append(stripped)

    description = "\n".join(line for line in description_lines if line).strip()
    if not title or not description:
        return None
    return {"title": title, "description": description}
