"""
Dialog context storage for Telegram bot.

In-memory, keyed by telegram user id, with TTL and a size bound. The store is
disposable: losing it on restart only resets dialog turn counters and OpenAI
history. Requests, votes and payments live in Supabase.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Dict, Any

from ideabot.config import get_settings


class SessionStore:
    """TTL + LRU bounded dict of per-user context."""

    def __init__(self, ttl_seconds: int = 3600, max_entries: int = 10000):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._data: OrderedDict[str, tuple[float, Dict[str, Any]]] = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _evict(self, now: float) -> None:
        expired = [k for k, (ts, _) in self._data.items() if now - ts > self.ttl_seconds]
        for key in expired:
            self._data.pop(key, None)
            self._drop_lock(key)

        while len(self._data) > self.max_entries:
            key, _ = self._data.popitem(last=False)
            self._drop_lock(key)

    def _drop_lock(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            self._locks.pop(key, None)

    def get(self, user_id: str) -> Dict[str, Any]:
        now = time.monotonic()
        self._evict(now)
        entry = self._data.get(user_id)
        if entry is None:
            return {}
        self._data.move_to_end(user_id)
        return dict(entry[1])

    def update(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        now = time.monotonic()
        current = self._data.pop(user_id, (now, {}))[1]
        merged = {**current, **data}
        self._data[user_id] = (now, merged)
        self._evict(now)
        return dict(merged)

    def clear(self, user_id: str) -> None:
        self._data.pop(user_id, None)
        self._drop_lock(user_id)

    def lock(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    def __len__(self) -> int:
        return len(self._data)


_store: SessionStore | None = None


def get_session_store() -> SessionStore:
    global _store
    if _store is None:
        settings = get_settings()
        _store = SessionStore(settings.session_ttl_seconds, settings.session_max_entries)
    return _store


async def load_context(user_id: str) -> Dict[str, Any]:
    """Load dialog context for user."""
    return get_session_store().get(user_id)


async def save_context(user_id: str, data: Dict[str, Any]) -> None:
    """Save dialog context for user (merge with existing)."""
    get_session_store().update(user_id, data)


async def clear_context(user_id: str) -> None:
    """Clear dialog context for user."""
    get_session_store().clear(user_id)


async def next_turn(user_id: str) -> int:
    """Increment and return the user's dialog turn counter."""
    store = get_session_store()
    turn = store.get(user_id).get("turn", 0) + 1
    store.update(user_id, {"turn": turn})
    return turn


def user_lock(user_id: str) -> asyncio.Lock:
    """Serialises dialog calls for one user; other users run concurrently."""
    return get_session_store().lock(user_id)
