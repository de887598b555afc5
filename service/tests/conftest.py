"""
Shared fixtures.

FakeSupabase mimics the slice of the supabase-py query builder the services
use (table().select/insert/update/delete/upsert().eq().order().limit().execute())
and enforces the same UNIQUE constraints as schema.sql, raising postgrest's
APIError with code 23505 on violation.
"""

import os

# Settings are read from the environment; tests never talk to real services
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:TEST")
os.environ.setdefault("TELEGRAM_CHANNEL_ID", "-1001234567890")

import copy
from dataclasses import dataclass
from typing import Any, Callable, Optional

import pytest
from postgrest.exceptions import APIError

from ideabot.config import Settings

UNIQUE_CONSTRAINTS = {
    "votes": [("request_id", "voter_tg_id")],
    "payments": [("charge_id",)],
    "system_messages": [("type",)],
}


def unique_violation(table: str) -> APIError:
    return APIError({
        "code": "23505",
        "message": f"duplicate key value violates unique constraint on {table}",
        "details": "",
        "hint": "",
    })


@dataclass
class FakeResponse:
    data: list
    count: Optional[int] = None


@dataclass
class _Failure:
    table: str
    op: str
    error: Exception
    before: Optional[Callable[[], None]] = None


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.op = "select"
        self.payload: Any = None
        self.filters: list[tuple[str, Any]] = []
        self.count_mode: Optional[str] = None
        self.order_by: Optional[tuple[str, bool]] = None
        self.limit_n: Optional[int] = None
        self.on_conflict = ""

    def select(self, columns: str = "*", count: Optional[str] = None):
        self.op = "select"
        self.count_mode = count
        return self

    def insert(self, payload):
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.op, self.payload = "update", payload
        return self

    def upsert(self, payload, on_conflict: str = ""):
        self.op, self.payload, self.on_conflict = "upsert", payload, on_conflict
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column: str, value):
        self.filters.append((column, value))
        return self

    def order(self, column: str, desc: bool = False):
        self.order_by = (column, desc)
        return self

    def limit(self, n: int):
        self.limit_n = n
        return self

    def _matches(self, row: dict) -> bool:
        return all(row.get(column) == value for column, value in self.filters)

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.table_name, self.op))
        self.db.raise_if_scheduled(self.table_name, self.op)

        rows = self.db.tables.setdefault(self.table_name, [])

        if self.op == "select":
            matched = [copy.deepcopy(r) for r in rows if self._matches(r)]
            if self.order_by:
                column, desc = self.order_by
                matched.sort(key=lambda r: r.get(column) or 0, reverse=desc)
            count = len(matched) if self.count_mode == "exact" else None
            if self.limit_n is not None:
                matched = matched[:self.limit_n]
            return FakeResponse(matched, count)

        if self.op == "insert":
            return FakeResponse([self.db.insert_row(self.table_name, self.payload)])

        if self.op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self.payload))
                    updated.append(copy.deepcopy(row))
            return FakeResponse(updated)

        if self.op == "delete":
            removed = [r for r in rows if self._matches(r)]
            self.db.tables[self.table_name] = [r for r in rows if not self._matches(r)]
            return FakeResponse(removed)

        if self.op == "upsert":
            keys = [k.strip() for k in self.on_conflict.split(",") if k.strip()]
            for row in rows:
                if keys and all(row.get(k) == self.payload.get(k) for k in keys):
                    row.update(copy.deepcopy(self.payload))
                    return FakeResponse([copy.deepcopy(row)])
            return FakeResponse([self.db.insert_row(self.table_name, self.payload)])

        raise AssertionError(f"unsupported op {self.op}")


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self._ids: dict[str, int] = {}
        self._failures: list[_Failure] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def insert_row(self, table: str, payload: dict) -> dict:
        rows = self.tables.setdefault(table, [])
        row = copy.deepcopy(payload)

        for columns in UNIQUE_CONSTRAINTS.get(table, []):
            if any(all(r.get(c) == row.get(c) for c in columns) for r in rows):
                raise unique_violation(table)

        if "id" not in row:
            self._ids[table] = self._ids.get(table, 0) + 1
            row["id"] = self._ids[table]
        rows.append(row)
        return copy.deepcopy(row)

    def fail_next(self, table: str, op: str, error: Optional[Exception] = None, before=None) -> None:
        """Make the next `op` on `table` raise; `before` runs first (to simulate a racing writer)."""
        error = error or APIError({"code": "XX000", "message": "boom", "details": "", "hint": ""})
        self._failures.append(_Failure(table, op, error, before))

    def raise_if_scheduled(self, table: str, op: str) -> None:
        for failure in self._failures:
            if failure.table == table and failure.op == op:
                self._failures.remove(failure)
                if failure.before:
                    failure.before()
                raise failure.error

    def rows(self, table: str, **filters) -> list[dict]:
        return [
            r for r in self.tables.get(table, [])
            if all(r.get(k) == v for k, v in filters.items())
        ]

    def ops(self, table: str, op: str) -> int:
        return sum(1 for call in self.calls if call == (table, op))


def seed_request(db: FakeSupabase, **fields) -> dict:
    row = {
        "author_tg_id": 1000,
        "author_username": "author",
        "title": "Dark theme",
        "description": "Add a dark theme to the application",
        "tags": [],
        "domain": "",
        "status": "published",
        "vote_count": 0,
        "priority_boost": 0,
        "has_priority": False,
        "payment_status": "unpaid",
        "channel_chat_id": "-1001234567890",
        "channel_message_id": 42,
    }
    row.update(fields)
    return db.insert_row("requests", row)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://test.supabase.co",
        supabase_service_role_key="test-service-role-key",
        telegram_bot_token="123456:TEST",
        telegram_channel_id="-1001234567890",
        priority_price_stars=300,
        priority_boost_votes=10,
    )


@pytest.fixture
def db() -> FakeSupabase:
    return FakeSupabase()
