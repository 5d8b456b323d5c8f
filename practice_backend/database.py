import logging
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

import aiosqlite

from practice_backend.exceptions import RecordNotFoundError, RecordStoreError

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    "user" TEXT NOT NULL,
    label TEXT NOT NULL DEFAULT 'New chat',
    system_prompt TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL DEFAULT '',
    total_tokens INTEGER NOT NULL DEFAULT 0,
    total_cost REAL NOT NULL DEFAULT 0.0,
    created TEXT NOT NULL,
    updated TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_items (
    id TEXT PRIMARY KEY,
    chat TEXT NOT NULL,
    role TEXT NOT NULL CHECK(role IN ('user', 'assistant', 'system')),
    content TEXT NOT NULL,
    "order" INTEGER NOT NULL CHECK("order" >= 0),
    prompt_tokens INTEGER,
    completion_tokens INTEGER,
    total_tokens INTEGER,
    cost REAL,
    model TEXT,
    created TEXT NOT NULL,
    updated TEXT NOT NULL,
    FOREIGN KEY (chat) REFERENCES chats(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS llm_responses (
    id TEXT PRIMARY KEY,
    "key" TEXT NOT NULL UNIQUE,
    prompt TEXT NOT NULL DEFAULT '',
    system_prompt TEXT NOT NULL DEFAULT '',
    response TEXT NOT NULL DEFAULT '',
    model_name TEXT NOT NULL DEFAULT '',
    backend TEXT NOT NULL DEFAULT '',
    prompt_tokens INTEGER NOT NULL DEFAULT 0,
    completion_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    cost REAL NOT NULL DEFAULT 0.0,
    ttl INTEGER NOT NULL DEFAULT 0,
    created TEXT NOT NULL,
    updated TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chats_user ON chats("user");
CREATE UNIQUE INDEX IF NOT EXISTS idx_chat_items_chat_order ON chat_items(chat, "order");
"""

_db_path: str = ""

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

# Filter keys may carry a range suffix, e.g. {"ttl__gt": 0}
_OPERATORS = {
    "": "=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "ne": "!=",
}


def set_db_path(path: str):
    global _db_path
    _db_path = path


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize as naive UTC so SQLite date functions and string sorting agree."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(sep=" ", timespec="milliseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@asynccontextmanager
async def get_db():
    """Yield an aiosqlite connection with WAL mode and foreign keys."""
    db = await aiosqlite.connect(_db_path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    try:
        yield db
    finally:
        await db.close()


async def init_db():
    """Create all tables if they don't exist."""
    async with get_db() as db:
        await db.executescript(SCHEMA_SQL)
        await db.commit()


def _quote(identifier: str) -> str:
    if not _IDENTIFIER.match(identifier):
        raise ValueError(f"Invalid identifier: {identifier!r}")
    return f'"{identifier}"'


def _where_clause(filters: Optional[dict[str, Any]]) -> tuple[str, list]:
    if not filters:
        return "", []
    parts = []
    params = []
    for key, value in filters.items():
        column, _, op = key.partition("__")
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {op!r}")
        if value is None and op == "":
            parts.append(f"{_quote(column)} IS NULL")
            continue
        parts.append(f"{_quote(column)} {_OPERATORS[op]} ?")
        params.append(value)
    return " WHERE " + " AND ".join(parts), params


def _order_clause(sort: str) -> str:
    if not sort:
        return ""
    columns = []
    for part in sort.split(","):
        part = part.strip()
        if part.startswith("-"):
            columns.append(f"{_quote(part[1:])} DESC")
        else:
            columns.append(f"{_quote(part.lstrip('+'))} ASC")
    return " ORDER BY " + ", ".join(columns)


class RecordStore:
    """Generic row access over the SQLite database.

    Records are plain dicts keyed by column name. Every table managed here
    has ``id``, ``created`` and ``updated`` columns; ``save`` fills them in.
    Any aiosqlite failure is re-raised as ``RecordStoreError``.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def find_by_id(self, table: str, record_id: str) -> dict:
        rows = await self.find_by_filter(table, {"id": record_id}, limit=1)
        if not rows:
            raise RecordNotFoundError(table, record_id)
        return rows[0]

    async def find_first(self, table: str, filters: dict[str, Any]) -> Optional[dict]:
        rows = await self.find_by_filter(table, filters, limit=1)
        return rows[0] if rows else None

    async def find_by_filter(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        sort: str = "",
        limit: int = 0,
        offset: int = 0,
    ) -> list[dict]:
        where, params = _where_clause(filters)
        sql = f"SELECT * FROM {_quote(table)}{where}{_order_clause(sort)}"
        if limit > 0:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, max(offset, 0)])
        return await self.query(sql, params)

    async def count(self, table: str, filters: Optional[dict[str, Any]] = None) -> int:
        where, params = _where_clause(filters)
        rows = await self.query(f"SELECT COUNT(*) AS n FROM {_quote(table)}{where}", params)
        return rows[0]["n"] if rows else 0

    async def save(self, table: str, record: dict[str, Any]) -> dict:
        """Insert the record, or update it when a row with its id exists."""
        record = dict(record)
        now = format_timestamp(self.now())
        record_id = record.get("id")
        try:
            async with get_db() as db:
                exists = False
                if record_id:
                    cursor = await db.execute(
                        f"SELECT 1 FROM {_quote(table)} WHERE id = ?", (record_id,)
                    )
                    exists = await cursor.fetchone() is not None

                if exists:
                    record.pop("created", None)
                    record["updated"] = now
                    columns = [c for c in record if c != "id"]
                    assignments = ", ".join(f"{_quote(c)} = ?" for c in columns)
                    await db.execute(
                        f"UPDATE {_quote(table)} SET {assignments} WHERE id = ?",
                        [record[c] for c in columns] + [record_id],
                    )
                else:
                    record["id"] = record_id or str(uuid.uuid4())
                    record.setdefault("created", now)
                    record["updated"] = now
                    columns = list(record)
                    await db.execute(
                        f"INSERT INTO {_quote(table)} "
                        f"({', '.join(_quote(c) for c in columns)}) "
                        f"VALUES ({', '.join('?' for _ in columns)})",
                        [record[c] for c in columns],
                    )
                await db.commit()
                cursor = await db.execute(
                    f"SELECT * FROM {_quote(table)} WHERE id = ?", (record["id"],)
                )
                row = await cursor.fetchone()
                return dict(row)
        except aiosqlite.Error as e:
            raise RecordStoreError(f"failed to save {table} record: {e}") from e

    async def upsert(self, table: str, record: dict[str, Any], conflict_column: str) -> None:
        """Insert the record or overwrite the row sharing ``conflict_column``."""
        record = dict(record)
        now = format_timestamp(self.now())
        record.setdefault("id", str(uuid.uuid4()))
        record["created"] = now
        record["updated"] = now
        columns = list(record)
        updates = [c for c in columns if c not in ("id", conflict_column)]
        sql = (
            f"INSERT INTO {_quote(table)} ({', '.join(_quote(c) for c in columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT({_quote(conflict_column)}) DO UPDATE SET "
            + ", ".join(f"{_quote(c)} = excluded.{_quote(c)}" for c in updates)
        )
        await self.execute(sql, [record[c] for c in columns])

    async def delete(self, table: str, record_id: str) -> None:
        await self.execute(f"DELETE FROM {_quote(table)} WHERE id = ?", (record_id,))

    async def delete_where(self, table: str, filters: dict[str, Any]) -> int:
        where, params = _where_clause(filters)
        if not where:
            raise ValueError("delete_where requires at least one filter")
        return await self.execute(f"DELETE FROM {_quote(table)}{where}", params)

    async def execute(self, sql: str, params: Iterable = ()) -> int:
        """Run a write statement and return the affected row count."""
        try:
            async with get_db() as db:
                cursor = await db.execute(sql, list(params))
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as e:
            raise RecordStoreError(f"statement failed: {e}") from e

    async def query(self, sql: str, params: Iterable = ()) -> list[dict]:
        try:
            async with get_db() as db:
                cursor = await db.execute(sql, list(params))
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]
        except aiosqlite.Error as e:
            raise RecordStoreError(f"query failed: {e}") from e
