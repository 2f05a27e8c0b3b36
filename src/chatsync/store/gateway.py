"""Deduplicating persistence gateway over SQLite.

This is the only writer of Message and Conversation rows. Every mutation
is a single native statement (``INSERT ... ON CONFLICT``, in-statement
arithmetic), so concurrent writers (the live path and reconciliation)
never lose updates to an application-side read-modify-write.

Each operation opens its own connection and runs in a worker thread,
keeping the event loop free while SQLite blocks.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from loguru import logger

from chatsync.constants import SQLITE_MAX_PARAMS, SQLITE_TIMEOUT
from chatsync.errors import StoreUnavailable
from chatsync.models import (
    AttachmentDescriptor,
    Conversation,
    GeneratedReply,
    GroupInfo,
    Message,
    MessageKind,
    Rollup,
    from_timestamp,
    to_timestamp,
    utcnow,
)

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    message_id        TEXT PRIMARY KEY,
    conversation_id   TEXT NOT NULL,
    sender            TEXT NOT NULL,
    recipient         TEXT,
    originator_sub_id TEXT,
    body              TEXT NOT NULL DEFAULT '',
    kind              TEXT NOT NULL,
    sent_at           REAL NOT NULL,
    is_outbound       INTEGER NOT NULL DEFAULT 0,
    is_multi_party    INTEGER NOT NULL DEFAULT 0,
    conversation_name TEXT,
    has_attachment    INTEGER NOT NULL DEFAULT 0,
    attachment        TEXT,
    generated_reply   TEXT,
    delivered         INTEGER NOT NULL DEFAULT 1,
    is_forwarded      INTEGER NOT NULL DEFAULT 0,
    is_status         INTEGER NOT NULL DEFAULT 0,
    device_type       TEXT,
    created_at        REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation_sent
    ON messages (conversation_id, sent_at DESC);
CREATE INDEX IF NOT EXISTS idx_messages_sent ON messages (sent_at DESC);

CREATE TABLE IF NOT EXISTS conversations (
    conversation_id  TEXT PRIMARY KEY,
    display_name     TEXT NOT NULL,
    is_multi_party   INTEGER NOT NULL DEFAULT 0,
    unread_count     INTEGER NOT NULL DEFAULT 0,
    archived         INTEGER NOT NULL DEFAULT 0,
    pinned           INTEGER NOT NULL DEFAULT 0,
    group_info       TEXT,
    total_messages   INTEGER NOT NULL DEFAULT 0,
    first_message_at REAL,
    last_message_at  REAL,
    created_at       REAL NOT NULL,
    updated_at       REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conversations_last
    ON conversations (last_message_at DESC);
"""

# Columns added after the first release; older databases get them on init.
_LATE_MESSAGE_COLUMNS = {
    "is_forwarded": "INTEGER NOT NULL DEFAULT 0",
    "is_status": "INTEGER NOT NULL DEFAULT 0",
    "device_type": "TEXT",
}

_MESSAGE_COLUMNS = (
    "message_id", "conversation_id", "sender", "recipient", "originator_sub_id",
    "body", "kind", "sent_at", "is_outbound", "is_multi_party",
    "conversation_name", "has_attachment", "attachment", "generated_reply",
    "delivered", "is_forwarded", "is_status", "device_type", "created_at",
)

# Columns an upsert may overwrite; nested documents are only replaced by non-null values.
_MESSAGE_UPDATES = ", ".join(
    [
        f"{col} = excluded.{col}"
        for col in _MESSAGE_COLUMNS
        if col not in {"message_id", "created_at", "attachment", "generated_reply"}
    ]
    + [
        "attachment = COALESCE(excluded.attachment, messages.attachment)",
        "generated_reply = COALESCE(excluded.generated_reply, messages.generated_reply)",
    ]
)


def _dump(document: Any) -> str | None:
    if document is None:
        return None
    return json.dumps(document.to_dict(), ensure_ascii=False)


def _load(raw: str | None, factory: Callable[[dict], T]) -> T | None:
    if not raw:
        return None
    return factory(json.loads(raw))


def _chunks(items: list[str], size: int = SQLITE_MAX_PARAMS) -> Iterable[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class PersistenceGateway:
    """Idempotent message and conversation storage.

    Every public coroutine raises :class:`StoreUnavailable` when SQLite
    fails; a duplicate write is never an error.
    """

    def __init__(self, database_path: Path | str) -> None:
        self._path = Path(database_path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Connection plumbing
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=SQLITE_TIMEOUT)
        conn.row_factory = sqlite3.Row
        return conn

    def _run_sync(self, operation: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreUnavailable(operation, exc) from exc
        try:
            with conn:  # commits on success, rolls back on error
                return fn(conn)
        except sqlite3.Error as exc:
            logger.error("Store error during {}: {}", operation, exc)
            raise StoreUnavailable(operation, exc) from exc
        finally:
            conn.close()

    async def _run(self, operation: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        return await asyncio.to_thread(self._run_sync, operation, fn)

    def init_schema(self) -> None:
        """Create tables and indexes; safe to call on every start."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable("init_schema", exc) from exc

        def _create(conn: sqlite3.Connection) -> None:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
            known = {row["name"] for row in conn.execute("PRAGMA table_info(messages)")}
            for column, ddl in _LATE_MESSAGE_COLUMNS.items():
                if column not in known:
                    conn.execute(f"ALTER TABLE messages ADD COLUMN {column} {ddl}")

        self._run_sync("init_schema", _create)
        logger.info(f"Message store ready at {self._path}")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @staticmethod
    def _message_params(record: Message) -> tuple:
        return (
            record.message_id,
            record.conversation_id,
            record.sender,
            record.recipient,
            record.originator_sub_id,
            record.body or "",
            MessageKind(record.kind).value,
            to_timestamp(record.sent_at),
            int(record.is_outbound),
            int(record.is_multi_party),
            record.conversation_name,
            int(record.has_attachment),
            _dump(record.attachment),
            _dump(record.generated_reply),
            int(record.delivered),
            int(record.is_forwarded),
            int(record.is_status),
            record.device_type,
            to_timestamp(utcnow()),
        )

    async def claim_message(self, record: Message) -> bool:
        """Insert ``record`` only if its id is unknown.

        Returns True for the single caller that created the row. Whoever
        gets False is looking at a duplicate delivery and must not
        materialize, roll up or reply.
        """
        placeholders = ", ".join("?" for _ in _MESSAGE_COLUMNS)
        sql = (
            f"INSERT INTO messages ({', '.join(_MESSAGE_COLUMNS)}) "
            f"VALUES ({placeholders}) ON CONFLICT(message_id) DO NOTHING"
        )
        params = self._message_params(record)

        def _claim(conn: sqlite3.Connection) -> bool:
            return conn.execute(sql, params).rowcount == 1

        return await self._run("claim_message", _claim)

    async def upsert_message(self, record: Message) -> None:
        """Insert or replace ``record`` by ``message_id``.

        Re-applying an identical record leaves the row unchanged. A stored
        attachment or generated reply is kept when the incoming record
        has none.
        """
        placeholders = ", ".join("?" for _ in _MESSAGE_COLUMNS)
        sql = (
            f"INSERT INTO messages ({', '.join(_MESSAGE_COLUMNS)}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT(message_id) DO UPDATE SET {_MESSAGE_UPDATES}"
        )
        params = self._message_params(record)

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(sql, params)

        await self._run("upsert_message", _upsert)

    async def annotate_reply(self, message_id: str, reply: GeneratedReply) -> bool:
        """Attach ``reply`` to an existing message without touching other fields."""
        payload = _dump(reply)

        def _annotate(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                "UPDATE messages SET generated_reply = ? WHERE message_id = ?",
                (payload, message_id),
            )
            return cur.rowcount > 0

        return await self._run("annotate_reply", _annotate)

    async def existing_message_ids(self, candidate_ids: Iterable[str]) -> set[str]:
        """Return the subset of ``candidate_ids`` already stored."""
        ids = sorted(set(candidate_ids))
        if not ids:
            return set()

        def _lookup(conn: sqlite3.Connection) -> set[str]:
            found: set[str] = set()
            for chunk in _chunks(ids):
                marks = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT message_id FROM messages WHERE message_id IN ({marks})",
                    chunk,
                ).fetchall()
                found.update(row["message_id"] for row in rows)
            return found

        return await self._run("existing_message_ids", _lookup)

    async def get_message(self, message_id: str) -> Message | None:
        def _get(conn: sqlite3.Connection) -> Message | None:
            row = conn.execute(
                "SELECT * FROM messages WHERE message_id = ?", (message_id,)
            ).fetchone()
            return self._row_to_message(row) if row else None

        return await self._run("get_message", _get)

    async def find_attachment(self, message_id: str) -> AttachmentDescriptor | None:
        """The stored descriptor for ``message_id``, if any."""
        def _find(conn: sqlite3.Connection) -> AttachmentDescriptor | None:
            row = conn.execute(
                "SELECT attachment FROM messages WHERE message_id = ?", (message_id,)
            ).fetchone()
            return _load(row["attachment"], AttachmentDescriptor.from_dict) if row else None

        return await self._run("find_attachment", _find)

    async def messages_missing_attachment(self, limit: int = 100) -> list[str]:
        """Ids of claimed messages whose attachment step never completed."""
        def _missing(conn: sqlite3.Connection) -> list[str]:
            rows = conn.execute(
                "SELECT message_id FROM messages "
                "WHERE has_attachment = 1 AND attachment IS NULL "
                "ORDER BY sent_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [row["message_id"] for row in rows]

        return await self._run("messages_missing_attachment", _missing)

    async def records_in_conversation(
        self, conversation_id: str, limit: int
    ) -> list[Message]:
        """The ``limit`` most recent messages, newest first."""
        if limit <= 0:
            return []

        def _recent(conn: sqlite3.Connection) -> list[Message]:
            rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? "
                "ORDER BY sent_at DESC, rowid DESC LIMIT ?",
                (conversation_id, limit),
            ).fetchall()
            return [self._row_to_message(row) for row in rows]

        return await self._run("records_in_conversation", _recent)

    async def search_messages(
        self,
        term: str,
        *,
        conversation_id: str | None = None,
        is_multi_party: bool | None = None,
        is_outbound: bool | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Message]:
        """Case-insensitive body search, newest first."""
        escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        clauses = ["body LIKE ? ESCAPE '\\'"]
        params: list[Any] = [f"%{escaped}%"]

        if conversation_id is not None:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        if is_multi_party is not None:
            clauses.append("is_multi_party = ?")
            params.append(int(is_multi_party))
        if is_outbound is not None:
            clauses.append("is_outbound = ?")
            params.append(int(is_outbound))
        if since is not None:
            clauses.append("sent_at >= ?")
            params.append(to_timestamp(since))
        if until is not None:
            clauses.append("sent_at <= ?")
            params.append(to_timestamp(until))

        sql = (
            f"SELECT * FROM messages WHERE {' AND '.join(clauses)} "
            "ORDER BY sent_at DESC LIMIT ? OFFSET ?"
        )
        params.extend([limit, offset])

        def _search(conn: sqlite3.Connection) -> list[Message]:
            return [self._row_to_message(row) for row in conn.execute(sql, params)]

        return await self._run("search_messages", _search)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def upsert_conversation(self, record: Conversation) -> None:
        """Insert or refresh conversation metadata; rollup counters are untouched."""
        now = to_timestamp(utcnow())
        params = (
            record.conversation_id,
            record.display_name,
            int(record.is_multi_party),
            record.unread_count,
            int(record.archived),
            int(record.pinned),
            _dump(record.group_info) if record.is_multi_party else None,
            now,
            now,
        )

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO conversations (
                    conversation_id, display_name, is_multi_party, unread_count,
                    archived, pinned, group_info, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    is_multi_party = excluded.is_multi_party,
                    unread_count = excluded.unread_count,
                    archived = excluded.archived,
                    pinned = excluded.pinned,
                    group_info = COALESCE(excluded.group_info, conversations.group_info),
                    updated_at = excluded.updated_at
                """,
                params,
            )

        await self._run("upsert_conversation", _upsert)

    async def increment_rollup(
        self,
        conversation_id: str,
        sent_at: datetime,
        count: int = 1,
        first_at: datetime | None = None,
    ) -> None:
        """Bump ``total_messages`` by ``count`` in one statement.

        ``first_message_at`` is set only while unset (``first_at`` or
        ``sent_at``); ``last_message_at`` never moves backwards.
        """
        if count <= 0:
            return
        last = to_timestamp(sent_at)
        first = to_timestamp(first_at) if first_at is not None else last
        now = to_timestamp(utcnow())

        def _increment(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO conversations (
                    conversation_id, display_name, total_messages,
                    first_message_at, last_message_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    total_messages = conversations.total_messages + excluded.total_messages,
                    first_message_at = COALESCE(
                        conversations.first_message_at, excluded.first_message_at
                    ),
                    last_message_at = MAX(
                        COALESCE(conversations.last_message_at, excluded.last_message_at),
                        excluded.last_message_at
                    ),
                    updated_at = excluded.updated_at
                """,
                (conversation_id, conversation_id, count, first, last, now, now),
            )

        await self._run("increment_rollup", _increment)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        def _get(conn: sqlite3.Connection) -> Conversation | None:
            row = conn.execute(
                "SELECT * FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            return self._row_to_conversation(row) if row else None

        return await self._run("get_conversation", _get)

    async def list_conversations(
        self,
        *,
        is_multi_party: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Conversation]:
        """Conversations with the most recent activity first."""
        where = ""
        params: list[Any] = []
        if is_multi_party is not None:
            where = "WHERE is_multi_party = ?"
            params.append(int(is_multi_party))
        params.extend([limit, offset])

        def _list(conn: sqlite3.Connection) -> list[Conversation]:
            rows = conn.execute(
                f"SELECT * FROM conversations {where} "
                "ORDER BY last_message_at IS NULL, last_message_at DESC "
                "LIMIT ? OFFSET ?",
                params,
            ).fetchall()
            return [self._row_to_conversation(row) for row in rows]

        return await self._run("list_conversations", _list)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def conversation_stats(self, conversation_id: str) -> dict[str, Any] | None:
        """Aggregate counts computed from stored messages."""
        def _stats(conn: sqlite3.Connection) -> dict[str, Any] | None:
            known = conn.execute(
                "SELECT 1 FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            if known is None:
                return None
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       MIN(sent_at) AS first_at,
                       MAX(sent_at) AS last_at,
                       COALESCE(SUM(is_outbound), 0) AS outbound,
                       COALESCE(SUM(generated_reply IS NOT NULL), 0) AS replies
                FROM messages WHERE conversation_id = ?
                """,
                (conversation_id,),
            ).fetchone()
            return {
                "total_messages": row["total"],
                "first_message_at": from_timestamp(row["first_at"]),
                "last_message_at": from_timestamp(row["last_at"]),
                "outbound_count": row["outbound"],
                "inbound_count": row["total"] - row["outbound"],
                "generated_reply_count": row["replies"],
            }

        return await self._run("conversation_stats", _stats)

    async def global_stats(self) -> dict[str, Any]:
        def _stats(conn: sqlite3.Connection) -> dict[str, Any]:
            conv = conn.execute(
                "SELECT COUNT(*) AS total, "
                "COALESCE(SUM(is_multi_party), 0) AS multi FROM conversations"
            ).fetchone()
            msg = conn.execute(
                "SELECT COUNT(*) AS total, "
                "COALESCE(SUM(generated_reply IS NOT NULL), 0) AS replies, "
                "MAX(sent_at) AS last_at FROM messages"
            ).fetchone()
            return {
                "conversations": {
                    "total": conv["total"],
                    "multi_party": conv["multi"],
                    "single_party": conv["total"] - conv["multi"],
                },
                "messages": {
                    "total": msg["total"],
                    "generated_replies": msg["replies"],
                    "last_message_at": from_timestamp(msg["last_at"]),
                },
            }

        return await self._run("global_stats", _stats)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        try:
            kind = MessageKind(row["kind"])
        except ValueError:
            kind = MessageKind.OTHER
        return Message(
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            sender=row["sender"],
            recipient=row["recipient"],
            body=row["body"],
            kind=kind,
            sent_at=from_timestamp(row["sent_at"]),
            is_outbound=bool(row["is_outbound"]),
            is_multi_party=bool(row["is_multi_party"]),
            originator_sub_id=row["originator_sub_id"],
            conversation_name=row["conversation_name"],
            has_attachment=bool(row["has_attachment"]),
            attachment=_load(row["attachment"], AttachmentDescriptor.from_dict),
            generated_reply=_load(row["generated_reply"], GeneratedReply.from_dict),
            delivered=bool(row["delivered"]),
            is_forwarded=bool(row["is_forwarded"]),
            is_status=bool(row["is_status"]),
            device_type=row["device_type"],
        )

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            conversation_id=row["conversation_id"],
            display_name=row["display_name"],
            is_multi_party=bool(row["is_multi_party"]),
            unread_count=row["unread_count"],
            archived=bool(row["archived"]),
            pinned=bool(row["pinned"]),
            group_info=_load(row["group_info"], GroupInfo.from_dict),
            rollup=Rollup(
                total_messages=row["total_messages"],
                first_message_at=from_timestamp(row["first_message_at"]),
                last_message_at=from_timestamp(row["last_message_at"]),
            ),
            updated_at=from_timestamp(row["updated_at"]),
        )
