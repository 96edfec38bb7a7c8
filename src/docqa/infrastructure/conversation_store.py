"""Conversation log persistence.

Stores one row per exchange in a dedicated SQLite file, separate from the
registry and the chunk index so each can be reset independently.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path

from loguru import logger

from docqa.application.exceptions import ShareTokenCollision
from docqa.domain.models import Backend, ConversationRecord

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    question TEXT NOT NULL,
    answer TEXT NOT NULL DEFAULT '',
    backend TEXT NOT NULL,
    response_time_ms INTEGER NOT NULL DEFAULT 0,
    document_slugs TEXT NOT NULL DEFAULT '[]',
    document_ids TEXT NOT NULL DEFAULT '[]',
    document_name TEXT,
    chunks_used INTEGER NOT NULL DEFAULT 0,
    retrieval_time_ms INTEGER NOT NULL DEFAULT 0,
    banned BOOLEAN NOT NULL DEFAULT 0,
    ban_reason TEXT,
    share_token TEXT UNIQUE,
    user_id TEXT,
    error TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_conversations_session_id ON conversations(session_id);
"""

_COLUMNS = (
    "id, session_id, question, answer, backend, response_time_ms, document_slugs, "
    "document_ids, document_name, chunks_used, retrieval_time_ms, banned, ban_reason, "
    "share_token, user_id, error, metadata, created_at"
)


def _is_share_token_conflict(exc: sqlite3.IntegrityError) -> bool:
    return "share_token" in str(exc)


def _row_to_record(row: sqlite3.Row) -> ConversationRecord:
    return ConversationRecord(
        id=row["id"],
        session_id=row["session_id"],
        question=row["question"],
        answer=row["answer"],
        backend=Backend(row["backend"]),
        response_time_ms=row["response_time_ms"],
        document_slugs=json.loads(row["document_slugs"] or "[]"),
        document_ids=json.loads(row["document_ids"] or "[]"),
        document_name=row["document_name"] or "",
        chunks_used=row["chunks_used"],
        retrieval_time_ms=row["retrieval_time_ms"],
        banned=bool(row["banned"]),
        ban_reason=row["ban_reason"],
        share_token=row["share_token"],
        user_id=row["user_id"],
        error=row["error"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=row["created_at"] or "",
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SQLiteConversationStore:
    """CRUD for the conversation log stored in a dedicated SQLite file."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open (or create) the database and ensure the schema exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(_SCHEMA_SQL)
        self.conn.commit()
        logger.info("Conversation DB ready at {}", self.db_path)

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def insert(self, record: ConversationRecord) -> str:
        return await asyncio.to_thread(self.insert_sync, record)

    async def get(self, conversation_id: str) -> ConversationRecord | None:
        return await asyncio.to_thread(self._get_one, "id", conversation_id)

    async def get_by_share_token(self, share_token: str) -> ConversationRecord | None:
        return await asyncio.to_thread(self._get_one, "share_token", share_token)

    async def set_share_token(self, conversation_id: str, share_token: str) -> bool:
        return await asyncio.to_thread(self.set_share_token_sync, conversation_id, share_token)

    async def count_for_session(self, session_id: str) -> int:
        return await asyncio.to_thread(self.count_for_session_sync, session_id)

    # ------------------------------------------------------------------
    # Sync implementation
    # ------------------------------------------------------------------

    def insert_sync(self, record: ConversationRecord) -> str:
        """Insert *record* and return its id.

        Raises:
            ShareTokenCollision: The record's share token is already in use.
        """
        assert self.conn
        params = (
            record.id,
            record.session_id,
            record.question,
            record.answer,
            record.backend.value,
            record.response_time_ms,
            json.dumps(record.document_slugs),
            json.dumps(record.document_ids),
            record.document_name,
            record.chunks_used,
            record.retrieval_time_ms,
            int(record.banned),
            record.ban_reason,
            record.share_token,
            record.user_id,
            record.error,
            json.dumps(record.metadata, default=str),
        )
        with self._lock:
            try:
                self.conn.execute(
                    f"INSERT INTO conversations ({_COLUMNS.rsplit(', created_at', 1)[0]}) "
                    f"VALUES ({','.join('?' for _ in params)})",
                    params,
                )
                self.conn.commit()
            except sqlite3.IntegrityError as exc:
                self.conn.rollback()
                if _is_share_token_conflict(exc):
                    raise ShareTokenCollision(str(exc)) from exc
                raise
        return record.id

    def _get_one(self, column: str, value: str) -> ConversationRecord | None:
        assert self.conn
        with self._lock:
            row = self.conn.execute(
                f"SELECT {_COLUMNS} FROM conversations WHERE {column} = ?", (value,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def set_share_token_sync(self, conversation_id: str, share_token: str) -> bool:
        """Set the share token only where none exists yet.

        Returns False when the record is missing or already has a token.

        Raises:
            ShareTokenCollision: Another record already holds *share_token*.
        """
        assert self.conn
        with self._lock:
            try:
                cursor = self.conn.execute(
                    "UPDATE conversations SET share_token = ? WHERE id = ? AND share_token IS NULL",
                    (share_token, conversation_id),
                )
                self.conn.commit()
            except sqlite3.IntegrityError as exc:
                self.conn.rollback()
                raise ShareTokenCollision(str(exc)) from exc
        return cursor.rowcount > 0

    def count_for_session_sync(self, session_id: str) -> int:
        assert self.conn
        with self._lock:
            (count,) = self.conn.execute(
                "SELECT COUNT(*) FROM conversations WHERE session_id = ?", (session_id,)
            ).fetchone()
        return count
