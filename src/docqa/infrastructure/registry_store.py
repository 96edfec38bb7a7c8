"""SQLite document registry: owners, documents, and per-user grants.

The registry is the single source of truth for a document's access level,
passcode, owner, and forced-backend configuration.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import uuid
from pathlib import Path

from loguru import logger

from docqa.domain.models import AccessLevel, Backend, DocumentOwnerRow, DocumentRef

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS owners (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    default_chunk_limit INTEGER,
    forced_backend TEXT CHECK(forced_backend IN ('fast', 'reasoning')),
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    filename TEXT,
    year INTEGER,
    owner_id TEXT NOT NULL REFERENCES owners(id),
    access_level TEXT NOT NULL DEFAULT 'open'
        CHECK(access_level IN ('open', 'authenticated', 'passcode', 'restricted')),
    passcode TEXT,
    forced_backend TEXT CHECK(forced_backend IN ('fast', 'reasoning')),
    active BOOLEAN NOT NULL DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS document_grants (
    user_id TEXT NOT NULL,
    document_id TEXT NOT NULL REFERENCES documents(id),
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (user_id, document_id)
);

CREATE INDEX IF NOT EXISTS idx_documents_owner_id ON documents(owner_id);
"""

_DOCUMENT_COLUMNS = """\
d.id, d.slug, d.title, d.filename, d.year, d.access_level, d.passcode, d.active,
o.slug AS owner_slug"""


def _backend(value: str | None) -> Backend | None:
    return Backend(value) if value else None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SQLiteDocumentRegistry:
    """Registry reads for the chat pipeline plus the writes used for seeding.

    The sqlite connection is shared across worker threads; a lock
    serialises access.  Async methods run the queries off the event loop.
    """

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
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.executescript(_SCHEMA_SQL)
        self.conn.commit()
        logger.info("Document registry ready at {}", self.db_path)

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        assert self.conn
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # ------------------------------------------------------------------
    # Reads (async, used by the pipeline)
    # ------------------------------------------------------------------

    async def get_documents(self, slugs: list[str]) -> dict[str, DocumentRef]:
        return await asyncio.to_thread(self.get_documents_sync, slugs)

    async def get_document(self, slug: str) -> DocumentRef | None:
        return (await self.get_documents([slug])).get(slug)

    async def get_owner_row(self, slug: str) -> DocumentOwnerRow | None:
        return await asyncio.to_thread(self.get_owner_row_sync, slug)

    async def has_grant(self, user_id: str, document_id: str) -> bool:
        return await asyncio.to_thread(self.has_grant_sync, user_id, document_id)

    # ------------------------------------------------------------------
    # Reads (sync)
    # ------------------------------------------------------------------

    def get_documents_sync(self, slugs: list[str]) -> dict[str, DocumentRef]:
        if not slugs:
            return {}
        placeholders = ",".join("?" for _ in slugs)
        rows = self._fetchall(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents d "
            f"JOIN owners o ON o.id = d.owner_id WHERE d.slug IN ({placeholders})",
            tuple(slugs),
        )
        return {
            row["slug"]: DocumentRef(
                id=row["id"],
                slug=row["slug"],
                title=row["title"],
                owner_slug=row["owner_slug"],
                access_level=AccessLevel(row["access_level"]),
                passcode=row["passcode"],
                active=bool(row["active"]),
                filename=row["filename"],
                year=row["year"],
            )
            for row in rows
        }

    def get_owner_row_sync(self, slug: str) -> DocumentOwnerRow | None:
        rows = self._fetchall(
            """SELECT d.slug, d.forced_backend AS document_forced_backend,
                      o.slug AS owner_slug, o.name AS owner_name,
                      o.default_chunk_limit, o.forced_backend AS owner_forced_backend
               FROM documents d JOIN owners o ON o.id = d.owner_id
               WHERE d.slug = ?""",
            (slug,),
        )
        if not rows:
            return None
        row = rows[0]
        return DocumentOwnerRow(
            slug=row["slug"],
            owner_slug=row["owner_slug"],
            owner_name=row["owner_name"],
            owner_chunk_limit=row["default_chunk_limit"],
            owner_forced_backend=_backend(row["owner_forced_backend"]),
            document_forced_backend=_backend(row["document_forced_backend"]),
        )

    def has_grant_sync(self, user_id: str, document_id: str) -> bool:
        rows = self._fetchall(
            "SELECT 1 FROM document_grants WHERE user_id = ? AND document_id = ?",
            (user_id, document_id),
        )
        return bool(rows)

    # ------------------------------------------------------------------
    # Writes (seeding and administration scripts)
    # ------------------------------------------------------------------

    def upsert_owner(
        self,
        slug: str,
        name: str,
        default_chunk_limit: int | None = None,
        forced_backend: str | None = None,
    ) -> str:
        """Create or update an owner by slug and return its id."""
        assert self.conn
        with self._lock:
            row = self.conn.execute("SELECT id FROM owners WHERE slug = ?", (slug,)).fetchone()
            if row:
                owner_id = row["id"]
                self.conn.execute(
                    "UPDATE owners SET name = ?, default_chunk_limit = ?, forced_backend = ? WHERE id = ?",
                    (name, default_chunk_limit, forced_backend, owner_id),
                )
            else:
                owner_id = str(uuid.uuid4())
                self.conn.execute(
                    "INSERT INTO owners (id, slug, name, default_chunk_limit, forced_backend) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (owner_id, slug, name, default_chunk_limit, forced_backend),
                )
            self.conn.commit()
        return owner_id

    def upsert_document(
        self,
        slug: str,
        title: str,
        owner_slug: str,
        *,
        access_level: str = "open",
        passcode: str | None = None,
        forced_backend: str | None = None,
        filename: str | None = None,
        year: int | None = None,
        active: bool = True,
    ) -> str:
        """Create or update a document by slug and return its id.

        Raises:
            ValueError: If *owner_slug* is not registered.
        """
        assert self.conn
        with self._lock:
            owner = self.conn.execute("SELECT id FROM owners WHERE slug = ?", (owner_slug,)).fetchone()
            if owner is None:
                raise ValueError(f"Unknown owner: {owner_slug}")

            values = (title, filename, year, owner["id"], access_level, passcode, forced_backend, int(active))
            row = self.conn.execute("SELECT id FROM documents WHERE slug = ?", (slug,)).fetchone()
            if row:
                document_id = row["id"]
                self.conn.execute(
                    """UPDATE documents SET title = ?, filename = ?, year = ?, owner_id = ?,
                           access_level = ?, passcode = ?, forced_backend = ?, active = ?
                       WHERE id = ?""",
                    (*values, document_id),
                )
            else:
                document_id = str(uuid.uuid4())
                self.conn.execute(
                    """INSERT INTO documents
                           (id, slug, title, filename, year, owner_id, access_level,
                            passcode, forced_backend, active)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (document_id, slug, *values),
                )
            self.conn.commit()
        logger.debug("Registered document {} ({}, owner={})", slug, access_level, owner_slug)
        return document_id

    def grant(self, user_id: str, document_slug: str) -> None:
        """Give *user_id* a standing grant on a document."""
        assert self.conn
        with self._lock:
            doc = self.conn.execute("SELECT id FROM documents WHERE slug = ?", (document_slug,)).fetchone()
            if doc is None:
                raise ValueError(f"Unknown document: {document_slug}")
            self.conn.execute(
                "INSERT OR IGNORE INTO document_grants (user_id, document_id) VALUES (?, ?)",
                (user_id, doc["id"]),
            )
            self.conn.commit()
