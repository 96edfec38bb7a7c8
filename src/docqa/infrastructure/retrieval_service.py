"""Hybrid retrieval over a sqlite-vec + FTS5 chunk index.

Each embedding space has its own vector table (``vec_chunks_remote`` with
1536 dimensions, ``vec_chunks_local`` with 384) keyed by chunk id; chunk
text and the FTS5 index are shared.  Scores per chunk:

* ``similarity``     = 1 - cosine distance
* ``text_rank``      = -bm25 squashed into [0, 1)
* ``combined_score`` = 0.7 * similarity + 0.3 * text_rank

A chunk is a candidate when its similarity clears the threshold or it
matches the lexical query.  Each requested document contributes at most
``limit`` chunks; the merged list is ordered by combined score.
"""

from __future__ import annotations

import asyncio
import re
import sqlite3
import threading
from pathlib import Path

import sqlite_vec
from loguru import logger
from sqlite_vec import serialize_float32

from docqa.domain.models import EmbeddingSpace, RetrievedChunk

VECTOR_WEIGHT = 0.7
TEXT_WEIGHT = 0.3
SIMILARITY_THRESHOLD = 0.2

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def fts_query(text: str) -> str | None:
    """Turn free text into a safe FTS5 OR-query of quoted terms."""
    tokens = [t for t in _TOKEN_RE.findall(text.lower()) if len(t) > 2]
    if not tokens:
        return None
    return " OR ".join(f'"{t}"' for t in dict.fromkeys(tokens))


def normalize_bm25(score: float) -> float:
    """FTS5 bm25() is negative with better matches lower; map to [0, 1)."""
    positive = max(-score, 0.0)
    return positive / (1.0 + positive)


class HybridRetrievalService:
    """Vector + lexical ranking of document chunks, one vector table per space."""

    def __init__(self, db_path: Path, *, threshold: float = SIMILARITY_THRESHOLD) -> None:
        self.db_path = db_path
        self.threshold = threshold
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Connect to the SQLite database and load the vector extension."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.enable_load_extension(True)
        sqlite_vec.load(self.conn)
        self.conn.enable_load_extension(False)
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    # ------------------------------------------------------------------
    # Index management (used by seeding scripts and tests)
    # ------------------------------------------------------------------

    def create_tables(self) -> None:
        if not self.conn:
            raise RuntimeError("Not connected")
        with self._lock:
            self.conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY,
                    document_slug TEXT NOT NULL,
                    document_name TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    content TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_chunks_document_slug ON chunks(document_slug);
                CREATE VIRTUAL TABLE IF NOT EXISTS vec_chunks_remote USING vec0(
                    chunk_id INTEGER PRIMARY KEY,
                    embedding FLOAT[{EmbeddingSpace.REMOTE.dimensions}]
                );
                CREATE VIRTUAL TABLE IF NOT EXISTS vec_chunks_local USING vec0(
                    chunk_id INTEGER PRIMARY KEY,
                    embedding FLOAT[{EmbeddingSpace.LOCAL.dimensions}]
                );
                CREATE VIRTUAL TABLE IF NOT EXISTS fts_chunks USING fts5(
                    content,
                    content='chunks',
                    content_rowid='id',
                    tokenize='porter unicode61'
                );
                """
            )
            self.conn.commit()

    def add_chunk(
        self,
        document_slug: str,
        document_name: str,
        chunk_index: int,
        content: str,
        embeddings: dict[EmbeddingSpace, list[float]],
    ) -> int:
        """Insert one chunk with its vector in each given space; returns the chunk id."""
        if not self.conn:
            raise RuntimeError("Not connected")
        with self._lock:
            cursor = self.conn.execute(
                "INSERT INTO chunks (document_slug, document_name, chunk_index, content) VALUES (?, ?, ?, ?)",
                (document_slug, document_name, chunk_index, content),
            )
            chunk_id = cursor.lastrowid
            self.conn.execute("INSERT INTO fts_chunks (rowid, content) VALUES (?, ?)", (chunk_id, content))
            for space, vector in embeddings.items():
                if len(vector) != space.dimensions:
                    raise ValueError(f"{space} vectors need {space.dimensions} dimensions, got {len(vector)}")
                self.conn.execute(
                    f"INSERT INTO {_vector_table(space)} (chunk_id, embedding) VALUES (?, ?)",
                    (chunk_id, serialize_float32(vector)),
                )
            self.conn.commit()
        return chunk_id

    # ------------------------------------------------------------------
    # Public search API
    # ------------------------------------------------------------------

    async def search_remote_hybrid(
        self,
        query_vector: list[float],
        query_text: str,
        document_slugs: list[str],
        limit: int,
    ) -> list[RetrievedChunk]:
        return await asyncio.to_thread(
            self.search, EmbeddingSpace.REMOTE, query_vector, query_text, document_slugs, limit
        )

    async def search_local_hybrid(
        self,
        query_vector: list[float],
        query_text: str,
        document_slugs: list[str],
        limit: int,
    ) -> list[RetrievedChunk]:
        return await asyncio.to_thread(
            self.search, EmbeddingSpace.LOCAL, query_vector, query_text, document_slugs, limit
        )

    def search(
        self,
        space: EmbeddingSpace,
        query_vector: list[float],
        query_text: str,
        document_slugs: list[str],
        limit: int,
    ) -> list[RetrievedChunk]:
        """Rank chunks of *document_slugs* in *space*; at most *limit* per document."""
        if not self.conn:
            raise RuntimeError("Not connected")

        results: list[RetrievedChunk] = []
        with self._lock:
            for slug in document_slugs:
                text_ranks = self._text_ranks(query_text, slug)
                results.extend(self._rank_document(space, query_vector, slug, text_ranks, limit))

        results.sort(key=lambda c: c.combined_score, reverse=True)
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _text_ranks(self, query_text: str, slug: str) -> dict[int, float]:
        assert self.conn
        match = fts_query(query_text)
        if match is None:
            return {}
        try:
            rows = self.conn.execute(
                """
                SELECT fts_chunks.rowid AS chunk_id, bm25(fts_chunks) AS bm25_score
                FROM fts_chunks
                JOIN chunks c ON c.id = fts_chunks.rowid
                WHERE fts_chunks MATCH ? AND c.document_slug = ?
                """,
                (match, slug),
            ).fetchall()
        except sqlite3.OperationalError as exc:
            # Lexical scoring is best effort; vector similarity still ranks.
            logger.warning("FTS query failed for '{}': {}", match, exc)
            return {}
        return {row["chunk_id"]: normalize_bm25(row["bm25_score"]) for row in rows}

    def _rank_document(
        self,
        space: EmbeddingSpace,
        query_vector: list[float],
        slug: str,
        text_ranks: dict[int, float],
        limit: int,
    ) -> list[RetrievedChunk]:
        assert self.conn
        rows = self.conn.execute(
            f"""
            SELECT c.id, c.document_slug, c.document_name, c.chunk_index, c.content,
                   vec_distance_cosine(v.embedding, ?) AS distance
            FROM chunks c
            JOIN {_vector_table(space)} v ON v.chunk_id = c.id
            WHERE c.document_slug = ?
            """,
            (serialize_float32(query_vector), slug),
        ).fetchall()

        ranked: list[RetrievedChunk] = []
        for row in rows:
            similarity = 1.0 - row["distance"]
            text_rank = text_ranks.get(row["id"], 0.0)
            if similarity <= self.threshold and row["id"] not in text_ranks:
                continue
            ranked.append(
                RetrievedChunk(
                    document_slug=row["document_slug"],
                    document_name=row["document_name"],
                    chunk_index=row["chunk_index"],
                    similarity=similarity,
                    text_rank=text_rank,
                    combined_score=VECTOR_WEIGHT * similarity + TEXT_WEIGHT * text_rank,
                    content=row["content"],
                )
            )
        ranked.sort(key=lambda c: c.combined_score, reverse=True)
        return ranked[:limit]


def _vector_table(space: EmbeddingSpace) -> str:
    return "vec_chunks_remote" if space is EmbeddingSpace.REMOTE else "vec_chunks_local"
