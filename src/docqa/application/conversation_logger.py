"""Conversation persistence and share-token issuance.

A ``ConversationRecord`` is built once per exchange, successful or not.
The moderation decision is already fixed when the record is built, so a
banned exchange never gets a share token on any path.

Two persistence modes exist on purpose:

* ``log_detached`` - the buffered flow.  The write runs as a background
  task; failures go to the log and never reach the caller.
* ``log`` - the streamed flow.  The write is awaited so the terminal event
  can carry the conversation id and share token.
"""

from __future__ import annotations

import asyncio
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger

from docqa.application.exceptions import (
    LoggingError,
    ModerationError,
    NotFoundError,
    ShareTokenCollision,
    ShareTokenError,
)
from docqa.domain.models import (
    Backend,
    ConversationRecord,
    DocumentRef,
    EmbeddingSpace,
    ModelOverrideDecision,
    ModerationDecision,
    OwnerContext,
    RetrievalResult,
    StageTimings,
)
from docqa.domain.protocols import IConversationStore
from docqa.logging_config import short_id


# ---------------------------------------------------------------------------
# Exchange state
# ---------------------------------------------------------------------------


@dataclass
class Exchange:
    """Everything the pipeline learned about one request, filled in stage by stage."""

    session_id: str
    question: str
    requested_backend: Backend
    document_slugs: list[str]
    history_length: int = 0
    streaming: bool = False
    conversation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str | None = None
    moderation: ModerationDecision = field(default_factory=lambda: ModerationDecision(False))
    documents: list[DocumentRef] = field(default_factory=list)
    space: EmbeddingSpace = EmbeddingSpace.REMOTE
    owner: OwnerContext | None = None
    override: ModelOverrideDecision | None = None
    retrieval: RetrievalResult | None = None
    answer: str = ""
    error: str | None = None
    timings: StageTimings = field(default_factory=StageTimings)
    started: float = field(default_factory=time.perf_counter)

    @property
    def effective_backend(self) -> Backend:
        return self.override.effective if self.override else self.requested_backend

    @property
    def multi_document(self) -> bool:
        return len(self.document_slugs) > 1

    @property
    def chunks_used(self) -> int:
        return len(self.retrieval.chunks) if self.retrieval else 0

    @property
    def retrieval_ms(self) -> int:
        return self.retrieval.elapsed_ms if self.retrieval else 0

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


# ---------------------------------------------------------------------------
# Share tokens
# ---------------------------------------------------------------------------


class ShareTokenIssuer:
    """Generates share tokens and issues them for existing records."""

    def __init__(self, store: IConversationStore, token_bytes: int = 24, max_attempts: int = 5) -> None:
        self.store = store
        self.token_bytes = token_bytes
        self.max_attempts = max_attempts

    def new_token(self) -> str:
        return secrets.token_urlsafe(self.token_bytes)

    async def issue_for_existing(self, conversation_id: str) -> str:
        """Return the record's share token, creating it on first request.

        Raises:
            NotFoundError: No such conversation.
            ModerationError: The conversation is banned.
            ShareTokenError: Every generated token collided.
        """
        record = await self.store.get(conversation_id)
        if record is None:
            raise NotFoundError("Conversation not found")
        if record.banned:
            raise ModerationError(record.ban_reason)
        if record.share_token:
            return record.share_token

        for attempt in range(1, self.max_attempts + 1):
            token = self.new_token()
            try:
                updated = await self.store.set_share_token(conversation_id, token)
            except ShareTokenCollision:
                logger.warning("Share token collision (attempt {}/{})", attempt, self.max_attempts)
                continue
            if updated:
                logger.info("Share token issued | conversation={}", short_id(conversation_id))
                return token

            # A concurrent request issued first; hand out its token.
            record = await self.store.get(conversation_id)
            if record is None:
                raise NotFoundError("Conversation not found")
            if record.share_token:
                return record.share_token

        raise ShareTokenError(f"Could not generate a unique share token after {self.max_attempts} attempts")


# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------


class ConversationLogger:
    """Builds conversation records and writes them to the store."""

    def __init__(
        self,
        store: IConversationStore,
        issuer: ShareTokenIssuer,
        top_n: int = 10,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.top_n = top_n
        self._tasks: set[asyncio.Task] = set()

    def build_record(self, exchange: Exchange) -> ConversationRecord:
        banned = exchange.moderation.should_ban
        if banned:
            logger.info(
                "Banned exchange, no share token | session={} reason={}",
                short_id(exchange.session_id),
                exchange.moderation.reason,
            )

        return ConversationRecord(
            id=exchange.conversation_id,
            session_id=exchange.session_id,
            question=exchange.question,
            answer=exchange.answer,
            backend=exchange.effective_backend,
            response_time_ms=exchange.timings.total_ms or exchange.elapsed_ms(),
            document_slugs=list(exchange.document_slugs),
            document_ids=[d.id for d in exchange.documents],
            document_name=" + ".join(d.filename or d.title for d in exchange.documents)
            or "+".join(exchange.document_slugs),
            chunks_used=exchange.chunks_used,
            retrieval_time_ms=exchange.retrieval_ms,
            banned=banned,
            ban_reason=exchange.moderation.reason if banned else None,
            share_token=None if banned else self.issuer.new_token(),
            user_id=exchange.user_id,
            error=exchange.error,
            metadata=self.build_metadata(exchange),
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    def build_metadata(self, exchange: Exchange) -> dict:
        chunks = exchange.retrieval.top(self.top_n) if exchange.retrieval else []
        similarities = [c.similarity for c in exchange.retrieval.chunks] if exchange.retrieval else []
        owner = exchange.owner
        override = exchange.override
        timings = exchange.timings

        return {
            "history_length": exchange.history_length,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "document_slugs": list(exchange.document_slugs),
            "is_multi_document": exchange.multi_document,
            "chunk_similarities_top10": [c.similarity for c in chunks],
            "chunk_similarities_stats": {
                "count": len(similarities),
                "avg": sum(similarities) / len(similarities) if similarities else 0,
                "max": max(similarities, default=0),
                "min": min(similarities, default=0),
            },
            "chunk_sources_top10": [
                {"slug": c.document_slug, "name": c.document_name, "similarity": c.similarity}
                for c in chunks
            ],
            "embedding_type": exchange.space.value,
            "embedding_dimensions": exchange.space.dimensions,
            "owner_slug": owner.owner_slug if owner else None,
            "owner_name": owner.owner_name if owner else None,
            "chunk_limit_configured": owner.chunk_limit if owner else None,
            "chunk_limit_source": owner.chunk_limit_source if owner else "default",
            "model_override_applied": bool(override and override.applied),
            "original_model_requested": str(override.requested) if override and override.applied else None,
            "model_override_source": str(override.source) if override and override.source else None,
            "model_override_reason": override.reason if override and override.applied else None,
            "streaming": exchange.streaming,
            "timing_breakdown": {
                "auth_ms": timings.auth_ms,
                "registry_ms": timings.registry_ms,
                "embedding_ms": timings.embedding_ms,
                "retrieval_ms": timings.retrieval_ms,
                "generation_ms": timings.generation_ms,
                "logging_ms": timings.logging_ms,
                "total_ms": timings.total_ms,
            },
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def log(self, exchange: Exchange) -> ConversationRecord:
        """Build and persist the record, retrying share-token collisions.

        Raises:
            LoggingError: The store rejected the record.
        """
        start = time.perf_counter()
        record = self.build_record(exchange)
        for attempt in range(1, self.issuer.max_attempts + 1):
            try:
                await self.store.insert(record)
                break
            except ShareTokenCollision:
                logger.warning("Share token collision on insert (attempt {})", attempt)
                record.share_token = self.issuer.new_token()
            except Exception as exc:
                raise LoggingError(str(exc)) from exc
        else:
            raise LoggingError("Could not store conversation: share token collisions exhausted")

        exchange.timings.logging_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "Conversation logged | id={} session={} banned={} took={}ms",
            short_id(record.id),
            short_id(record.session_id),
            record.banned,
            exchange.timings.logging_ms,
        )
        return record

    def log_detached(self, exchange: Exchange) -> asyncio.Task:
        """Schedule ``log`` without awaiting it; errors are logged only."""
        task = asyncio.get_running_loop().create_task(
            self.log(exchange), name=f"log-conversation-{short_id(exchange.conversation_id)}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_detached_done)
        return task

    def _on_detached_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Conversation logging cancelled | task={}", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Conversation logging failed: {}", exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for detached writes still in flight (application shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
