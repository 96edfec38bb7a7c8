"""Chat orchestration: buffered and streamed request shapes.

This module sequences the pipeline stages and has **no dependency on
FastAPI**; any transport can drive it.  Stage order:

    session id -> rate limit -> request validation -> moderation
    -> conversation quota -> identity -> document validation -> access
    -> owner context -> backend override -> embedding -> retrieval
    -> generation -> conversation logging

Every stage before embedding terminates the request without touching an
external model.  From embedding onwards a failure still produces a logged
conversation record with ``error`` set.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field

from loguru import logger

from docqa.application import validation
from docqa.application.access import AccessResolver
from docqa.application.conversation_logger import ConversationLogger, Exchange
from docqa.application.embedding_cache import EmbeddingCache
from docqa.application.exceptions import (
    ChatPipelineError,
    ConversationQuotaError,
    EmbeddingError,
    LoggingError,
    RateLimitError,
)
from docqa.application.generation import GenerationDispatcher
from docqa.application.model_override import decide_backend
from docqa.application.moderation import ModerationGate
from docqa.application.owner_context import OwnerContextResolver
from docqa.application.rate_limiter import RateLimiter
from docqa.application.retrieval import RetrievalGateway
from docqa.config import Settings
from docqa.domain.models import (
    Backend,
    ChatMessage,
    ConversationRecord,
    EmbeddingSpace,
    RetrievedChunk,
)
from docqa.domain.protocols import (
    GenerationRequest,
    IConversationStore,
    IDocumentRegistry,
    IEmbedder,
)
from docqa.logging_config import preview, short_id

IdentityFn = Callable[[str | None], str | None]


# ---------------------------------------------------------------------------
# Request / result containers
# ---------------------------------------------------------------------------


@dataclass
class ChatRequest:
    """Transport-neutral chat request (wire names resolved by the caller)."""

    message: str | None
    history: list[ChatMessage] = field(default_factory=list)
    model: str | None = None
    doc: str | None = None
    session_id: str | None = None
    passcode: str | None = None
    embedding: str | None = None
    authorization: str | None = None


@dataclass
class ChatResult:
    """Outcome of a buffered chat turn, with metadata for the response body."""

    answer: str
    requested_backend: Backend
    effective_backend: Backend
    actual_model: str
    session_id: str
    conversation_id: str | None
    document_slugs: list[str]
    document_titles: list[str]
    document_files: list[str]
    response_time_ms: int
    chunks_used: int
    retrieval_time_ms: int
    space: EmbeddingSpace
    chunks: list[RetrievedChunk] = field(default_factory=list)

    @property
    def multi_document(self) -> bool:
        return len(self.document_slugs) > 1


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ChatOrchestrator:
    """Sequences the pipeline components for one chat request.

    Parameters
    ----------
    settings:
        Limits, defaults, and stage deadlines.
    embedders:
        One embedder per embedding space; a space without an embedder fails
        at the embedding stage.
    identity:
        Maps an ``Authorization`` header to a user id (``None`` = anonymous).
    """

    def __init__(
        self,
        *,
        settings: Settings,
        rate_limiter: RateLimiter,
        registry: IDocumentRegistry,
        conversations: IConversationStore,
        access: AccessResolver,
        owner_context: OwnerContextResolver,
        moderation: ModerationGate,
        embedding_cache: EmbeddingCache,
        embedders: Mapping[EmbeddingSpace, IEmbedder],
        retrieval: RetrievalGateway,
        dispatcher: GenerationDispatcher,
        conversation_logger: ConversationLogger,
        identity: IdentityFn,
    ) -> None:
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.registry = registry
        self.conversations = conversations
        self.access = access
        self.owner_context = owner_context
        self.moderation = moderation
        self.embedding_cache = embedding_cache
        self.embedders = dict(embedders)
        self.retrieval = retrieval
        self.dispatcher = dispatcher
        self.conversation_logger = conversation_logger
        self.identity = identity

    # ------------------------------------------------------------------
    # Public API: buffered
    # ------------------------------------------------------------------

    async def execute(self, request: ChatRequest) -> ChatResult:
        """Run one chat turn and return the complete answer.

        The conversation record is written by a detached task; the result
        carries the pre-assigned conversation id without waiting for it.

        Raises:
            ChatPipelineError: A typed failure from any stage.
        """
        exchange = await self.prepare(request, streaming=False)
        try:
            chunks = await self._ground(exchange)
            started = time.perf_counter()
            try:
                exchange.answer = await self.dispatcher.generate(
                    exchange.effective_backend, self._generation_request(exchange, request, chunks)
                )
            finally:
                exchange.timings.generation_ms = _ms_since(started)
        except Exception as exc:
            exchange.error = _error_text(exc)
            self._finish(exchange)
            self.conversation_logger.log_detached(exchange)
            raise

        self._finish(exchange)
        self.conversation_logger.log_detached(exchange)

        logger.info(
            "Chat completed | session={} took={}ms chunks={} model={}",
            short_id(exchange.session_id),
            exchange.timings.total_ms,
            exchange.chunks_used,
            self.dispatcher.actual_model(exchange.effective_backend),
        )
        return self._result(exchange)

    # ------------------------------------------------------------------
    # Public API: streamed
    # ------------------------------------------------------------------

    async def stream(self, request: ChatRequest) -> AsyncIterator[dict]:
        """Run one chat turn as an event feed.

        Yields ``{"type": "content", "chunk": ...}`` events while the answer
        is generated, then exactly one terminal ``done`` or ``error`` event.
        The conversation record is written before ``done`` so that event can
        carry the conversation id and share token.
        """
        try:
            exchange = await self.prepare(request, streaming=True)
        except ChatPipelineError as exc:
            yield error_event(exc)
            return
        except Exception as exc:
            logger.exception("Unexpected error before streaming")
            yield unexpected_error_event(exc)
            return

        parts: list[str] = []
        try:
            chunks = await self._ground(exchange)
            started = time.perf_counter()
            fragments = self.dispatcher.stream(
                exchange.effective_backend, self._generation_request(exchange, request, chunks)
            )
            try:
                async for fragment in fragments:
                    parts.append(fragment)
                    yield {"type": "content", "chunk": fragment}
            finally:
                exchange.timings.generation_ms = _ms_since(started)
                await fragments.aclose()
        except Exception as exc:
            exchange.answer = "".join(parts)
            exchange.error = _error_text(exc)
            self._finish(exchange)
            await self._log_awaited(exchange)
            if isinstance(exc, ChatPipelineError):
                yield error_event(exc)
            else:
                logger.exception("Unexpected error while streaming")
                yield unexpected_error_event(exc)
            return
        except asyncio.CancelledError:
            logger.info("Stream cancelled by client | session={}", short_id(exchange.session_id))
            raise

        exchange.answer = "".join(parts)
        self._finish(exchange)
        record = await self._log_awaited(exchange)

        logger.info(
            "Stream completed | session={} took={}ms chunks={} model={}",
            short_id(exchange.session_id),
            exchange.timings.total_ms,
            exchange.chunks_used,
            self.dispatcher.actual_model(exchange.effective_backend),
        )
        yield {
            "type": "done",
            "metadata": {
                "responseTime": exchange.timings.total_ms,
                "chunksUsed": exchange.chunks_used,
                "retrievalTime": exchange.retrieval_ms,
                "model": self.dispatcher.actual_model(exchange.effective_backend),
                "backend": exchange.effective_backend.value,
                "sessionId": exchange.session_id,
                "conversationId": record.id if record else None,
                "shareToken": record.share_token if record else None,
            },
        }

    # ------------------------------------------------------------------
    # Shared stages
    # ------------------------------------------------------------------

    async def prepare(self, request: ChatRequest, *, streaming: bool) -> Exchange:
        """Run every stage that precedes external model calls."""
        s = self.settings
        session_id = validation.normalize_session_id(request.session_id)

        decision = self.rate_limiter.check(session_id)
        if not decision.allowed:
            raise RateLimitError(
                retry_after=decision.retry_after,
                reason=decision.reason or "rate_limit",
                limit=decision.limit or 0,
                window=decision.window or "",
            )

        message = validation.validate_message(request.message, s.max_message_length)
        slugs = validation.parse_document_slugs(request.doc, s.default_document)
        validation.validate_document_count(slugs, s.max_documents)
        requested = validation.parse_backend(request.model)
        space = validation.parse_embedding_space(request.embedding)

        exchange = Exchange(
            session_id=session_id,
            question=message,
            requested_backend=requested,
            document_slugs=slugs,
            history_length=len(request.history),
            streaming=streaming,
            space=space,
        )
        exchange.moderation = self.moderation.check(message)

        await self._check_conversation_quota(session_id)

        logger.info(
            "{} | session={} msg=\"{}\" model={} docs={}",
            "Stream" if streaming else "Chat",
            short_id(session_id),
            preview(message),
            requested,
            "+".join(slugs),
        )

        started = time.perf_counter()
        exchange.user_id = self.identity(request.authorization)
        exchange.timings.auth_ms = _ms_since(started)

        started = time.perf_counter()
        found = await self.registry.get_documents(slugs)
        exchange.documents = validation.validate_documents(slugs, found)
        await self.access.resolve(exchange.documents, exchange.user_id, request.passcode)
        exchange.owner = await self.owner_context.resolve(slugs)
        exchange.timings.registry_ms = _ms_since(started)

        exchange.override = decide_backend(requested, slugs, exchange.owner)

        if exchange.multi_document and space is not EmbeddingSpace.REMOTE:
            logger.info("Multi-document request, forcing remote embeddings")
            exchange.space = EmbeddingSpace.REMOTE
        return exchange

    async def _check_conversation_quota(self, session_id: str) -> None:
        ceiling = self.settings.max_conversation_length
        try:
            count = await self.conversations.count_for_session(session_id)
        except Exception as exc:
            logger.warning(
                "Could not count conversations for session {}, allowing: {}", short_id(session_id), exc
            )
            return
        if count >= ceiling:
            logger.info("Conversation limit reached | session={} ({}/{})", short_id(session_id), count, ceiling)
            raise ConversationQuotaError(limit=ceiling, current=count)

    async def _ground(self, exchange: Exchange) -> list[RetrievedChunk]:
        """Embed the question and retrieve chunks in the exchange's space."""
        space = exchange.space
        embedder = self.embedders.get(space)
        if embedder is None:
            raise EmbeddingError(f"No embedder configured for the {space} space")

        timeout = self.settings.embedding_timeout_seconds

        async def compute(text: str) -> list[float]:
            try:
                async with asyncio.timeout(timeout):
                    return await embedder.embed(text)
            except TimeoutError as exc:
                raise EmbeddingError(f"Embedding timed out after {timeout:g}s") from exc

        started = time.perf_counter()
        try:
            vector = await self.embedding_cache.get(exchange.question, space, compute)
        finally:
            exchange.timings.embedding_ms = _ms_since(started)

        limit = exchange.owner.chunk_limit if exchange.owner else self.settings.default_chunk_limit
        started = time.perf_counter()
        try:
            exchange.retrieval = await self.retrieval.retrieve(
                vector, exchange.question, exchange.document_slugs, limit, space
            )
        finally:
            exchange.timings.retrieval_ms = _ms_since(started)
        return exchange.retrieval.chunks

    @staticmethod
    def _generation_request(
        exchange: Exchange, request: ChatRequest, chunks: list[RetrievedChunk]
    ) -> GenerationRequest:
        return GenerationRequest(
            message=exchange.question,
            history=list(request.history),
            document_slugs=list(exchange.document_slugs),
            document_titles=[d.title for d in exchange.documents],
            chunks=chunks,
            model_name="",
        )

    def _finish(self, exchange: Exchange) -> None:
        exchange.timings.total_ms = exchange.elapsed_ms()

    async def _log_awaited(self, exchange: Exchange) -> ConversationRecord | None:
        try:
            return await self.conversation_logger.log(exchange)
        except LoggingError as exc:
            logger.error("Stream logging failed | session={}: {}", short_id(exchange.session_id), exc)
            return None

    def _result(self, exchange: Exchange) -> ChatResult:
        chunks = exchange.retrieval.chunks if exchange.retrieval else []
        return ChatResult(
            answer=exchange.answer,
            requested_backend=exchange.requested_backend,
            effective_backend=exchange.effective_backend,
            actual_model=self.dispatcher.actual_model(exchange.effective_backend),
            session_id=exchange.session_id,
            conversation_id=exchange.conversation_id,
            document_slugs=list(exchange.document_slugs),
            document_titles=[d.title for d in exchange.documents],
            document_files=[d.filename or d.slug for d in exchange.documents],
            response_time_ms=exchange.timings.total_ms,
            chunks_used=exchange.chunks_used,
            retrieval_time_ms=exchange.retrieval_ms,
            space=exchange.space,
            chunks=chunks,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def error_event(exc: ChatPipelineError) -> dict:
    return {"type": "error", **exc.to_payload()}


def unexpected_error_event(exc: BaseException) -> dict:
    return {"type": "error", "error": "Failed to process chat message", "details": str(exc)}


def _ms_since(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, ChatPipelineError):
        return f"{exc.stage}: {exc.message}"
    return str(exc) or type(exc).__name__
