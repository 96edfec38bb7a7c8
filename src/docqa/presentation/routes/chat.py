"""Chat routes: health, buffered chat, and the streamed event feed."""

from __future__ import annotations

import json

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from docqa import __version__
from docqa.application.orchestrator import ChatOrchestrator, ChatRequest as PipelineRequest, ChatResult
from docqa.presentation.schemas import (
    ChatRequest,
    ChatResponse,
    ChatResponseMetadata,
    ChunkSimilarity,
    HealthResponse,
)

router = APIRouter(tags=["chat"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_pipeline_request(body: ChatRequest, raw_request: Request, embedding: str | None) -> PipelineRequest:
    return PipelineRequest(
        message=body.message,
        history=body.history,
        model=body.model,
        doc=body.doc,
        session_id=body.session_id,
        passcode=body.passcode,
        embedding=embedding,
        authorization=raw_request.headers.get("Authorization"),
    )


def _to_response(result: ChatResult) -> ChatResponse:
    return ChatResponse(
        response=result.answer,
        requested_model=result.requested_backend.value,
        model=result.effective_backend.value,
        actual_model=result.actual_model,
        session_id=result.session_id,
        conversation_id=result.conversation_id,
        metadata=ChatResponseMetadata(
            document=" + ".join(result.document_files),
            document_slugs=result.document_slugs,
            document_title=" + ".join(result.document_titles) or "Unknown",
            is_multi_document=result.multi_document,
            response_time=result.response_time_ms,
            retrieval_method="rag-multi" if result.multi_document else "rag",
            chunks_used=result.chunks_used,
            retrieval_time=result.retrieval_time_ms,
            embedding_type=result.space.value,
            embedding_dimensions=result.space.dimensions,
            chunk_similarities=[
                ChunkSimilarity(index=c.chunk_index, similarity=c.similarity, source=c.document_slug)
                for c in result.chunks
            ],
        ),
    )


def sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse)
async def health(raw_request: Request):
    """Liveness check with rate-limiter and embedding-cache statistics."""
    state = raw_request.app.state
    return HealthResponse(
        status="ok",
        version=__version__,
        rate_limiter=state.rate_limiter.stats(),
        embedding_cache=state.embedding_cache.stats(),
        pending_logs=state.conversation_logger.pending,
    )


# ---------------------------------------------------------------------------
# Chat (buffered)
# ---------------------------------------------------------------------------


@router.post("/chat", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    raw_request: Request,
    embedding: str | None = Query(default=None, description="Embedding space: remote (default) or local"),
):
    """Answer a question against one or more documents (non-streaming).

    The conversation is logged in the background; ``conversationId`` is
    assigned up front and becomes readable once that write lands.
    """
    orchestrator: ChatOrchestrator = raw_request.app.state.orchestrator
    result = await orchestrator.execute(_to_pipeline_request(body, raw_request, embedding))
    return _to_response(result)


# ---------------------------------------------------------------------------
# Chat (streamed, server-sent events)
# ---------------------------------------------------------------------------


@router.post("/chat/stream")
async def chat_stream(
    body: ChatRequest,
    raw_request: Request,
    embedding: str | None = Query(default=None, description="Embedding space: remote (default) or local"),
):
    """Answer a question as a server-sent event feed.

    Events (``data: {json}\\n\\n``):
    - ``{"type": "content", "chunk": "..."}`` - answer fragments as produced
    - ``{"type": "done", "metadata": {...}}`` - terminal, carries ``conversationId`` and ``shareToken``
    - ``{"type": "error", "error": "...", ...}`` - terminal, with remediation hints
    """
    orchestrator: ChatOrchestrator = raw_request.app.state.orchestrator
    request = _to_pipeline_request(body, raw_request, embedding)

    async def event_generator():
        events = orchestrator.stream(request)
        try:
            async for event in events:
                yield sse(event)
        finally:
            await events.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )
