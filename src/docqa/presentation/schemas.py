"""HTTP request/response schemas (Pydantic models) for the REST API.

Wire names follow the public API (``sessionId``, ``actualModel``, ...);
Python attributes stay snake_case and are mapped through aliases.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from docqa.domain.models import ChatMessage


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatRequest(_WireModel):
    """Request body for POST /chat and POST /chat/stream.

    The caller identity comes from the ``Authorization`` header and the
    embedding space from the ``embedding`` query parameter.
    """

    message: str | None = Field(default=None, description="The user's question")
    history: list[ChatMessage] = Field(default_factory=list, description="Prior turns, oldest first")
    model: str | None = Field(default=None, description="Requested backend: general, fast, reasoning")
    doc: str | None = Field(default=None, description="Document slug(s), joined by '+' or whitespace")
    session_id: str | None = Field(default=None, alias="sessionId")
    passcode: str | None = Field(default=None, description="Passcode for passcode-protected documents")


class ChunkSimilarity(_WireModel):
    index: int
    similarity: float
    source: str


class ChatResponseMetadata(_WireModel):
    document: str
    document_slugs: list[str] = Field(alias="documentSlugs")
    document_title: str = Field(alias="documentTitle")
    is_multi_document: bool = Field(alias="isMultiDocument")
    response_time: int = Field(alias="responseTime")
    retrieval_method: str = Field(alias="retrievalMethod")
    chunks_used: int = Field(alias="chunksUsed")
    retrieval_time: int = Field(alias="retrievalTime")
    embedding_type: str
    embedding_dimensions: int
    chunk_similarities: list[ChunkSimilarity] = Field(alias="chunkSimilarities")


class ChatResponse(_WireModel):
    """Response body from POST /chat."""

    response: str
    requested_model: str = Field(alias="requestedModel")
    model: str = Field(description="Effective backend after owner/document overrides")
    actual_model: str = Field(alias="actualModel")
    session_id: str = Field(alias="sessionId")
    conversation_id: str | None = Field(alias="conversationId")
    metadata: ChatResponseMetadata


# ---------------------------------------------------------------------------
# Sharing and moderation
# ---------------------------------------------------------------------------


class ShareRequest(_WireModel):
    conversation_id: str | None = Field(default=None, alias="conversationId")


class ShareResponse(_WireModel):
    conversation_id: str = Field(alias="conversationId")
    share_token: str = Field(alias="shareToken")


class SharedConversation(_WireModel):
    id: str
    session_id: str = Field(alias="sessionId")
    question: str
    response: str
    model: str
    created_at: str = Field(alias="createdAt")
    document_name: str = Field(alias="documentName")
    document_ids: list[str] = Field(alias="documentIds")
    metadata: dict


class SharedConversationResponse(_WireModel):
    conversation: SharedConversation


class BannedStatusResponse(_WireModel):
    conversation_id: str = Field(alias="conversationId")
    banned: bool
    ban_reason: str | None = Field(alias="banReason")
    share_token: str | None = Field(alias="shareToken")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(_WireModel):
    status: str
    version: str
    rate_limiter: dict = Field(alias="rateLimiter")
    embedding_cache: dict = Field(alias="embeddingCache")
    pending_logs: int = Field(alias="pendingLogs")
