"""Domain service interfaces (ports).

These protocols define the contracts that infrastructure implementations
must satisfy.  The application layer depends on these abstractions,
not on concrete classes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from docqa.domain.models import (
    ChatMessage,
    ConversationRecord,
    DocumentOwnerRow,
    DocumentRef,
    RetrievedChunk,
)

# ---------------------------------------------------------------------------
# Document registry
# ---------------------------------------------------------------------------


@runtime_checkable
class IDocumentRegistry(Protocol):
    """Single source of truth for documents, owners, and access grants.

    Implementations: SQLiteDocumentRegistry.
    """

    async def get_documents(self, slugs: list[str]) -> dict[str, DocumentRef]: ...

    async def get_document(self, slug: str) -> DocumentRef | None: ...

    async def get_owner_row(self, slug: str) -> DocumentOwnerRow | None: ...

    async def has_grant(self, user_id: str, document_id: str) -> bool: ...


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


@runtime_checkable
class IHybridRetrievalService(Protocol):
    """Opaque hybrid (vector + lexical) ranking over indexed chunks.

    Implementations: HybridRetrievalService (sqlite-vec + FTS5).
    """

    async def search_remote_hybrid(
        self,
        query_vector: list[float],
        query_text: str,
        document_slugs: list[str],
        limit: int,
    ) -> list[RetrievedChunk]: ...

    async def search_local_hybrid(
        self,
        query_vector: list[float],
        query_text: str,
        document_slugs: list[str],
        limit: int,
    ) -> list[RetrievedChunk]: ...


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------


@runtime_checkable
class IEmbedder(Protocol):
    """Turns query text into a vector within one embedding space."""

    async def embed(self, text: str) -> list[float]: ...

    @property
    def dimension(self) -> int: ...


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@dataclass
class GenerationRequest:
    """Everything a backend needs to produce one grounded answer."""

    message: str
    history: list[ChatMessage]
    document_slugs: list[str]
    document_titles: list[str]
    chunks: list[RetrievedChunk]
    model_name: str
    extra: dict = field(default_factory=dict)


@runtime_checkable
class IGenerationBackend(Protocol):
    """A concrete model invocation, buffered or incremental."""

    async def generate(self, request: GenerationRequest) -> str: ...

    def stream(self, request: GenerationRequest) -> AsyncIterator[str]: ...


# ---------------------------------------------------------------------------
# Conversation log
# ---------------------------------------------------------------------------


@runtime_checkable
class IConversationStore(Protocol):
    """Durable conversation log.

    Implementations: SQLiteConversationStore.
    """

    async def insert(self, record: ConversationRecord) -> str: ...

    async def get(self, conversation_id: str) -> ConversationRecord | None: ...

    async def get_by_share_token(self, share_token: str) -> ConversationRecord | None: ...

    async def set_share_token(self, conversation_id: str, share_token: str) -> bool:
        """Set the token if the record has none; False when nothing was updated."""
        ...

    async def count_for_session(self, session_id: str) -> int: ...
