"""Domain entities and value objects.

These are the core data structures of the document Q&A domain,
independent of any infrastructure or framework concerns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------


class Backend(StrEnum):
    """Logical generation backends a caller may request."""

    GENERAL = "general"
    FAST = "fast"
    REASONING = "reasoning"

    @classmethod
    def parse(cls, value: str) -> Backend:
        """Resolve a wire identifier (including legacy aliases) to a backend.

        Raises:
            ValueError: If *value* names no known backend.
        """
        key = (value or "").strip().lower()
        if key in _BACKEND_ALIASES:
            return _BACKEND_ALIASES[key]
        return cls(key)

    @property
    def overridable(self) -> bool:
        """Only the fast/reasoning family is subject to owner/document overrides."""
        return self in (Backend.FAST, Backend.REASONING)


_BACKEND_ALIASES: dict[str, Backend] = {
    "gemini": Backend.GENERAL,
    "grok": Backend.FAST,
    "grok-reasoning": Backend.REASONING,
}


class EmbeddingSpace(StrEnum):
    """A (model, dimensionality) pairing; vectors from different spaces never mix."""

    REMOTE = "remote"
    LOCAL = "local"

    @classmethod
    def parse(cls, value: str | None) -> EmbeddingSpace:
        key = (value or "").strip().lower()
        if not key or key == "openai":
            return cls.REMOTE
        return cls(key)

    @property
    def dimensions(self) -> int:
        return 1536 if self is EmbeddingSpace.REMOTE else 384


class AccessLevel(StrEnum):
    OPEN = "open"
    AUTHENTICATED = "authenticated"
    PASSCODE = "passcode"
    RESTRICTED = "restricted"


class OverrideSource(StrEnum):
    DOCUMENT = "document"
    OWNER = "owner"
    MULTI_DOCUMENT_CONSENSUS = "multi-document-consensus"
    MULTI_DOCUMENT_REASONING = "multi-document-reasoning"


# ---------------------------------------------------------------------------
# Registry entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentRef:
    """A registered document as the orchestrator sees it."""

    id: str
    slug: str
    title: str
    owner_slug: str
    access_level: AccessLevel = AccessLevel.OPEN
    passcode: str | None = None
    active: bool = True
    filename: str | None = None
    year: int | None = None

    @property
    def has_passcode(self) -> bool:
        return bool(self.passcode and self.passcode.strip())


@dataclass(frozen=True)
class DocumentOwnerRow:
    """Owner configuration joined onto one document (one row per slug)."""

    slug: str
    owner_slug: str
    owner_name: str
    owner_chunk_limit: int | None = None
    owner_forced_backend: Backend | None = None
    document_forced_backend: Backend | None = None


@dataclass
class OwnerContext:
    """Tenant configuration resolved for the documents of one request."""

    chunk_limit: int
    chunk_limit_source: str = "default"
    owner_slug: str | None = None
    owner_name: str | None = None
    owner_forced_backend: Backend | None = None
    rows: list[DocumentOwnerRow] = field(default_factory=list)

    @property
    def single_owner(self) -> bool:
        return len({row.owner_slug for row in self.rows}) == 1

    def document_override(self, slug: str) -> Backend | None:
        for row in self.rows:
            if row.slug == slug:
                return row.document_forced_backend
        return None


@dataclass(frozen=True)
class ModelOverrideDecision:
    requested: Backend
    effective: Backend
    source: OverrideSource | None = None
    reason: str = ""

    @property
    def applied(self) -> bool:
        return self.effective is not self.requested


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


@dataclass
class RetrievedChunk:
    """A single ranked chunk returned by hybrid retrieval."""

    document_slug: str
    document_name: str
    chunk_index: int
    similarity: float
    text_rank: float
    combined_score: float
    content: str


@dataclass
class RetrievalResult:
    chunks: list[RetrievedChunk]
    space: EmbeddingSpace
    elapsed_ms: int = 0

    def top(self, n: int = 10) -> list[RetrievedChunk]:
        """The first *n* chunks in service order (never re-sorted)."""
        return self.chunks[:n]


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModerationDecision:
    should_ban: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Conversation log
# ---------------------------------------------------------------------------


@dataclass
class StageTimings:
    """Millisecond durations for each pipeline stage of one exchange."""

    auth_ms: int = 0
    registry_ms: int = 0
    embedding_ms: int = 0
    retrieval_ms: int = 0
    generation_ms: int = 0
    logging_ms: int = 0
    total_ms: int = 0


@dataclass
class ConversationRecord:
    """One persisted question/answer exchange."""

    id: str
    session_id: str
    question: str
    answer: str
    backend: Backend
    response_time_ms: int
    document_slugs: list[str]
    document_ids: list[str]
    document_name: str
    chunks_used: int
    retrieval_time_ms: int
    banned: bool
    ban_reason: str | None
    share_token: str | None
    user_id: str | None = None
    error: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: str = ""


# ---------------------------------------------------------------------------
# Shared DTO (used by both application and presentation layers)
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    """A single prior turn in the conversation."""

    role: str = Field(description="Message role: 'user' or 'assistant'")
    content: str = Field(description="Message content")
