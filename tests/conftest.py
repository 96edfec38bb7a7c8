"""Shared fixtures: in-memory collaborators and a fully wired orchestrator."""

from __future__ import annotations

from pathlib import Path

import pytest

from docqa.application.access import AccessResolver
from docqa.application.conversation_logger import ConversationLogger, ShareTokenIssuer
from docqa.application.embedding_cache import EmbeddingCache
from docqa.application.exceptions import ShareTokenCollision
from docqa.application.generation import BackendBinding, GenerationDispatcher
from docqa.application.moderation import ModerationGate
from docqa.application.orchestrator import ChatOrchestrator
from docqa.application.owner_context import OwnerContextResolver
from docqa.application.rate_limiter import RateLimiter
from docqa.application.retrieval import RetrievalGateway
from docqa.auth import IdentityResolver
from docqa.config import Settings
from docqa.domain.models import (
    AccessLevel,
    Backend,
    ConversationRecord,
    DocumentOwnerRow,
    DocumentRef,
    EmbeddingSpace,
    RetrievedChunk,
)

TEST_JWT_SECRET = "test-secret-that-is-long-enough-for-hs256"


def pytest_configure(config):
    """Set pytest-asyncio mode to auto so async test functions work without markers."""
    config.option.asyncio_mode = "auto"


def make_settings(tmp_path: Path, **overrides) -> Settings:
    """Create a Settings instance suitable for tests.

    Uses ``_env_file=None`` so a developer's real .env is never loaded.
    """
    values = dict(
        _env_file=None,
        openai_api_key="test-key",
        xai_api_key="test-key",
        gemini_api_key="test-key",
        registry_db_path=tmp_path / "registry.sqlite",
        conversations_db_path=tmp_path / "conversations.sqlite",
        chunks_db_path=tmp_path / "chunks.sqlite",
        jwt_secret=TEST_JWT_SECRET,
        observability="off",
    )
    values.update(overrides)
    return Settings(**values)


def make_chunk(slug: str, index: int, similarity: float = 0.8, content: str | None = None) -> RetrievedChunk:
    return RetrievedChunk(
        document_slug=slug,
        document_name=f"{slug}.pdf",
        chunk_index=index,
        similarity=similarity,
        text_rank=0.1,
        combined_score=0.7 * similarity + 0.03,
        content=content or f"Excerpt {index} of {slug}.",
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRegistry:
    """In-memory IDocumentRegistry."""

    def __init__(self) -> None:
        self.owners: dict[str, dict] = {}
        self.documents: dict[str, DocumentRef] = {}
        self.document_overrides: dict[str, Backend] = {}
        self.grants: set[tuple[str, str]] = set()
        self.fail_owner_lookup = False
        self.grant_lookups = 0

    def add_owner(
        self,
        slug: str,
        name: str,
        chunk_limit: int | None = None,
        forced_backend: Backend | None = None,
    ) -> None:
        self.owners[slug] = {"name": name, "chunk_limit": chunk_limit, "forced_backend": forced_backend}

    def add_document(
        self,
        slug: str,
        owner_slug: str,
        *,
        access_level: AccessLevel = AccessLevel.OPEN,
        passcode: str | None = None,
        active: bool = True,
        forced_backend: Backend | None = None,
    ) -> DocumentRef:
        doc = DocumentRef(
            id=f"doc-{slug}",
            slug=slug,
            title=f"{slug.title()} Handbook",
            owner_slug=owner_slug,
            access_level=access_level,
            passcode=passcode,
            active=active,
            filename=f"{slug}.pdf",
        )
        self.documents[slug] = doc
        if forced_backend is not None:
            self.document_overrides[slug] = forced_backend
        return doc

    async def get_documents(self, slugs: list[str]) -> dict[str, DocumentRef]:
        return {s: self.documents[s] for s in slugs if s in self.documents}

    async def get_document(self, slug: str) -> DocumentRef | None:
        return self.documents.get(slug)

    async def get_owner_row(self, slug: str) -> DocumentOwnerRow | None:
        if self.fail_owner_lookup:
            raise RuntimeError("registry unavailable")
        doc = self.documents.get(slug)
        if doc is None:
            return None
        owner = self.owners[doc.owner_slug]
        return DocumentOwnerRow(
            slug=slug,
            owner_slug=doc.owner_slug,
            owner_name=owner["name"],
            owner_chunk_limit=owner["chunk_limit"],
            owner_forced_backend=owner["forced_backend"],
            document_forced_backend=self.document_overrides.get(slug),
        )

    async def has_grant(self, user_id: str, document_id: str) -> bool:
        self.grant_lookups += 1
        return (user_id, document_id) in self.grants


class FakeConversationStore:
    """In-memory IConversationStore enforcing share-token uniqueness."""

    def __init__(self) -> None:
        self.records: dict[str, ConversationRecord] = {}
        self.fail_insert: Exception | None = None
        self.fail_count = False
        self.forced_collisions = 0

    def _token_taken(self, token: str | None) -> bool:
        return token is not None and any(r.share_token == token for r in self.records.values())

    async def insert(self, record: ConversationRecord) -> str:
        if self.fail_insert is not None:
            raise self.fail_insert
        if self.forced_collisions:
            self.forced_collisions -= 1
            raise ShareTokenCollision("share_token")
        if self._token_taken(record.share_token):
            raise ShareTokenCollision("share_token")
        self.records[record.id] = record
        return record.id

    async def get(self, conversation_id: str) -> ConversationRecord | None:
        return self.records.get(conversation_id)

    async def get_by_share_token(self, share_token: str) -> ConversationRecord | None:
        return next((r for r in self.records.values() if r.share_token == share_token), None)

    async def set_share_token(self, conversation_id: str, share_token: str) -> bool:
        if self.forced_collisions:
            self.forced_collisions -= 1
            raise ShareTokenCollision("share_token")
        if self._token_taken(share_token):
            raise ShareTokenCollision("share_token")
        record = self.records.get(conversation_id)
        if record is None or record.share_token is not None:
            return False
        record.share_token = share_token
        return True

    async def count_for_session(self, session_id: str) -> int:
        if self.fail_count:
            raise RuntimeError("conversation store unavailable")
        return sum(1 for r in self.records.values() if r.session_id == session_id)


class FakeEmbedder:
    def __init__(self, dimension: int) -> None:
        self._dimension = dimension
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return [0.1] * self._dimension

    @property
    def dimension(self) -> int:
        return self._dimension


class FakeRetrievalService:
    """Returns canned chunks, at most ``limit`` per requested document."""

    def __init__(self, chunks: list[RetrievedChunk] | None = None) -> None:
        self.chunks = chunks if chunks is not None else []
        self.calls: list[tuple[str, list[str], int]] = []
        self.error: Exception | None = None

    def _search(self, space: str, slugs: list[str], limit: int) -> list[RetrievedChunk]:
        self.calls.append((space, list(slugs), limit))
        if self.error is not None:
            raise self.error
        results: list[RetrievedChunk] = []
        for slug in slugs:
            results.extend([c for c in self.chunks if c.document_slug == slug][:limit])
        return sorted(results, key=lambda c: c.combined_score, reverse=True)

    async def search_remote_hybrid(self, query_vector, query_text, document_slugs, limit):
        return self._search("remote", document_slugs, limit)

    async def search_local_hybrid(self, query_vector, query_text, document_slugs, limit):
        return self._search("local", document_slugs, limit)


class FakeBackend:
    """IGenerationBackend with a canned answer; ``error`` is raised after the fragments."""

    def __init__(self, answer: str = "The warranty period is two years.", fragments: list[str] | None = None) -> None:
        self.answer = answer
        self.fragments = fragments if fragments is not None else ["The warranty ", "period is ", "two years."]
        self.error: Exception | None = None
        self.requests = []

    async def generate(self, request) -> str:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.answer

    async def stream(self, request):
        self.requests.append(request)
        for fragment in self.fragments:
            yield fragment
        if self.error is not None:
            raise self.error


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture()
def registry() -> FakeRegistry:
    """Two owners; ``acme`` caps chunks at 5, ``globex`` uses the default."""
    reg = FakeRegistry()
    reg.add_owner("acme", "Acme Health", chunk_limit=5)
    reg.add_owner("globex", "Globex Corp")
    reg.add_document("smh", "acme")
    reg.add_document("policy-a", "acme")
    reg.add_document("policy-c", "acme")
    reg.add_document("policy-b", "globex")
    reg.add_document("members", "acme", access_level=AccessLevel.AUTHENTICATED)
    reg.add_document("secret", "acme", access_level=AccessLevel.PASSCODE, passcode="letmein")
    reg.add_document("vault", "acme", access_level=AccessLevel.RESTRICTED)
    reg.add_document("retired", "acme", active=False)
    return reg


@pytest.fixture()
def store() -> FakeConversationStore:
    return FakeConversationStore()


@pytest.fixture()
def retrieval_service() -> FakeRetrievalService:
    chunks = [make_chunk(slug, i, similarity=0.9 - i * 0.05) for slug in ("smh", "policy-a", "policy-c") for i in range(8)]
    chunks += [make_chunk("policy-b", i) for i in range(3)]
    chunks += [make_chunk(slug, 0) for slug in ("members", "secret", "vault")]
    return FakeRetrievalService(chunks)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def embedders() -> dict[EmbeddingSpace, FakeEmbedder]:
    return {
        EmbeddingSpace.REMOTE: FakeEmbedder(EmbeddingSpace.REMOTE.dimensions),
        EmbeddingSpace.LOCAL: FakeEmbedder(EmbeddingSpace.LOCAL.dimensions),
    }


def dispatch_table(backend: FakeBackend) -> dict[Backend, BackendBinding]:
    return {
        Backend.GENERAL: BackendBinding(backend, "gemini-2.5-flash"),
        Backend.FAST: BackendBinding(backend, "grok-4-fast-non-reasoning"),
        Backend.REASONING: BackendBinding(backend, "grok-4-fast-reasoning"),
    }


def build_orchestrator(
    settings: Settings,
    registry: FakeRegistry,
    store: FakeConversationStore,
    retrieval_service: FakeRetrievalService,
    backend: FakeBackend,
    embedders: dict,
) -> ChatOrchestrator:
    access = AccessResolver(registry)
    issuer = ShareTokenIssuer(store, settings.share_token_bytes, settings.share_token_max_attempts)
    return ChatOrchestrator(
        settings=settings,
        rate_limiter=RateLimiter(),
        registry=registry,
        conversations=store,
        access=access,
        owner_context=OwnerContextResolver(registry, settings.default_chunk_limit),
        moderation=ModerationGate(),
        embedding_cache=EmbeddingCache(settings.embedding_cache_capacity),
        embedders=embedders,
        retrieval=RetrievalGateway(retrieval_service, settings.retrieval_timeout_seconds),
        dispatcher=GenerationDispatcher(dispatch_table(backend), settings.generation_timeout_seconds),
        conversation_logger=ConversationLogger(store, issuer, top_n=settings.chunk_log_top_n),
        identity=IdentityResolver(settings),
    )


@pytest.fixture()
def orchestrator(settings, registry, store, retrieval_service, backend, embedders) -> ChatOrchestrator:
    return build_orchestrator(settings, registry, store, retrieval_service, backend, embedders)
