"""FastAPI application for the document Q&A orchestrator.

This module is a thin **presentation layer** plus wiring.  All business
logic lives in ``docqa.application`` so it can be tested and reused
independently of any HTTP framework.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from openai import AsyncOpenAI

from docqa import __version__
from docqa.application.access import AccessResolver
from docqa.application.conversation_logger import ConversationLogger, ShareTokenIssuer
from docqa.application.embedding_cache import EmbeddingCache
from docqa.application.generation import BackendBinding, GenerationDispatcher
from docqa.application.moderation import ModerationGate
from docqa.application.orchestrator import ChatOrchestrator
from docqa.application.owner_context import OwnerContextResolver
from docqa.application.rate_limiter import RateLimiter
from docqa.application.retrieval import RetrievalGateway
from docqa.application.sharing import ShareService
from docqa.auth import IdentityResolver
from docqa.config import Settings, get_settings
from docqa.domain.models import Backend, EmbeddingSpace
from docqa.domain.protocols import (
    IConversationStore,
    IDocumentRegistry,
    IEmbedder,
    IHybridRetrievalService,
)
from docqa.logging_config import setup_logging
from docqa.presentation.errors import install_error_handlers
from docqa.presentation.routes import chat, share
from docqa.telemetry import get_instrumentation_settings, setup_telemetry


@dataclass
class Components:
    """External collaborators the pipeline is wired onto."""

    registry: IDocumentRegistry
    conversations: IConversationStore
    retrieval_service: IHybridRetrievalService
    embedders: dict[EmbeddingSpace, IEmbedder]
    dispatch_table: dict[Backend, BackendBinding]
    closers: list = field(default_factory=list)


def build_components(settings: Settings) -> Components:
    """Open the SQLite stores and create the model clients."""
    from docqa.infrastructure.conversation_store import SQLiteConversationStore
    from docqa.infrastructure.embedders import OpenAIEmbedder, SentenceTransformerEmbedder
    from docqa.infrastructure.generation_backends import build_dispatch_table
    from docqa.infrastructure.registry_store import SQLiteDocumentRegistry
    from docqa.infrastructure.retrieval_service import HybridRetrievalService

    registry = SQLiteDocumentRegistry(settings.registry_db_path)
    registry.connect()
    conversations = SQLiteConversationStore(settings.conversations_db_path)
    conversations.connect()
    retrieval = HybridRetrievalService(settings.chunks_db_path)
    retrieval.connect()

    openai_client = AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
    embedders: dict[EmbeddingSpace, IEmbedder] = {
        EmbeddingSpace.REMOTE: OpenAIEmbedder(
            openai_client, settings.remote_embedding_model, settings.remote_embedding_dimensions
        ),
        EmbeddingSpace.LOCAL: SentenceTransformerEmbedder(
            settings.local_embedding_model, settings.local_embedding_dimensions
        ),
    }

    return Components(
        registry=registry,
        conversations=conversations,
        retrieval_service=retrieval,
        embedders=embedders,
        dispatch_table=build_dispatch_table(settings, instrument=get_instrumentation_settings(settings)),
        closers=[registry.close, conversations.close, retrieval.close],
    )


def wire(app: FastAPI, settings: Settings, components: Components) -> None:
    """Assemble the pipeline onto ``app.state``."""
    rate_limiter = RateLimiter(
        burst_limit=settings.rate_limit_burst,
        burst_window=settings.rate_limit_burst_window_seconds,
        sustained_limit=settings.rate_limit_sustained,
        sustained_window=settings.rate_limit_sustained_window_seconds,
        sweep_interval=settings.rate_limit_sweep_interval_seconds,
        inactivity_window=settings.rate_limit_inactivity_seconds,
    )
    access = AccessResolver(components.registry)
    issuer = ShareTokenIssuer(
        components.conversations,
        token_bytes=settings.share_token_bytes,
        max_attempts=settings.share_token_max_attempts,
    )
    conversation_logger = ConversationLogger(components.conversations, issuer, top_n=settings.chunk_log_top_n)
    embedding_cache = EmbeddingCache(settings.embedding_cache_capacity)
    identity = IdentityResolver(settings)

    app.state.settings = settings
    app.state.rate_limiter = rate_limiter
    app.state.embedding_cache = embedding_cache
    app.state.conversation_logger = conversation_logger
    app.state.identity = identity
    app.state.orchestrator = ChatOrchestrator(
        settings=settings,
        rate_limiter=rate_limiter,
        registry=components.registry,
        conversations=components.conversations,
        access=access,
        owner_context=OwnerContextResolver(components.registry, settings.default_chunk_limit),
        moderation=ModerationGate(),
        embedding_cache=embedding_cache,
        embedders=components.embedders,
        retrieval=RetrievalGateway(components.retrieval_service, settings.retrieval_timeout_seconds),
        dispatcher=GenerationDispatcher(components.dispatch_table, settings.generation_timeout_seconds),
        conversation_logger=conversation_logger,
        identity=identity,
    )
    app.state.share_service = ShareService(components.conversations, components.registry, access, issuer)


def create_app(settings: Settings | None = None, components: Components | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings override (defaults to ``get_settings()``).
        components: Pre-built collaborators; when omitted the lifespan
            validates the runtime settings and opens the real ones.
    """
    s = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Set up and tear down services around the application lifetime."""
        if components is None:
            s.validate_runtime()
            built = build_components(s)
        else:
            built = components

        wire(app, s, built)
        app.state.rate_limiter.start()
        logger.info("Application startup complete")
        yield

        await app.state.rate_limiter.stop()
        await app.state.conversation_logger.drain()
        for close in built.closers:
            close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Document Q&A Orchestrator",
        description="Retrieval-augmented answers over registered documents with access control.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)
    app.include_router(chat.router)
    app.include_router(share.router)

    # Instrument FastAPI with observability (no-op when OBSERVABILITY=off)
    setup_telemetry(app, s)
    return app


def _configure_logging() -> None:
    s = get_settings()
    setup_logging(level=s.log_level, json=s.log_json, log_file=s.log_file)


# Configure loguru before anything else
_configure_logging()
app = create_app()


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("docqa.main:app", host="0.0.0.0", port=8000, reload=True)
