"""Configuration for the orchestrator using pydantic-settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PACKAGE_DIR = Path(__file__).resolve().parent
_PROJECT_ROOT = _PACKAGE_DIR.parent.parent  # src/docqa/ → project root


class Settings(BaseSettings):
    """All service settings, loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Remote embeddings (OpenAI)
    # ------------------------------------------------------------------
    openai_api_key: str = ""
    openai_base_url: str | None = None
    remote_embedding_model: str = "text-embedding-3-small"
    remote_embedding_dimensions: int = 1536

    # ------------------------------------------------------------------
    # Local embeddings (sentence-transformers)
    # ------------------------------------------------------------------
    local_embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    local_embedding_dimensions: int = 384

    # ------------------------------------------------------------------
    # Generation backends
    # The fast/reasoning family is served by xAI; the general backend by
    # Gemini's OpenAI-compatible endpoint.
    # ------------------------------------------------------------------
    xai_api_key: str = ""
    xai_base_url: str = "https://api.x.ai/v1"
    fast_model: str = "grok-4-fast-non-reasoning"
    reasoning_model: str = "grok-4-fast-reasoning"

    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    general_model: str = "gemini-2.5-flash"

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------
    registry_db_path: Path = _PROJECT_ROOT / "database" / "registry.sqlite"
    conversations_db_path: Path = _PROJECT_ROOT / "database" / "conversations.sqlite"
    chunks_db_path: Path = _PROJECT_ROOT / "database" / "chunks.sqlite"

    # ------------------------------------------------------------------
    # Request limits
    # ------------------------------------------------------------------
    max_message_length: int = 1500
    max_documents: int = 5
    default_document: str = "smh"
    max_conversation_length: int = 3

    # ------------------------------------------------------------------
    # Rate limiting (per session)
    # ------------------------------------------------------------------
    rate_limit_burst: int = 3
    rate_limit_burst_window_seconds: float = 10.0
    rate_limit_sustained: int = 10
    rate_limit_sustained_window_seconds: float = 60.0
    rate_limit_sweep_interval_seconds: float = 300.0
    rate_limit_inactivity_seconds: float = 300.0

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------
    default_chunk_limit: int = 50
    chunk_log_top_n: int = 10
    embedding_cache_capacity: int = 1000

    # ------------------------------------------------------------------
    # Stage deadlines (seconds)
    # ------------------------------------------------------------------
    embedding_timeout_seconds: float = 15.0
    retrieval_timeout_seconds: float = 20.0
    generation_timeout_seconds: float = 120.0

    # ------------------------------------------------------------------
    # Share tokens
    # ------------------------------------------------------------------
    share_token_bytes: int = 24
    share_token_max_attempts: int = 5

    # ------------------------------------------------------------------
    # Auth (JWT bearer credentials; anonymous callers are allowed)
    # ------------------------------------------------------------------
    jwt_secret: str = "dev-secret-change-in-production!!"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24

    # ------------------------------------------------------------------
    # Logging / observability
    # ------------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Path | None = None
    observability: str = "off"
    otel_service_name: str = "docqa-orchestrator"
    otel_exporter_otlp_endpoint: str = "http://localhost:4318"
    otel_console_exporter: bool = False

    # ------------------------------------------------------------------
    # Computed defaults
    # ------------------------------------------------------------------
    @model_validator(mode="after")
    def _apply_limit_floors(self) -> "Settings":
        if self.default_chunk_limit < 1:
            self.default_chunk_limit = 50
        if self.share_token_max_attempts < 1:
            self.share_token_max_attempts = 1
        return self

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------
    def validate_runtime(self) -> None:
        """Check that all required values are present.

        Call this at application startup (not at import time) so that
        tests can override settings before validation runs.
        """
        if not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY not set. Remote-space embeddings need it.")
        if not self.xai_api_key:
            raise ValueError("XAI_API_KEY not set. The fast/reasoning backends need it.")
        if not self.gemini_api_key:
            raise ValueError("GEMINI_API_KEY not set. The general backend needs it.")
        if not self.chunks_db_path.exists():
            raise FileNotFoundError(
                f"Chunk index not found at {self.chunks_db_path}. Index documents first."
            )


@lru_cache
def get_settings() -> Settings:
    """Return the cached Settings singleton."""
    return Settings()
