"""Application-level exceptions.

These are business-logic errors, not HTTP errors. Each carries the status
class it maps to and a set of remediation hints; the presentation layer
(FastAPI exception handlers) turns them into JSON responses.
"""

from __future__ import annotations

from enum import StrEnum


class ChatPipelineError(Exception):
    """Base class for every typed failure a pipeline stage can raise."""

    status_code: int = 500
    error: str = "Failed to process chat message"
    stage: str = "pipeline"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if stage:
            self.stage = stage

    def hints(self) -> dict:
        """Extra machine-readable fields for the error body."""
        return {}

    def to_payload(self) -> dict:
        return {"error": self.error, "message": self.message, **self.hints()}


# ---------------------------------------------------------------------------
# 400-class
# ---------------------------------------------------------------------------


class ValidationError(ChatPipelineError):
    """Malformed request: missing message, too many or unknown documents, mixed owners."""

    status_code = 400
    stage = "validation"

    def __init__(self, message: str, *, error: str = "Invalid request", **extra) -> None:
        super().__init__(message)
        self.error = error
        self.extra = extra

    def hints(self) -> dict:
        return dict(self.extra)


class NotFoundError(ChatPipelineError):
    status_code = 404
    error = "Not found"
    stage = "lookup"


# ---------------------------------------------------------------------------
# 403 / 429-class
# ---------------------------------------------------------------------------


class RateLimitError(ChatPipelineError):
    status_code = 429
    stage = "rate_limit"

    def __init__(self, *, retry_after: int, reason: str, limit: int, window: str) -> None:
        super().__init__(
            f"Rate limit exceeded. Please wait {retry_after} seconds "
            "before sending another message."
        )
        self.error = self.message
        self.retry_after = retry_after
        self.reason = reason
        self.limit = limit
        self.window = window

    def hints(self) -> dict:
        return {
            "rateLimitExceeded": True,
            "retryAfter": self.retry_after,
            "reason": self.reason,
            "limit": self.limit,
            "window": self.window,
        }


class ConversationQuotaError(ChatPipelineError):
    status_code = 403
    stage = "conversation_quota"

    def __init__(self, *, limit: int, current: int) -> None:
        super().__init__(
            f"You've reached the conversation limit of {limit} messages. "
            "Please start a new chat to continue."
        )
        self.error = self.message
        self.limit = limit
        self.current = current

    def hints(self) -> dict:
        return {"conversationLimitExceeded": True, "limit": self.limit, "currentCount": self.current}


class AccessDenial(StrEnum):
    """Why a document was refused; callers pick the remediation UI from this."""

    DENIED = "access_denied"
    AUTH_REQUIRED = "auth_required"
    PASSCODE_REQUIRED = "passcode_required"
    PASSCODE_INCORRECT = "passcode_incorrect"


class AccessError(ChatPipelineError):
    status_code = 403
    error = "Access denied"
    stage = "access"

    def __init__(self, message: str, *, kind: AccessDenial, document: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.document = document

    @property
    def requires_auth(self) -> bool:
        return self.kind is AccessDenial.AUTH_REQUIRED

    @property
    def requires_passcode(self) -> bool:
        return self.kind is AccessDenial.PASSCODE_REQUIRED

    def hints(self) -> dict:
        return {
            "error_type": self.kind.value,
            "requires_auth": self.requires_auth,
            "requires_passcode": self.requires_passcode,
            "document": self.document,
        }


class ModerationError(ChatPipelineError):
    """Raised when a share artifact is requested for a banned conversation."""

    status_code = 403
    error = "This conversation cannot be shared because it contains inappropriate content"
    stage = "moderation"

    def __init__(self, ban_reason: str | None) -> None:
        super().__init__(self.error)
        self.ban_reason = ban_reason

    def hints(self) -> dict:
        return {"banned": True, "ban_reason": self.ban_reason}


# ---------------------------------------------------------------------------
# 500-class stage failures
# ---------------------------------------------------------------------------


class StageError(ChatPipelineError):
    """A collaborator call failed; wraps the stage name and the underlying message."""

    status_code = 500

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message, stage=stage)
        self.error = f"Failed to process chat message ({self.stage})"

    def hints(self) -> dict:
        return {"stage": self.stage, "details": self.message}


class EmbeddingError(StageError):
    stage = "embedding"


class RetrievalError(StageError):
    stage = "retrieval"


class GenerationError(StageError):
    stage = "generation"


class ShareTokenError(StageError):
    stage = "share_token"


class LoggingError(StageError):
    """Conversation persistence failed. Logged only, never surfaced to the caller."""

    stage = "logging"


class ShareTokenCollision(Exception):
    """A freshly generated share token already exists on another record."""
