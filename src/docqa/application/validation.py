"""Request-shape validation that runs before any external call."""

from __future__ import annotations

import re
import uuid

from loguru import logger

from docqa.application.exceptions import ValidationError
from docqa.domain.models import Backend, DocumentRef, EmbeddingSpace

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_DOC_SEPARATORS = re.compile(r"[\s+]+")


def normalize_session_id(session_id: str | None) -> str:
    """Return *session_id* when it is UUID-shaped, otherwise a fresh UUID (a new session)."""
    if session_id and _UUID_RE.match(session_id):
        return session_id
    return str(uuid.uuid4())


def validate_message(message: str | None, max_length: int = 1500) -> str:
    if not message or not message.strip():
        raise ValidationError("Message is required", error="Message is required")
    if len(message) > max_length:
        raise ValidationError(
            f"Message exceeds maximum length of {max_length} characters. "
            "Please shorten your message.",
            error="Message too long",
        )
    return message


def parse_document_slugs(doc: str | None, default: str = "smh") -> list[str]:
    """Split a ``+``/whitespace separated parameter into unique slugs, order preserved."""
    raw = _DOC_SEPARATORS.split(doc or default)
    return list(dict.fromkeys(s.strip() for s in raw if s.strip())) or [default]


def validate_document_count(slugs: list[str], max_documents: int = 5) -> None:
    if len(slugs) > max_documents:
        raise ValidationError(
            f"Maximum {max_documents} documents can be searched simultaneously. "
            f"You specified {len(slugs)}.",
            error="Too Many Documents",
            count=len(slugs),
            max=max_documents,
        )


def parse_backend(model: str | None) -> Backend:
    if not model:
        return Backend.GENERAL
    try:
        return Backend.parse(model)
    except ValueError:
        raise ValidationError(
            f"Unknown model '{model}'. Expected one of: "
            + ", ".join(b.value for b in Backend),
            error="Invalid model",
        ) from None


def parse_embedding_space(value: str | None) -> EmbeddingSpace:
    try:
        return EmbeddingSpace.parse(value)
    except ValueError:
        raise ValidationError(
            f"Unknown embedding type '{value}'. Expected 'remote' or 'local'.",
            error="Invalid embedding type",
        ) from None


def validate_documents(slugs: list[str], found: dict[str, DocumentRef]) -> list[DocumentRef]:
    """Check that every slug is registered and active and that one owner holds them all.

    Returns:
        The documents in request order.
    """
    missing = [s for s in slugs if s not in found or not found[s].active]
    if missing:
        logger.info("Unavailable documents requested: {}", ", ".join(missing))
        raise ValidationError(
            f"Document(s) not available: {', '.join(missing)}",
            error="Invalid document",
            invalidDocuments=missing,
        )

    documents = [found[s] for s in slugs]
    owners = list(dict.fromkeys(d.owner_slug for d in documents))
    if len(owners) > 1:
        raise ValidationError(
            "All documents in a multi-document search must belong to the same owner. "
            f"Found owners: {', '.join(owners)}",
            error="Owner mismatch",
            owners=owners,
        )
    return documents
