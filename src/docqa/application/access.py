"""Per-document access resolution.

The registry is the single source of truth for a document's access level
and passcode; nothing the client sends about access is trusted.  Every
requested document is checked independently and the request fails closed
on the first denial, in request order.
"""

from __future__ import annotations

import asyncio
import hmac

from loguru import logger

from docqa.application.exceptions import AccessDenial, AccessError
from docqa.domain.models import AccessLevel, DocumentRef
from docqa.domain.protocols import IDocumentRegistry
from docqa.logging_config import short_id


class AccessResolver:
    """Decides whether a caller may use a set of documents."""

    def __init__(self, registry: IDocumentRegistry) -> None:
        self.registry = registry

    async def resolve(
        self,
        documents: list[DocumentRef],
        user_id: str | None,
        passcode: str | None = None,
    ) -> None:
        """Raise ``AccessError`` for the first document the caller may not use.

        Pure open/authenticated mixes are decided in one pass without any
        grant lookups.  As soon as one passcode or restricted document is
        involved, each document is checked on its own, in parallel.
        """
        if all(doc.access_level in (AccessLevel.OPEN, AccessLevel.AUTHENTICATED) for doc in documents):
            denials = [self._check_without_grants(doc, user_id) for doc in documents]
        else:
            denials = await asyncio.gather(
                *(self.check_document(doc, user_id, passcode) for doc in documents)
            )

        for doc, denial in zip(documents, denials):
            if denial is not None:
                logger.info(
                    "Access denied | document={} user={} kind={}",
                    doc.slug,
                    short_id(user_id) if user_id else "anonymous",
                    denial.value,
                )
                raise AccessError(_denial_message(doc.slug, denial), kind=denial, document=doc.slug)

        logger.debug("Access granted | documents={}", "+".join(d.slug for d in documents))

    async def check_document(
        self,
        doc: DocumentRef,
        user_id: str | None,
        passcode: str | None,
    ) -> AccessDenial | None:
        """Return ``None`` when access is allowed, otherwise the denial kind."""
        if doc.access_level in (AccessLevel.OPEN, AccessLevel.AUTHENTICATED):
            return self._check_without_grants(doc, user_id)

        if doc.access_level is AccessLevel.PASSCODE:
            if user_id and await self.registry.has_grant(user_id, doc.id):
                return None
            if not doc.has_passcode:
                # A passcode document without a stored passcode only admits grant holders.
                return AccessDenial.DENIED if user_id else AccessDenial.AUTH_REQUIRED
            if not passcode:
                return AccessDenial.PASSCODE_REQUIRED
            if _passcode_matches(passcode, doc.passcode or ""):
                return None
            return AccessDenial.PASSCODE_INCORRECT

        if doc.access_level is AccessLevel.RESTRICTED:
            if not user_id:
                return AccessDenial.AUTH_REQUIRED
            if await self.registry.has_grant(user_id, doc.id):
                return None
            return AccessDenial.DENIED

        return AccessDenial.DENIED

    @staticmethod
    def _check_without_grants(doc: DocumentRef, user_id: str | None) -> AccessDenial | None:
        if doc.access_level is AccessLevel.OPEN:
            return None
        if doc.access_level is AccessLevel.AUTHENTICATED:
            return None if user_id else AccessDenial.AUTH_REQUIRED
        return AccessDenial.DENIED


def _passcode_matches(supplied: str, stored: str) -> bool:
    return hmac.compare_digest(supplied.strip().encode(), stored.strip().encode())


def _denial_message(slug: str, denial: AccessDenial) -> str:
    match denial:
        case AccessDenial.AUTH_REQUIRED:
            return f'The document "{slug}" requires authentication. Please log in.'
        case AccessDenial.PASSCODE_REQUIRED:
            return f'The document "{slug}" requires a passcode. Please provide the passcode.'
        case AccessDenial.PASSCODE_INCORRECT:
            return f'The passcode for the document "{slug}" is incorrect.'
        case _:
            return f'You do not have permission to access the document "{slug}"'
