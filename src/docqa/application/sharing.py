"""Share-artifact operations over stored conversations."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from docqa.application.access import AccessResolver
from docqa.application.conversation_logger import ShareTokenIssuer
from docqa.application.exceptions import ModerationError, NotFoundError, ValidationError
from docqa.domain.models import ConversationRecord
from docqa.domain.protocols import IConversationStore, IDocumentRegistry
from docqa.logging_config import short_id


@dataclass(frozen=True)
class BannedStatus:
    conversation_id: str
    banned: bool
    ban_reason: str | None
    share_token: str | None


class ShareService:
    """Issue share tokens, serve shared conversations, and report moderation status."""

    def __init__(
        self,
        store: IConversationStore,
        registry: IDocumentRegistry,
        access: AccessResolver,
        issuer: ShareTokenIssuer,
    ) -> None:
        self.store = store
        self.registry = registry
        self.access = access
        self.issuer = issuer

    async def issue(self, conversation_id: str | None) -> str:
        if not conversation_id:
            raise ValidationError("Conversation ID is required", error="Conversation ID is required")
        return await self.issuer.issue_for_existing(conversation_id)

    async def fetch_shared(
        self,
        share_token: str,
        user_id: str | None,
        passcode: str | None = None,
    ) -> ConversationRecord:
        """Return the shared conversation after re-checking document access.

        Raises:
            NotFoundError: Unknown token.
            ModerationError: The conversation is banned.
            AccessError: The caller may not read one of its documents.
        """
        record = await self.store.get_by_share_token(share_token)
        if record is None:
            raise NotFoundError("Conversation not found")
        if record.banned:
            raise ModerationError(record.ban_reason)

        slugs = record.document_slugs or list(record.metadata.get("document_slugs") or [])
        if not slugs:
            logger.info("Shared conversation {} has no document scope, serving", short_id(record.id))
            return record

        found = await self.registry.get_documents(slugs)
        missing = [s for s in slugs if s not in found]
        if missing:
            # Documents removed since the conversation was logged cannot be checked.
            raise NotFoundError(f"Document(s) no longer available: {', '.join(missing)}")

        await self.access.resolve([found[s] for s in slugs], user_id, passcode)
        return record

    async def banned_status(self, conversation_id: str) -> BannedStatus:
        record = await self.store.get(conversation_id)
        if record is None:
            raise NotFoundError("Conversation not found")
        return BannedStatus(
            conversation_id=record.id,
            banned=record.banned,
            ban_reason=record.ban_reason,
            share_token=None if record.banned else record.share_token,
        )
