"""Share-artifact and moderation-status routes."""

from __future__ import annotations

from fastapi import APIRouter, Query, Request
from loguru import logger

from docqa.application.sharing import ShareService
from docqa.logging_config import short_id
from docqa.presentation.schemas import (
    BannedStatusResponse,
    SharedConversation,
    SharedConversationResponse,
    ShareRequest,
    ShareResponse,
)

router = APIRouter(tags=["share"])


@router.post("/chat/share", response_model=ShareResponse)
async def share_conversation(body: ShareRequest, raw_request: Request):
    """Issue (or return the existing) share token for a conversation.

    Idempotent; refused with 403 for banned conversations.
    """
    service: ShareService = raw_request.app.state.share_service
    token = await service.issue(body.conversation_id)
    logger.info("POST /chat/share | conversation={}", short_id(body.conversation_id))
    return ShareResponse(conversation_id=body.conversation_id, share_token=token)


@router.get("/shared/{share_token}", response_model=SharedConversationResponse)
async def get_shared_conversation(
    share_token: str,
    raw_request: Request,
    passcode: str | None = Query(default=None),
):
    """Fetch a shared conversation; document access is re-checked for the caller."""
    state = raw_request.app.state
    service: ShareService = state.share_service
    user_id = state.identity(raw_request.headers.get("Authorization"))

    record = await service.fetch_shared(share_token, user_id, passcode)
    return SharedConversationResponse(
        conversation=SharedConversation(
            id=record.id,
            session_id=record.session_id,
            question=record.question,
            response=record.answer,
            model=record.backend.value,
            created_at=record.created_at,
            document_name=record.document_name,
            document_ids=record.document_ids,
            metadata=record.metadata,
        )
    )


@router.get("/chat/conversation/{conversation_id}/banned-status", response_model=BannedStatusResponse)
async def banned_status(conversation_id: str, raw_request: Request):
    service: ShareService = raw_request.app.state.share_service
    status = await service.banned_status(conversation_id)
    return BannedStatusResponse(
        conversation_id=status.conversation_id,
        banned=status.banned,
        ban_reason=status.ban_reason,
        share_token=status.share_token,
    )
