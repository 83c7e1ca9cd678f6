from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..db import get_session
from ..owner import get_owner
from ..schemas import (
    ConversationCreateRequest,
    ConversationListResponse,
    ConversationRenameRequest,
    ConversationSchema,
)
from ..services.conversations import (
    create_conversation,
    delete_conversation,
    list_conversations,
    rename_conversation,
)
from ..services.identity import Owner

router = APIRouter(prefix="/chat/conversations", tags=["chat"])


@router.get("", response_model=ConversationListResponse)
async def get_conversations(owner: Owner = Depends(get_owner)):
    async with get_session() as session:
        rows = await list_conversations(session, owner)
    return ConversationListResponse(conversations=[ConversationSchema(**row) for row in rows])


@router.post("", response_model=ConversationSchema, status_code=status.HTTP_201_CREATED)
async def post_conversation(
    payload: ConversationCreateRequest,
    owner: Owner = Depends(get_owner),
):
    async with get_session() as session:
        row = await create_conversation(
            session, owner, title=payload.title, first_message=payload.message
        )
    return ConversationSchema(**row)


@router.patch("/{conversation_id}", response_model=ConversationSchema)
async def patch_conversation(
    conversation_id: str,
    payload: ConversationRenameRequest,
    owner: Owner = Depends(get_owner),
):
    async with get_session() as session:
        row = await rename_conversation(session, owner, conversation_id, payload.title)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return ConversationSchema(**row)


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_conversation(conversation_id: str, owner: Owner = Depends(get_owner)) -> None:
    async with get_session() as session:
        deleted = await delete_conversation(session, owner, conversation_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return None
