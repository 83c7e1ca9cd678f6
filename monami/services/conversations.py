from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Conversation, Message
from .identity import Owner, owner_columns, owner_filter

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New chat"
TITLE_FROM_MESSAGE_CHARS = 60


def _title_from_message(message: Optional[str]) -> str:
    text = " ".join((message or "").split())
    if not text:
        return DEFAULT_TITLE
    if len(text) <= TITLE_FROM_MESSAGE_CHARS:
        return text
    return text[: TITLE_FROM_MESSAGE_CHARS - 3].rstrip() + "..."


async def count_conversations(session: AsyncSession, owner: Owner) -> int:
    result = await session.execute(
        select(func.count()).select_from(Conversation).where(owner_filter(Conversation, owner))
    )
    return int(result.scalar_one() or 0)


async def list_conversations(session: AsyncSession, owner: Owner) -> List[Dict[str, object]]:
    message_counts = (
        select(Message.conversation_id, func.count(Message.id).label("message_count"))
        .group_by(Message.conversation_id)
        .subquery()
    )
    result = await session.execute(
        select(Conversation, func.coalesce(message_counts.c.message_count, 0))
        .outerjoin(message_counts, message_counts.c.conversation_id == Conversation.id)
        .where(owner_filter(Conversation, owner))
        .order_by(Conversation.updated_at.desc(), Conversation.created_at.desc())
    )
    return [serialize_conversation(conv, int(count)) for conv, count in result.all()]


async def get_conversation(
    session: AsyncSession, owner: Owner, conversation_id: str
) -> Optional[Conversation]:
    """Owner-scoped lookup; another owner's conversation reads as missing."""
    result = await session.execute(
        select(Conversation).where(
            Conversation.id == conversation_id,
            owner_filter(Conversation, owner),
        )
    )
    return result.scalar_one_or_none()


async def create_conversation(
    session: AsyncSession,
    owner: Owner,
    *,
    title: Optional[str] = None,
    first_message: Optional[str] = None,
) -> Dict[str, object]:
    conversation = Conversation(
        title=(title or "").strip() or _title_from_message(first_message),
        **owner_columns(owner),
    )
    session.add(conversation)
    message_count = 0
    if first_message and first_message.strip():
        session.add(Message(conversation=conversation, role="user", content=first_message))
        message_count = 1
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(conversation)
    return serialize_conversation(conversation, message_count)


async def rename_conversation(
    session: AsyncSession, owner: Owner, conversation_id: str, title: str
) -> Optional[Dict[str, object]]:
    conversation = await get_conversation(session, owner, conversation_id)
    if conversation is None:
        return None
    conversation.title = title.strip()
    await session.commit()
    await session.refresh(conversation)
    count = await session.execute(
        select(func.count(Message.id)).where(Message.conversation_id == conversation.id)
    )
    return serialize_conversation(conversation, int(count.scalar_one() or 0))


async def delete_conversation(session: AsyncSession, owner: Owner, conversation_id: str) -> bool:
    conversation = await get_conversation(session, owner, conversation_id)
    if conversation is None:
        return False
    await session.delete(conversation)
    await session.commit()
    return True


def serialize_conversation(conversation: Conversation, message_count: int = 0) -> Dict[str, object]:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "messageCount": message_count,
        "createdAt": conversation.created_at,
        "updatedAt": conversation.updated_at,
    }
