from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class SessionStatusResponse(BaseModel):
    isGuest: bool
    userId: Optional[str] = None
    guestId: Optional[str] = None
    conversationCount: int = 0
    canConvert: bool = False


class GuestTokenResponse(BaseModel):
    guestId: str
    conversionToken: str


class ConvertGuestRequest(BaseModel):
    guestId: str = Field(
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("guestId", "guest_id"),
    )
    conversionToken: str = Field(
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("conversionToken", "conversion_token"),
    )

    model_config = ConfigDict(populate_by_name=True)


class ConvertGuestResponse(BaseModel):
    success: bool
    outcome: str
    message: str
    recordsTransferred: int = 0


class MeResponse(BaseModel):
    id: str
    email: Optional[str] = None
    createdAt: Optional[datetime] = None


class ConversationCreateRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=255)
    message: Optional[str] = Field(default=None, max_length=20000)


class ConversationRenameRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be blank")
        return v


class ConversationSchema(BaseModel):
    id: str
    title: str
    messageCount: int = 0
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSchema] = Field(default_factory=list)
