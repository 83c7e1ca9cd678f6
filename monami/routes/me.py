from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..db import get_session
from ..models import Profile
from ..owner import get_profile_owner
from ..schemas import MeResponse
from ..services.identity import ProfileOwner

router = APIRouter()


@router.get("/me", response_model=MeResponse)
async def me(owner: ProfileOwner = Depends(get_profile_owner)):
    async with get_session() as session:
        profile = await session.get(Profile, owner.user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return MeResponse(id=profile.id, email=profile.email, createdAt=profile.created_at)
