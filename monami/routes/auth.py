from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ..db import get_session
from ..owner import get_owner, get_profile_owner, get_resolver
from ..schemas import (
    ConvertGuestRequest,
    ConvertGuestResponse,
    GuestTokenResponse,
    SessionStatusResponse,
)
from ..services.conversations import count_conversations
from ..services.conversion import (
    ConversionOutcome,
    RequestProvenance,
    convert_guest,
)
from ..services.identity import GuestOwner, Owner, ProfileOwner

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)

_OUTCOME_RESPONSES = {
    ConversionOutcome.CONVERTED: (status.HTTP_200_OK, "Guest converted successfully"),
    ConversionOutcome.ALREADY_CONVERTED_SAME_USER: (
        status.HTTP_200_OK,
        "Guest already converted to this user",
    ),
    ConversionOutcome.GUEST_NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Guest not found"),
    ConversionOutcome.INVALID_SECRET: (status.HTTP_403_FORBIDDEN, "Invalid conversion token"),
    ConversionOutcome.ALREADY_CONVERTED_DIFFERENT_USER: (
        status.HTTP_409_CONFLICT,
        "Guest already converted to a different user",
    ),
}


def _provenance(request: Request) -> RequestProvenance:
    # X-Forwarded-For is applied by uvicorn's proxy headers, for trusted proxies only.
    ip_address = request.client.host if request.client else None
    return RequestProvenance(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


@router.get("/status", response_model=SessionStatusResponse)
async def session_status(owner: Owner = Depends(get_owner)):
    if isinstance(owner, ProfileOwner):
        return SessionStatusResponse(isGuest=False, userId=owner.user_id)
    async with get_session() as session:
        conversation_count = await count_conversations(session, owner)
    return SessionStatusResponse(
        isGuest=True,
        guestId=owner.guest_id,
        conversationCount=conversation_count,
        canConvert=conversation_count > 0,
    )


@router.get("/guest-token", response_model=GuestTokenResponse)
async def guest_token(owner: Owner = Depends(get_owner)):
    """Hand the current guest's conversion token to the client ahead of sign-up."""
    if not isinstance(owner, GuestOwner):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not a guest session")
    return GuestTokenResponse(guestId=owner.guest_id, conversionToken=owner.secret)


@router.post("/convert-guest", response_model=ConvertGuestResponse)
async def convert_guest_route(
    payload: ConvertGuestRequest,
    request: Request,
    owner: ProfileOwner = Depends(get_profile_owner),
):
    cache = get_resolver(request).cache
    try:
        async with get_session() as session:
            result = await convert_guest(
                session,
                user_id=owner.user_id,
                guest_id=payload.guestId,
                secret=payload.conversionToken,
                provenance=_provenance(request),
                cache=cache,
            )
    except Exception:
        logger.exception("Guest conversion error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ConvertGuestResponse(
                success=False,
                outcome="error",
                message="Internal server error during conversion",
            ).model_dump(),
        )

    status_code, message = _OUTCOME_RESPONSES[result.outcome]
    body = ConvertGuestResponse(
        success=result.outcome.succeeded,
        outcome=result.outcome.value,
        message=message,
        recordsTransferred=result.records_transferred,
    )
    if status_code == status.HTTP_200_OK:
        return body
    return JSONResponse(status_code=status_code, content=body.model_dump())
