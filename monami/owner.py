from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request, Response

from .auth import AuthClaim, get_current_claim, get_optional_claim
from .db import get_session
from .observability import bind_owner_context
from .services.identity import IdentityResolver, Owner, ProfileOwner

NO_STORE = "no-store, private, max-age=0, must-revalidate"


def get_resolver(request: Request) -> IdentityResolver:
    return request.app.state.identity_resolver


async def get_owner(
    request: Request,
    response: Response,
    claim: Optional[AuthClaim] = Depends(get_optional_claim),
) -> Owner:
    """Resolve the caller to a Profile or Guest, issuing a guest cookie if needed."""
    resolver = get_resolver(request)
    settings = resolver.settings
    async with get_session() as session:
        resolution = await resolver.resolve(
            session,
            claim,
            request.cookies.get(settings.guest_cookie_name),
            request_origin=request.headers.get("origin"),
            api_origin=settings.api_origin or str(request.base_url),
        )

    # A cached 304 would swallow the Set-Cookie.
    response.headers["Cache-Control"] = NO_STORE
    response.headers["Vary"] = "Authorization, Cookie"
    if resolution.cookie is not None:
        resolution.cookie.apply(response)

    owner = resolution.owner
    if isinstance(owner, ProfileOwner):
        bind_owner_context("profile", owner.user_id)
    else:
        bind_owner_context("guest", owner.guest_id)
    return owner


async def get_profile_owner(
    request: Request,
    claim: AuthClaim = Depends(get_current_claim),
) -> ProfileOwner:
    """Authenticated-only variant: never creates a guest."""
    async with get_session() as session:
        await get_resolver(request).ensure_profile(session, claim)
    bind_owner_context("profile", claim.subject_id)
    return ProfileOwner(user_id=claim.subject_id)
