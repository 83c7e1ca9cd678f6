from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import AuthClaim
from ..config import Settings
from ..models import Guest, Profile, new_conversion_token
from ..observability import short_id
from . import session_cookie
from .guest_cache import GuestTokenCache
from .session_cookie import GuestCookie, GuestSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileOwner:
    user_id: str

    is_guest = False


@dataclass(frozen=True)
class GuestOwner:
    guest_id: str
    secret: str = field(repr=False)

    is_guest = True


Owner = Union[ProfileOwner, GuestOwner]


@dataclass(frozen=True)
class Resolution:
    owner: Owner
    cookie: Optional[GuestCookie] = None


def owner_filter(model: Any, owner: Owner):
    """WHERE clause scoping an owned table to ``owner``."""
    if isinstance(owner, ProfileOwner):
        return model.owner_profile_id == owner.user_id
    return model.owner_guest_id == owner.guest_id


def owner_columns(owner: Owner) -> Dict[str, Optional[str]]:
    """Ownership values for a new owned row; exactly one is non-null."""
    if isinstance(owner, ProfileOwner):
        return {"owner_profile_id": owner.user_id, "owner_guest_id": None}
    return {"owner_profile_id": None, "owner_guest_id": owner.guest_id}


async def _commit(session: AsyncSession) -> None:
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise


class IdentityResolver:
    """Attributes a request to a Profile or a Guest.

    At most one profile upsert, one guest insert, one cache write and one
    cookie per call. Storage errors propagate; nothing partial is returned.
    """

    def __init__(self, settings: Settings, cache: GuestTokenCache) -> None:
        self.settings = settings
        self.cache = cache

    async def resolve(
        self,
        session: AsyncSession,
        claim: Optional[AuthClaim],
        cookie_value: Optional[str] = None,
        *,
        request_origin: Optional[str] = None,
        api_origin: Optional[str] = None,
    ) -> Resolution:
        if claim is not None:
            await self.ensure_profile(session, claim)
            return Resolution(owner=ProfileOwner(user_id=claim.subject_id))

        presented = session_cookie.decode(cookie_value, self.settings.guest_cookie_signing_key)
        if presented is not None and await self._is_live_guest(session, presented):
            return Resolution(owner=GuestOwner(guest_id=presented.guest_id, secret=presented.secret))

        if cookie_value and presented is None:
            logger.info("Ignoring undecodable guest cookie")

        guest = await self._create_guest(session)
        created = GuestSession(guest_id=guest.id, secret=guest.conversion_token)
        cookie = session_cookie.build_guest_cookie(
            created,
            self.settings,
            request_origin=request_origin,
            api_origin=api_origin,
        )
        return Resolution(owner=GuestOwner(guest_id=created.guest_id, secret=created.secret), cookie=cookie)

    async def ensure_profile(self, session: AsyncSession, claim: AuthClaim) -> Profile:
        """Create the Profile for ``claim`` or refresh its email.

        Two first requests for the same new subject can race on the insert;
        the loser re-reads the winner's row instead of failing.
        """
        profile = await session.get(Profile, claim.subject_id)
        if profile is None:
            session.add(Profile(id=claim.subject_id, email=claim.email))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                profile = await session.get(Profile, claim.subject_id)
                if profile is None:
                    raise
                logger.info("Profile %s created concurrently; reusing", short_id(claim.subject_id))
            except Exception:
                await session.rollback()
                raise
            else:
                logger.info("Created profile for authenticated user %s", short_id(claim.subject_id))
                return await session.get(Profile, claim.subject_id)

        # A claim without an email never clears the stored one.
        if claim.email and profile.email != claim.email:
            profile.email = claim.email
            await _commit(session)
        return profile

    async def _is_live_guest(self, session: AsyncSession, presented: GuestSession) -> bool:
        cached = self.cache.get(presented.guest_id)
        if cached is not None:
            return session_cookie.secrets_match(presented.secret, cached)

        # Taken before the read so a conversion committing meanwhile blocks the re-cache.
        mark = self.cache.invalidation_mark()
        guest = await session.get(Guest, presented.guest_id)
        if guest is None or guest.converted_to_profile:
            self.cache.invalidate(presented.guest_id)
            logger.info(
                "Guest cookie for %s is %s; issuing a new guest",
                short_id(presented.guest_id),
                "unknown" if guest is None else "converted",
            )
            return False

        self.cache.put(guest.id, guest.conversion_token, since=mark)
        if not session_cookie.secrets_match(presented.secret, guest.conversion_token):
            logger.warning("Guest cookie secret mismatch for %s", short_id(presented.guest_id))
            return False
        return True

    async def _create_guest(self, session: AsyncSession) -> Guest:
        guest = Guest(id=str(uuid.uuid4()), conversion_token=new_conversion_token())
        session.add(guest)
        await _commit(session)
        self.cache.put(guest.id, guest.conversion_token)
        logger.info("Created guest %s", short_id(guest.id))
        return guest
