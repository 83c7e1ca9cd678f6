"""Guest-to-profile conversion.

Runs as one transaction: lock the guest row, check state and secret, flip the
guest to converted, rewrite the owner columns of every owned table, write the
audit row, commit. Only a successful commit has side effects; every other
outcome rolls back without writing. The guest token cache entry is dropped
after commit so a cached secret can't keep the converted guest alive.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import OWNED_MODELS, Guest, GuestConversion
from ..observability import short_id
from .guest_cache import GuestTokenCache
from .session_cookie import secrets_match

logger = logging.getLogger(__name__)


class ConversionOutcome(str, enum.Enum):
    CONVERTED = "converted"
    ALREADY_CONVERTED_SAME_USER = "already_converted_same_user"
    ALREADY_CONVERTED_DIFFERENT_USER = "already_converted_different_user"
    GUEST_NOT_FOUND = "guest_not_found"
    INVALID_SECRET = "invalid_secret"

    @property
    def succeeded(self) -> bool:
        return self in (ConversionOutcome.CONVERTED, ConversionOutcome.ALREADY_CONVERTED_SAME_USER)


@dataclass(frozen=True)
class ConversionResult:
    outcome: ConversionOutcome
    records_transferred: int = 0


@dataclass(frozen=True)
class RequestProvenance:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _already_converted(guest_user_id: Optional[str], user_id: str) -> ConversionResult:
    if guest_user_id == user_id:
        return ConversionResult(ConversionOutcome.ALREADY_CONVERTED_SAME_USER)
    return ConversionResult(ConversionOutcome.ALREADY_CONVERTED_DIFFERENT_USER)


async def convert_guest(
    session: AsyncSession,
    *,
    user_id: str,
    guest_id: str,
    secret: str,
    provenance: Optional[RequestProvenance] = None,
    cache: Optional[GuestTokenCache] = None,
) -> ConversionResult:
    provenance = provenance or RequestProvenance()
    try:
        result = await _convert_in_transaction(
            session, user_id=user_id, guest_id=guest_id, secret=secret, provenance=provenance
        )
    except Exception:
        await session.rollback()
        logger.exception("Guest conversion failed for %s", short_id(guest_id))
        raise

    if result.outcome is ConversionOutcome.CONVERTED:
        # Must follow the commit; before it a racing request could re-cache the old secret.
        if cache is not None:
            cache.invalidate(guest_id)
        logger.info(
            "Converted guest %s to profile %s (%d records)",
            short_id(guest_id),
            short_id(user_id),
            result.records_transferred,
        )
    else:
        logger.info("Guest conversion for %s ended with %s", short_id(guest_id), result.outcome.value)
    return result


async def _convert_in_transaction(
    session: AsyncSession,
    *,
    user_id: str,
    guest_id: str,
    secret: str,
    provenance: RequestProvenance,
) -> ConversionResult:
    guest = (
        await session.execute(
            select(Guest)
            .where(Guest.id == guest_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()

    if guest is None:
        await session.rollback()
        return ConversionResult(ConversionOutcome.GUEST_NOT_FOUND)

    if guest.converted_to_profile:
        converted_user_id = guest.converted_user_id
        await session.rollback()
        return _already_converted(converted_user_id, user_id)

    if not secrets_match(secret, guest.conversion_token):
        await session.rollback()
        return ConversionResult(ConversionOutcome.INVALID_SECRET)

    # Guard in the WHERE clause as well as the lock, for backends without row locks.
    flipped = await session.execute(
        update(Guest)
        .where(Guest.id == guest_id, Guest.converted_to_profile.is_(False))
        .values(converted_to_profile=True, converted_user_id=user_id, converted_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount != 1:
        await session.rollback()
        current = await session.get(Guest, guest_id, populate_existing=True)
        return _already_converted(current.converted_user_id if current else None, user_id)

    transferred = 0
    for model in OWNED_MODELS:
        moved = await session.execute(
            update(model)
            .where(model.owner_guest_id == guest_id)
            .values(owner_guest_id=None, owner_profile_id=user_id)
            .execution_options(synchronize_session=False)
        )
        transferred += moved.rowcount or 0

    user_agent = provenance.user_agent[:512] if provenance.user_agent else None
    session.add(
        GuestConversion(
            guest_id=guest_id,
            converted_user_id=user_id,
            ip_address=provenance.ip_address,
            user_agent=user_agent,
            records_transferred=transferred,
        )
    )
    await session.commit()
    return ConversionResult(ConversionOutcome.CONVERTED, records_transferred=transferred)
