"""Guest session cookie encoding and attributes.

The cookie value is ``"{guest_id}:{secret}"``. When a signing key is configured
an HMAC-SHA256 of that payload is appended after a ``.`` so a tampered or
truncated cookie is rejected outright instead of costing a storage lookup.
Neither guest ids (uuid4) nor secrets (``token_urlsafe``) contain ``:`` or ``.``.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from starlette.responses import Response

from ..config import Settings

logger = logging.getLogger(__name__)

_FIELD_SEPARATOR = ":"
_SIGNATURE_SEPARATOR = "."
MAX_COOKIE_VALUE_LENGTH = 512


@dataclass(frozen=True)
class GuestSession:
    guest_id: str
    secret: str

    def __repr__(self) -> str:
        return f"GuestSession(guest_id={self.guest_id!r})"


@dataclass(frozen=True)
class GuestCookie:
    """A ``Set-Cookie`` to emit for a freshly created guest."""

    name: str
    value: str
    max_age: int
    samesite: str
    secure: bool
    domain: Optional[str] = None
    path: str = "/"
    httponly: bool = True

    def apply(self, response: Response) -> None:
        kwargs: Dict[str, Any] = {
            "max_age": self.max_age,
            "path": self.path,
            "httponly": self.httponly,
            "secure": self.secure,
            "samesite": self.samesite,
        }
        if self.domain:
            kwargs["domain"] = self.domain
        response.set_cookie(self.name, self.value, **kwargs)

    def header_value(self) -> str:
        parts = [
            f"{self.name}={self.value}",
            f"Path={self.path}",
            f"Max-Age={self.max_age}",
        ]
        if self.httponly:
            parts.append("HttpOnly")
        parts.append(f"SameSite={self.samesite.capitalize()}")
        if self.secure:
            parts.append("Secure")
        if self.domain:
            parts.append(f"Domain={self.domain}")
        return "; ".join(parts)


def secrets_match(presented: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison of two secrets.

    Compares UTF-8 bytes: ``compare_digest`` refuses non-ASCII ``str`` and
    cookie and body values are client-controlled.
    """
    if not presented or not expected:
        return False
    return hmac.compare_digest(
        presented.encode("utf-8", "surrogatepass"),
        expected.encode("utf-8", "surrogatepass"),
    )


def _signature(payload: str, key: str) -> str:
    digest = hmac.new(key.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def encode(guest_id: str, secret: str, signing_key: Optional[str] = None) -> str:
    if not guest_id or not secret:
        raise ValueError("guest_id and secret are required")
    if _FIELD_SEPARATOR in guest_id or _SIGNATURE_SEPARATOR in guest_id:
        raise ValueError("guest_id contains a reserved separator")
    payload = f"{guest_id}{_FIELD_SEPARATOR}{secret}"
    if signing_key:
        return f"{payload}{_SIGNATURE_SEPARATOR}{_signature(payload, signing_key)}"
    return payload


def decode(value: Optional[str], signing_key: Optional[str] = None) -> Optional[GuestSession]:
    """Parse a cookie value; anything malformed or unverifiable is ``None``."""
    if not value or len(value) > MAX_COOKIE_VALUE_LENGTH:
        return None

    payload = value
    if signing_key:
        payload, sep, signature = value.rpartition(_SIGNATURE_SEPARATOR)
        if not sep or not payload or not signature:
            return None
        if not secrets_match(signature, _signature(payload, signing_key)):
            logger.info("Rejected guest cookie with bad signature")
            return None

    guest_id, sep, secret = payload.partition(_FIELD_SEPARATOR)
    if not sep or not guest_id or not secret:
        return None
    if _FIELD_SEPARATOR in secret or _SIGNATURE_SEPARATOR in secret:
        return None
    return GuestSession(guest_id=guest_id, secret=secret)


def _origin_of(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parsed = urlparse(url.strip())
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def is_cross_site(request_origin: Optional[str], api_origin: Optional[str]) -> bool:
    origin = _origin_of(request_origin)
    if origin is None:
        return False
    return origin != _origin_of(api_origin)


def build_guest_cookie(
    session: GuestSession,
    settings: Settings,
    *,
    request_origin: Optional[str] = None,
    api_origin: Optional[str] = None,
) -> GuestCookie:
    cross_site = is_cross_site(request_origin, api_origin or settings.api_origin)
    return GuestCookie(
        name=settings.guest_cookie_name,
        value=encode(session.guest_id, session.secret, settings.guest_cookie_signing_key),
        max_age=settings.guest_cookie_max_age_seconds,
        # Browsers drop SameSite=None cookies that are not Secure.
        samesite="none" if cross_site else "lax",
        secure=cross_site or not settings.is_dev,
        domain=settings.guest_cookie_domain or None,
    )
