from __future__ import annotations

from dataclasses import dataclass, field
import threading
import time
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt

from .config import Settings, get_settings


_http = httpx.Client(timeout=5)
_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthClaim:
    """Verified subject of a bearer token."""

    subject_id: str
    email: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


class JWKSCache:
    def __init__(self, ttl_seconds: float = 600) -> None:
        self._jwks: Optional[Dict[str, Any]] = None
        self._exp_ts: float = 0.0
        self._ttl = ttl_seconds
        self._lock = threading.Lock()

    def get(self, url: str) -> Dict[str, Any]:
        with self._lock:
            now = time.time()
            if self._jwks is None or now >= self._exp_ts:
                resp = _http.get(url)
                resp.raise_for_status()
                self._jwks = resp.json()
                self._exp_ts = now + self._ttl
            return self._jwks  # type: ignore[return-value]


_jwks_cache = JWKSCache()


def _decode_with_jwks(token: str, settings: Settings) -> Dict[str, Any]:
    if not settings.auth_issuer:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Auth issuer not configured")

    jwks_url = settings.auth_jwks_url or settings.auth_issuer.rstrip("/") + "/.well-known/jwks.json"
    jwks = _jwks_cache.get(jwks_url)

    unverified = jwt.get_unverified_header(token)
    kid = unverified.get("kid")
    key = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
    if not key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Signing key not found")
    return jwt.decode(
        token,
        key,
        algorithms=[key.get("alg", "RS256")],
        audience=settings.auth_audience,
        issuer=settings.auth_issuer,
    )


def _decode_with_secret(token: str, settings: Settings) -> Dict[str, Any]:
    options = {"verify_aud": bool(settings.auth_audience)}
    return jwt.decode(
        token,
        settings.auth_jwt_secret,
        algorithms=["HS256"],
        audience=settings.auth_audience,
        issuer=settings.auth_issuer,
        options=options,
    )


def verify_token(token: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    settings = settings or get_settings()
    if settings.auth_disable_verification:
        # Dev mode: do not verify signature. Not for production.
        try:
            return jwt.get_unverified_claims(token)
        except Exception as e:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

    try:
        if settings.auth_jwt_secret:
            return _decode_with_secret(token, settings)
        return _decode_with_jwks(token, settings)
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"JWT verification failed: {e}")


def claim_from_token(token: str, settings: Optional[Settings] = None) -> AuthClaim:
    claims = verify_token(token, settings)
    subject = claims.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token: no sub")
    email = claims.get("email") or claims.get("email_address")
    return AuthClaim(subject_id=str(subject), email=email or None, claims=claims)


def get_optional_claim(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Optional[AuthClaim]:
    """Claim for the request, or ``None`` for an anonymous caller.

    A token that is present but fails verification is a 401, not a guest.
    """
    if not creds or creds.scheme.lower() != "bearer":
        return None
    return claim_from_token(creds.credentials)


def get_current_claim(claim: Optional[AuthClaim] = Depends(get_optional_claim)) -> AuthClaim:
    if claim is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return claim
