from __future__ import annotations

import logging
from typing import Iterable, Tuple

from .config import Settings

logger = logging.getLogger(__name__)


def _collect_missing(settings: Settings, pairs: Iterable[Tuple[str, str]]) -> list[str]:
    missing: list[str] = []
    for attr, label in pairs:
        value = getattr(settings, attr, None)
        if value in (None, "", [], {}):
            missing.append(label)
    return missing


def _auth_pairs(settings: Settings) -> list[Tuple[str, str]]:
    if settings.auth_disable_verification:
        return []
    # A shared secret is enough on its own; otherwise the JWKS issuer is required.
    if settings.auth_jwt_secret:
        return []
    return [("auth_issuer", "AUTH_ISSUER"), ("auth_audience", "AUTH_AUDIENCE")]


def validate_settings(settings: Settings) -> None:
    """Fail fast when mandatory secrets/config values are missing for non-dev envs."""
    environment = (settings.environment or "dev").lower()

    recommended = [
        ("database_url", "DATABASE_URL"),
        ("guest_cookie_signing_key", "GUEST_COOKIE_SIGNING_KEY"),
    ] + _auth_pairs(settings)

    if environment == "dev":
        dev_missing = _collect_missing(settings, recommended)
        if dev_missing:
            logger.warning(
                "Running in dev without recommended settings; guest cookies may be unsigned: %s",
                ", ".join(dev_missing),
            )
        return

    if settings.auth_disable_verification:
        raise RuntimeError(
            f"AUTH_DISABLE_VERIFICATION is not allowed in environment '{environment}'"
        )

    missing = _collect_missing(settings, recommended + [("api_origin", "API_ORIGIN")])
    if missing:
        raise RuntimeError(
            f"Missing required configuration for environment '{environment}': {', '.join(sorted(missing))}"
        )
