from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Settings(BaseSettings):
    # Core
    app_name: str = Field(default="monami-server")
    environment: str = Field(default="dev")  # dev|staging|prod
    log_json: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    # Auth provider (JWKS or shared HS256 secret)
    auth_issuer: str | None = Field(default=None)
    auth_jwks_url: str | None = Field(default=None)
    auth_audience: str | None = Field(default=None)
    auth_jwt_secret: str | None = Field(default=None)
    auth_disable_verification: bool = Field(default=False)

    # Data
    database_url: str | None = Field(default=None)

    # API
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    api_origin: str | None = Field(default=None)

    # Guest sessions
    guest_cookie_name: str = Field(default="guestSession")
    guest_cookie_domain: str | None = Field(default=None)
    guest_cookie_max_age_seconds: int = Field(default=31536000, ge=60)
    guest_cookie_signing_key: str | None = Field(default=None)
    guest_cache_ttl_seconds: int = Field(default=300, ge=1)
    guest_cache_sweep_interval_seconds: int = Field(default=600, ge=1)

    # Observability
    metrics_enabled: bool = Field(default=True)
    sentry_dsn: str | None = Field(default=None)
    sentry_traces_sample_rate: float = Field(default=0.0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _csv_to_list(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @property
    def is_dev(self) -> bool:
        return (self.environment or "dev").lower() == "dev"


@lru_cache
def get_settings() -> Settings:
    return Settings()
