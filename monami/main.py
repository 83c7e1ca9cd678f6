from __future__ import annotations

from contextlib import asynccontextmanager
import os
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from .config import Settings, get_settings
from .db import dispose_engine, init_engine
from .observability import clear_request_context, configure_logging, init_sentry
from .services.guest_cache import GuestTokenCache
from .services.identity import IdentityResolver
from .startup import validate_settings
from .routes import auth, conversations, health, me


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        clear_request_context()
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    cache: GuestTokenCache = app.state.guest_cache
    cache.start()
    try:
        yield
    finally:
        await cache.stop()
        await dispose_engine()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    s = settings or get_settings()
    configure_logging(json_logs=s.log_json, level=s.log_level)
    init_sentry(s)
    validate_settings(s)
    app = FastAPI(title=s.app_name, lifespan=lifespan)

    init_engine(s.database_url)

    # One cache per app; the resolver and the conversion route share it.
    cache = GuestTokenCache(
        ttl_seconds=s.guest_cache_ttl_seconds,
        sweep_interval_seconds=s.guest_cache_sweep_interval_seconds,
    )
    app.state.guest_cache = cache
    app.state.identity_resolver = IdentityResolver(s, cache)

    # Guest cookies ride on cross-site requests from the web client.
    origins: List[str] = s.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    prefix = "/v1"
    app.include_router(health.router, prefix=prefix)
    app.include_router(auth.router, prefix=prefix)
    app.include_router(me.router, prefix=prefix)
    app.include_router(conversations.router, prefix=prefix)

    if s.metrics_enabled:
        Instrumentator().instrument(app).expose(app, include_in_schema=False)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(
        "monami.main:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips=os.environ.get("FORWARDED_ALLOW_IPS", "127.0.0.1"),
    )
