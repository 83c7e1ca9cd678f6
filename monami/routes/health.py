from __future__ import annotations

import os
from fastapi import APIRouter, Request
from ..config import get_settings


router = APIRouter()


@router.get("/health")
def health(request: Request):
    s = get_settings()
    cache = getattr(request.app.state, "guest_cache", None)
    return {
        "status": "ok",
        "service": s.app_name,
        "env": s.environment,
        "pid": os.getpid(),
        "guestCacheEntries": len(cache) if cache is not None else 0,
    }
