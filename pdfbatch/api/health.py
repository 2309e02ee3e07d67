"""Health check and cache observability endpoints."""

import platform
import sys
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from pdfbatch.api.deps import get_cache
from pdfbatch.api.envelope import ok
from pdfbatch.auth.supabase_auth import AuthenticatedUser, verify_jwt
from pdfbatch.cache.store import CacheStore

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Service health, worker pool and system info."""
    dispatcher = request.app.state.dispatcher
    return {
        "status": "healthy",
        "active_jobs": len(getattr(dispatcher, "active_jobs", ())),
        "python_version": sys.version,
        "platform": platform.platform(),
    }


@router.get("/api/cache/stats")
async def cache_stats(
    category: Optional[str] = None,
    user: AuthenticatedUser = Depends(verify_jwt),
    cache: CacheStore = Depends(get_cache),
):
    """Hit/miss/key counters, for one category or all of them."""
    if category is not None and category not in cache.categories():
        raise HTTPException(status_code=400, detail=f"Unknown cache category: {category}")
    return ok(cache.stats(category))
