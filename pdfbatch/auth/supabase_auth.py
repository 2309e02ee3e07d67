"""Supabase JWT validation dependency for FastAPI."""

import asyncio
import logging
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException
from pydantic import BaseModel
from supabase import Client, create_client

from pdfbatch.config import settings

logger = logging.getLogger(__name__)


class AuthenticatedUser(BaseModel):
    id: str
    email: Optional[str] = None


@lru_cache(maxsize=1)
def _anon_client() -> Client:
    return create_client(settings.supabase_url, settings.supabase_anon_key)


async def verify_jwt(authorization: str = Header(None)) -> AuthenticatedUser:
    """Validate Supabase JWT from Authorization header.

    Returns the authenticated user; every batch-job query is scoped by its id.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")

    token = authorization[len("Bearer "):].strip()
    try:
        loop = asyncio.get_running_loop()
        user_response = await loop.run_in_executor(None, _anon_client().auth.get_user, token)
    except Exception as exc:
        logger.info("Token rejected: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    user = getattr(user_response, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return AuthenticatedUser(id=str(user.id), email=getattr(user, "email", None))
