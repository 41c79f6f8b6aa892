"""FastAPI dependencies: current user from the identity provider JWT, admin guard, sync collaborators."""

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fitclub.config import settings
from fitclub.core.auth import decode_token
from fitclub.db.session import get_db
from fitclub.models.user import User
from fitclub.services.activity_cache import ActivityCache, CacheStore, MemoryCacheStore, SyncThrottle
from fitclub.services.activity_sources import ActivitySource, get_activity_source
from fitclub.services.strava_client import StravaClient

logger = logging.getLogger(__name__)


async def get_current_user(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = auth_header[7:].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    email = (payload.get("email") or "").strip().lower()
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token")
    r = await session.execute(select(User).where(User.email == email))
    user = r.scalar_one_or_none()
    if user is None:
        # First request after sign-up: the identity provider owns the account, we own the profile
        meta = payload.get("user_metadata") or {}
        user = User(email=email, first_name=meta.get("first_name"), last_name=meta.get("last_name"))
        session.add(user)
        await session.flush()
        logger.info("Created profile for %s (user_id=%s)", email, user.id)
    return user


async def require_admin(
    user: Annotated[User, Depends(get_current_user)],
) -> User:
    """Require role == admin or an allow-listed email. Raises 403 otherwise."""
    if user.role != "admin" and user.email.lower() not in settings.admin_email_set:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def get_strava_client() -> StravaClient:
    return StravaClient()


def get_cache_store(request: Request) -> CacheStore:
    store = getattr(request.app.state, "cache_store", None)
    if store is None:
        store = MemoryCacheStore()
        request.app.state.cache_store = store
    return store


def get_activity_cache(store: Annotated[CacheStore, Depends(get_cache_store)]) -> ActivityCache:
    return ActivityCache(
        store,
        ttl_seconds=settings.activity_cache_ttl_seconds,
        prefix=settings.activity_cache_prefix,
    )


def get_sync_throttle(store: Annotated[CacheStore, Depends(get_cache_store)]) -> SyncThrottle:
    return SyncThrottle(
        store,
        interval_seconds=settings.auto_sync_interval_seconds,
        prefix=settings.auto_sync_prefix,
    )


def get_source(
    session: Annotated[AsyncSession, Depends(get_db)],
    client: Annotated[StravaClient, Depends(get_strava_client)],
    cache: Annotated[ActivityCache, Depends(get_activity_cache)],
) -> ActivitySource:
    return get_activity_source(settings.activity_source, session, client, cache=cache)
