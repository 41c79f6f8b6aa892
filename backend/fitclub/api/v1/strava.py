"""Strava: OAuth link/unlink, manual sync, and the dashboard activity summary."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse
from sqlalchemy.ext.asyncio import AsyncSession

from fitclub.api.deps import (
    get_activity_cache,
    get_current_user,
    get_source,
    get_strava_client,
    get_sync_throttle,
)
from fitclub.config import settings
from fitclub.core.errors import CredentialRefreshFailed
from fitclub.db.session import get_db
from fitclub.models.user import User
from fitclub.schemas.activity import ActivityResponse, SyncResult
from fitclub.services.activity_cache import ActivityCache, SyncThrottle
from fitclub.services.activity_sources import ActivitySource
from fitclub.services.credentials import CredentialManager, load_credentials
from fitclub.services.event_sync import auto_sync_on_login
from fitclub.services.strava_client import StravaClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/strava", tags=["strava"])


@router.get("/status")
async def get_strava_status(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> dict:
    """Return whether Strava is linked for the current user."""
    creds = await load_credentials(session, user.id)
    if not creds or not creds.access_token:
        return {"linked": False}
    return {"linked": True, "athlete_id": str(creds.strava_athlete_id) if creds.strava_athlete_id else None}


@router.get("/authorize-url")
async def get_authorize_url(
    user: Annotated[User, Depends(get_current_user)],
    client: Annotated[StravaClient, Depends(get_strava_client)],
) -> dict:
    """URL of the Strava consent page. State carries user_id for the callback."""
    if not settings.strava_client_id or not settings.strava_redirect_uri:
        raise HTTPException(status_code=503, detail="Strava app not configured.")
    return {"url": client.authorization_url(state=str(user.id))}


@router.get("/callback")
async def strava_callback(
    session: Annotated[AsyncSession, Depends(get_db)],
    client: Annotated[StravaClient, Depends(get_strava_client)],
    cache: Annotated[ActivityCache, Depends(get_activity_cache)],
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
):
    """Exchange code for tokens and store the credential. State must be user_id from authorize-url."""
    if error:
        raise HTTPException(status_code=400, detail=f"Strava authorization failed: {error}")
    if not code:
        raise HTTPException(status_code=400, detail="Missing code parameter.")
    if not state:
        raise HTTPException(status_code=400, detail="Missing state parameter.")
    try:
        uid = int(state)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid state.")
    if await session.get(User, uid) is None:
        raise HTTPException(status_code=400, detail="User not found.")
    try:
        grant = await client.exchange_code(code)
    except CredentialRefreshFailed as e:
        logger.error("Strava token exchange failed: %s", e)
        raise HTTPException(status_code=400, detail="Failed to exchange code for tokens.")
    await CredentialManager(session, client).store_grant(uid, grant)
    await cache.clear(uid)
    await session.commit()
    html = (
        "<!DOCTYPE html><html><head><meta charset='utf-8'><title>Strava connected</title></head><body>"
        "<p>Strava connected. You can close this window and return to the app.</p>"
        "</body></html>"
    )
    return HTMLResponse(content=html)


@router.post("/unlink")
async def unlink_strava(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    client: Annotated[StravaClient, Depends(get_strava_client)],
    cache: Annotated[ActivityCache, Depends(get_activity_cache)],
    throttle: Annotated[SyncThrottle, Depends(get_sync_throttle)],
) -> dict:
    """Clear Strava tokens and cached activities for the current user. Synced rows are kept."""
    await CredentialManager(session, client).disconnect(user.id)
    cleared = await cache.clear(user.id)
    await throttle.reset(user.id)
    await session.commit()
    return {"status": "unlinked", "cache_entries_cleared": cleared}


@router.post("/sync")
async def trigger_sync(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    source: Annotated[ActivitySource, Depends(get_source)],
) -> SyncResult:
    """Sync the current user now. Failures surface as an error response."""
    result = await source.sync(user.id)
    await session.commit()
    return result


@router.get("/activities")
async def get_dashboard_activities(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    source: Annotated[ActivitySource, Depends(get_source)],
    throttle: Annotated[SyncThrottle, Depends(get_sync_throttle)],
    limit: int = 5,
) -> dict:
    """Dashboard: throttled auto-sync into the user's events, then recent activities and this month's count."""
    report = await auto_sync_on_login(session, user.id, source, throttle)
    await session.commit()
    recent = await source.recent_activities(user.id, limit=limit)
    month_count = await source.month_count(user.id)
    return {
        "recent": [ActivityResponse.model_validate(a.model_dump()) for a in recent],
        "month_count": month_count,
        "auto_sync": report,
    }
