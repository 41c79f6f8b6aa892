"""Admin: event activity partitions and force-sync of every paid registrant."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fitclub.api.deps import get_activity_cache, get_source, get_strava_client, require_admin
from fitclub.config import settings
from fitclub.core.errors import EventNotStarted
from fitclub.db.session import async_session_maker, get_db
from fitclub.models.user import User
from fitclub.schemas.activity import NormalizedActivity, SyncTally
from fitclub.services.activity_cache import ActivityCache
from fitclub.services.activity_sources import ActivitySource, get_activity_source
from fitclub.services.event_partitions import drop_event_partition, get_event, provision_event_partition
from fitclub.services.event_sync import (
    paid_participants,
    sync_all_registered,
    sync_all_registered_concurrently,
)
from fitclub.services.strava_client import StravaClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/events", tags=["admin"])


@router.post("/{event_id}/partition")
async def create_partition(
    event_id: int,
    session: Annotated[AsyncSession, Depends(get_db)],
    admin: Annotated[User, Depends(require_admin)],
) -> dict:
    """Provision the event's activity partition (only once the event has started)."""
    name = await provision_event_partition(session, event_id)
    if name is None:
        raise EventNotStarted(event_id)
    await session.commit()
    return {"event_id": event_id, "table_name": name}


@router.delete("/{event_id}/partition")
async def delete_partition(
    event_id: int,
    session: Annotated[AsyncSession, Depends(get_db)],
    admin: Annotated[User, Depends(require_admin)],
) -> dict:
    """Delete every activity synced for the event and clear its partition."""
    dropped = await drop_event_partition(session, event_id)
    await session.commit()
    logger.info("Admin %s dropped partition for event %s: %s", admin.email, event_id, dropped)
    return {"event_id": event_id, "dropped": dropped}


@router.post("/{event_id}/sync")
async def sync_event_registrants(
    event_id: int,
    session: Annotated[AsyncSession, Depends(get_db)],
    admin: Annotated[User, Depends(require_admin)],
    source: Annotated[ActivitySource, Depends(get_source)],
    client: Annotated[StravaClient, Depends(get_strava_client)],
    cache: Annotated[ActivityCache, Depends(get_activity_cache)],
) -> SyncTally:
    """Force-sync every paid registrant. Per-user failures are counted, never raised."""
    if settings.sync_concurrency > 1:
        await get_event(session, event_id)
        tally = await sync_all_registered_concurrently(
            async_session_maker,
            event_id,
            lambda s: get_activity_source(settings.activity_source, s, client, cache=cache),
            concurrency=settings.sync_concurrency,
        )
    else:
        tally = await sync_all_registered(session, event_id, source)
        await session.commit()
    logger.info("Admin %s synced event %s: %s", admin.email, event_id, tally.model_dump())
    return tally


@router.get("/{event_id}/activities")
async def list_event_activities(
    event_id: int,
    session: Annotated[AsyncSession, Depends(get_db)],
    admin: Annotated[User, Depends(require_admin)],
    source: Annotated[ActivitySource, Depends(get_source)],
) -> list[NormalizedActivity]:
    """All in-window activities of the event's paid registrants, newest first."""
    event = await get_event(session, event_id)
    user_ids = await paid_participants(session, event_id)
    by_user = await source.event_activities(event, user_ids)
    acts = [a for user_acts in by_user.values() for a in user_acts]
    return sorted(acts, key=lambda a: a.start_instant, reverse=True)
