"""
Event activity partitions.

All event activities live in one event_activities table keyed by (event_id, external_id). An
event's partition is "provisioned" lazily, no earlier than the event start: provisioning records
the partition name on the event and flips activity_table_created. Dropping deletes the event's
rows and clears both.
"""
import logging
import re
from datetime import date, datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fitclub.core.errors import EventNotFound, PersistenceFailed
from fitclub.models.event import Event
from fitclub.models.event_activity import EventActivity
from fitclub.services.date_range import as_utc, start_of_day_utc

logger = logging.getLogger(__name__)

PARTITION_PREFIX = "event_activities_"
MAX_NAME_LENGTH = 63  # PostgreSQL identifier limit


def partition_name(event_name: str) -> str:
    """event_activities_<lowercased name with non-alphanumerics collapsed to single underscores>."""
    sanitized = re.sub(r"[^a-z0-9]", "_", (event_name or "").lower())
    sanitized = re.sub(r"_+", "_", sanitized).strip("_")
    return (PARTITION_PREFIX + sanitized)[:MAX_NAME_LENGTH]


def _started(start_date: date, now: datetime | None = None) -> bool:
    start = start_of_day_utc(start_date)
    return start is not None and start <= as_utc(now or datetime.now(timezone.utc))


def has_started(event: Event, now: datetime | None = None) -> bool:
    """True from local midnight of the event start date."""
    return _started(event.start_date, now)


async def get_event(session: AsyncSession, event_id: int) -> Event:
    try:
        event = await session.get(Event, event_id)
    except SQLAlchemyError as e:
        raise PersistenceFailed(f"Failed to load event {event_id}") from e
    if event is None:
        raise EventNotFound(event_id)
    return event


async def provision_event_partition(session: AsyncSession, event_id: int, now: datetime | None = None) -> str | None:
    """Ensure the event's partition exists. Returns its name, or None if the event has not started."""
    event = await get_event(session, event_id)
    if event.activity_table_created and event.activity_table_name:
        return event.activity_table_name
    if not has_started(event, now):
        logger.info("Event %s has not started; partition not provisioned", event_id)
        return None
    event.activity_table_name = partition_name(event.name)
    event.activity_table_created = True
    try:
        await session.flush()
    except SQLAlchemyError as e:
        raise PersistenceFailed(f"Failed to provision partition for event {event_id}") from e
    logger.info("Provisioned activity partition %s for event %s", event.activity_table_name, event_id)
    return event.activity_table_name


async def drop_event_partition(session: AsyncSession, event_id: int) -> bool:
    """Delete all of the event's activities and clear its partition. False if never provisioned."""
    event = await get_event(session, event_id)
    if event.activity_table_name is None:
        return False
    try:
        r = await session.execute(delete(EventActivity).where(EventActivity.event_id == event_id))
        event.activity_table_name = None
        event.activity_table_created = False
        await session.flush()
    except SQLAlchemyError as e:
        raise PersistenceFailed(f"Failed to drop partition for event {event_id}") from e
    logger.info("Dropped activity partition for event %s (%s rows)", event_id, r.rowcount)
    return True


async def provision_started_events(session: AsyncSession, now: datetime | None = None) -> int:
    """Provision every active event that has started but has no partition yet. Returns the count."""
    now = now or datetime.now(timezone.utc)
    r = await session.execute(
        select(Event.id, Event.start_date).where(
            Event.is_active.is_(True),
            Event.activity_table_created.is_(False),
        )
    )
    created = 0
    for event_id, start_date in r.all():
        if not _started(start_date, now):
            continue
        if await provision_event_partition(session, event_id, now=now):
            created += 1
    return created
