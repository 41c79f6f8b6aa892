"""
Batch sync of an event's paid registrants, and the throttled sync that runs when a member opens
the app. One user's failure never aborts the batch: it is logged and counted in the tally.
"""
import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fitclub.core.errors import EventNotStarted, FitclubError, NotConnected, PersistenceFailed
from fitclub.models.event import Event
from fitclub.models.event_registration import PAYMENT_PAID, EventRegistration
from fitclub.schemas.activity import AutoSyncReport, SyncResult, SyncTally
from fitclub.services.activity_cache import SyncThrottle
from fitclub.services.activity_sources import ActivitySource, EventTableActivitySource
from fitclub.services.event_partitions import get_event, has_started, provision_event_partition

logger = logging.getLogger(__name__)

REGISTRANT_SYNCS = Counter(
    "fitclub_registrant_syncs_total",
    "Per-registrant outcomes of event batch syncs",
    ["outcome"],
)

SYNCED = "synced"
NO_CREDENTIAL = "no_credential"
ERRORED = "errored"


async def paid_participants(session: AsyncSession, event_id: int) -> list[int]:
    """User ids with a paid registration for the event, in registration order, each once."""
    try:
        r = await session.execute(
            select(EventRegistration.user_id)
            .where(
                EventRegistration.event_id == event_id,
                EventRegistration.payment_status == PAYMENT_PAID,
            )
            .order_by(EventRegistration.registration_date, EventRegistration.id)
        )
    except SQLAlchemyError as e:
        raise PersistenceFailed(f"Failed to load registrations for event {event_id}") from e
    seen: set[int] = set()
    out = []
    for uid in r.scalars().all():
        if uid not in seen:
            seen.add(uid)
            out.append(uid)
    return out


async def _ensure_started(session: AsyncSession, event: Event, source: ActivitySource, now: datetime | None) -> None:
    if isinstance(source, EventTableActivitySource):
        if await provision_event_partition(session, event.id, now=now) is None:
            raise EventNotStarted(event.id)
    elif not has_started(event, now):
        raise EventNotStarted(event.id)


async def _sync_registrant(
    source: ActivitySource,
    event: Event,
    user_id: int,
    now: datetime | None,
) -> tuple[str, SyncResult | None]:
    try:
        result = await source.sync_event(event, user_id, now=now)
    except NotConnected:
        logger.info("Event %s: no Strava credential for user_id=%s, skipping", event.id, user_id)
        return NO_CREDENTIAL, None
    except (FitclubError, SQLAlchemyError) as e:
        logger.warning("Event %s: error syncing user_id=%s: %s", event.id, user_id, e)
        return ERRORED, None
    return SYNCED, result


def _record(tally: SyncTally, outcome: str, result: SyncResult | None) -> None:
    REGISTRANT_SYNCS.labels(outcome).inc()
    if outcome == SYNCED:
        tally.synced += 1
        tally.activities_synced += result.synced
        tally.activities_skipped += result.skipped
    elif outcome == NO_CREDENTIAL:
        tally.no_credential += 1
    else:
        tally.errored += 1


async def sync_all_registered(
    session: AsyncSession,
    event_id: int,
    source: ActivitySource,
    *,
    now: datetime | None = None,
) -> SyncTally:
    """Sync every paid registrant of the event one after another on the given session."""
    event = await get_event(session, event_id)
    await _ensure_started(session, event, source, now)
    user_ids = await paid_participants(session, event_id)
    tally = SyncTally(total=len(user_ids))
    logger.info("Event %s: syncing %s registered users", event_id, len(user_ids))
    for uid in user_ids:
        _record(tally, *await _sync_registrant(source, event, uid, now))
    logger.info(
        "Event %s sync complete: %s synced, %s without credentials, %s errors",
        event_id, tally.synced, tally.no_credential, tally.errored,
    )
    return tally


async def sync_all_registered_concurrently(
    session_maker: async_sessionmaker,
    event_id: int,
    make_source: Callable[[AsyncSession], ActivitySource],
    *,
    concurrency: int = 5,
    now: datetime | None = None,
) -> SyncTally:
    """
    Same as sync_all_registered but with up to `concurrency` registrants in flight. Each registrant
    gets its own session (an AsyncSession is not safe for concurrent use) and commits on its own.
    The commit also runs after a failed fetch so a refresh token rotated before the failure is kept.
    A failed commit counts the registrant as errored.
    """
    async with session_maker() as session:
        event = await get_event(session, event_id)
        await _ensure_started(session, event, make_source(session), now)
        await session.commit()
        user_ids = await paid_participants(session, event_id)

    tally = SyncTally(total=len(user_ids))
    sem = asyncio.Semaphore(max(1, concurrency))

    async def run_one(uid: int) -> None:
        async with sem:
            async with session_maker() as s:
                outcome, result = await _sync_registrant(make_source(s), event, uid, now)
                try:
                    await s.commit()
                except SQLAlchemyError as e:
                    logger.warning("Event %s: commit failed for user_id=%s: %s", event.id, uid, e)
                    outcome, result = ERRORED, None
                    try:
                        await s.rollback()
                    except SQLAlchemyError as rollback_error:
                        logger.warning("Event %s: rollback failed for user_id=%s: %s", event.id, uid, rollback_error)
                _record(tally, outcome, result)

    await asyncio.gather(*[run_one(uid) for uid in user_ids])
    logger.info(
        "Event %s sync complete: %s synced, %s without credentials, %s errors",
        event_id, tally.synced, tally.no_credential, tally.errored,
    )
    return tally


async def user_started_events(session: AsyncSession, user_id: int, now: datetime | None = None) -> list[Event]:
    """Active events the user paid for that have already started."""
    now = now or datetime.now(timezone.utc)
    r = await session.execute(
        select(Event)
        .join(EventRegistration, EventRegistration.event_id == Event.id)
        .where(
            EventRegistration.user_id == user_id,
            EventRegistration.payment_status == PAYMENT_PAID,
            Event.is_active.is_(True),
        )
        .order_by(Event.start_date)
    )
    return [e for e in r.scalars().unique().all() if has_started(e, now)]


async def auto_sync_on_login(
    session: AsyncSession,
    user_id: int,
    source: ActivitySource,
    throttle: SyncThrottle,
    *,
    now: datetime | None = None,
) -> AutoSyncReport:
    """
    Sync the user into every started event they paid for, at most once per throttle interval.
    The throttle is only advanced when every event synced, so a failure is retried on the next visit.
    """
    if not await throttle.due(user_id):
        logger.debug("Auto-sync skipped for user_id=%s (synced recently)", user_id)
        return AutoSyncReport(ran=False)

    events = await user_started_events(session, user_id, now)
    report = AutoSyncReport(ran=True, events=len(events))
    for event in events:
        try:
            report.results[event.id] = await source.sync_event(event, user_id, now=now)
        except NotConnected:
            logger.info("Auto-sync: user_id=%s has no Strava connection", user_id)
            report.ran = False
            return report
        except (FitclubError, SQLAlchemyError) as e:
            report.errored += 1
            logger.warning("Auto-sync: event %s failed for user_id=%s: %s", event.id, user_id, e)
            continue
        report.synced += 1

    if report.errored == 0:
        await throttle.mark(user_id)
    logger.info("Auto-sync for user_id=%s: %s/%s events synced", user_id, report.synced, report.events)
    return report
