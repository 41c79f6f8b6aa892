"""
Activity sources: one interface over credential -> fetch -> normalize, with three storage variants.

* persisted   - upsert into the global activities table keyed by external_id
* on_demand   - fetch per request, write through the short-TTL ActivityCache, no durable writes
* event_table - upsert into the event's partition of event_activities, restricted to the event window

The leaderboard only depends on NormalizedActivity, so it works with any of them.
"""
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fitclub.config import Settings, settings
from fitclub.core.errors import EventNotStarted, FitclubError, NotConnected, PersistenceFailed
from fitclub.db.upsert import upsert_statement
from fitclub.models.activity import Activity
from fitclub.models.event import Event
from fitclub.models.event_activity import EventActivity
from fitclub.models.event_registration import PAYMENT_PAID, EventRegistration
from fitclub.schemas.activity import NormalizedActivity, SyncResult
from fitclub.services.activity_cache import ActivityCache
from fitclub.services.credentials import CredentialManager
from fitclub.services.date_range import (
    as_utc,
    end_of_day_utc,
    start_of_day_utc,
    to_epoch_seconds,
    within_range,
)
from fitclub.services.event_partitions import provision_event_partition
from fitclub.services.strava_client import StravaClient, normalize_activities

logger = logging.getLogger(__name__)

_NORMALIZED_FIELDS = tuple(NormalizedActivity.model_fields)


def _to_normalized(row: Activity | EventActivity) -> NormalizedActivity:
    act = NormalizedActivity.model_validate({f: getattr(row, f) for f in _NORMALIZED_FIELDS})
    act.start_instant = as_utc(act.start_instant)
    return act


def event_window(event: Event) -> tuple[datetime | None, datetime]:
    """[local start-of-day of start_date, local end-of-day of end_date or now] as UTC instants."""
    start = start_of_day_utc(event.start_date)
    end = end_of_day_utc(event.end_date)
    return start, end


class ActivitySource(ABC):
    name: str = ""

    def __init__(
        self,
        session: AsyncSession,
        client: StravaClient,
        *,
        credentials: CredentialManager | None = None,
        config: Settings = settings,
    ):
        self.session = session
        self.client = client
        self.credentials = credentials or CredentialManager(session, client)
        self.config = config

    async def fetch_normalized(
        self,
        user_id: int,
        *,
        after: int | None = None,
        before: int | None = None,
    ) -> list[NormalizedActivity]:
        """Valid credential (refreshing if needed) -> one Strava query -> normalized activities."""
        access_token = await self.credentials.get_valid_access_token(user_id)
        raw = await self.client.fetch_activities(
            access_token, after=after, before=before, page_size=self.config.strava_page_size
        )
        return normalize_activities(raw, user_id)

    @abstractmethod
    async def sync(
        self,
        user_id: int,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> SyncResult:
        """Bring the source up to date for one user."""

    @abstractmethod
    async def activities(
        self,
        user_id: int,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        force_refresh: bool = False,
    ) -> list[NormalizedActivity]:
        """Normalized activities for one user, optionally bounded by UTC instants."""

    async def sync_event(self, event: Event, user_id: int, now: datetime | None = None) -> SyncResult:
        """Sync one registrant for one event. Default: sync the event window."""
        start, end = event_window(event)
        return await self.sync(user_id, start=start, end=end)

    async def event_activities(self, event: Event, user_ids: Iterable[int]) -> dict[int, list[NormalizedActivity]]:
        """Activities per participant within the event window."""
        start, end = event_window(event)
        out: dict[int, list[NormalizedActivity]] = {}
        for uid in user_ids:
            try:
                out[uid] = await self.activities_in_range(uid, start, end)
            except NotConnected:
                logger.info("Leaderboard: user_id=%s has no Strava connection", uid)
                out[uid] = []
            except FitclubError as e:
                logger.warning("Leaderboard: activities unavailable for user_id=%s: %s", uid, e)
                out[uid] = []
        return out

    async def recent_activities(self, user_id: int, limit: int = 5) -> list[NormalizedActivity]:
        acts = await self.activities(user_id)
        return sorted(acts, key=lambda a: a.start_instant, reverse=True)[:limit]

    async def activities_in_range(
        self,
        user_id: int,
        start: datetime | None,
        end: datetime,
    ) -> list[NormalizedActivity]:
        """Activities whose UTC start lies in [start, end]; the API bounds are advisory so re-filter."""
        if start is None:
            return []
        acts = await self.activities(user_id, start=start, end=end)
        return [a for a in acts if within_range(a.start_instant, start, end)]

    async def month_count(self, user_id: int, today: date | None = None) -> int:
        today = today or date.today()
        start = start_of_day_utc(today.replace(day=1))
        acts = await self.activities(user_id, start=start)
        return sum(1 for a in acts if as_utc(a.start_instant) >= start)

    async def _upsert_each(self, model: type, rows: list[dict], conflict: list[str]) -> tuple[int, int]:
        """Upsert rows one by one inside savepoints; a failed row is counted as skipped, not fatal."""
        synced = skipped = 0
        for row in rows:
            stmt = upsert_statement(self.session, model, [row], conflict)
            try:
                async with self.session.begin_nested():
                    await self.session.execute(stmt)
            except SQLAlchemyError as e:
                skipped += 1
                logger.warning("Error saving activity %s: %s", row.get("external_id"), e)
                continue
            synced += 1
        return synced, skipped


class PersistedActivitySource(ActivitySource):
    name = "persisted"

    async def sync(self, user_id: int, *, start: datetime | None = None, end: datetime | None = None) -> SyncResult:
        after = to_epoch_seconds(start) if start else None
        before = to_epoch_seconds(end) if end else None
        normalized = await self.fetch_normalized(user_id, after=after, before=before)
        now = datetime.now(timezone.utc)
        rows = [{**a.model_dump(), "synced_at": now} for a in normalized]
        synced, skipped = await self._upsert_each(Activity, rows, ["external_id"])
        logger.info("Persisted sync: user_id=%s synced=%s skipped=%s", user_id, synced, skipped)
        return SyncResult(fetched=len(normalized), synced=synced, skipped=skipped)

    async def activities(
        self,
        user_id: int,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        force_refresh: bool = False,
    ) -> list[NormalizedActivity]:
        q = select(Activity).where(Activity.user_id == user_id)
        if start is not None:
            q = q.where(Activity.start_instant >= as_utc(start))
        if end is not None:
            q = q.where(Activity.start_instant <= as_utc(end))
        try:
            r = await self.session.execute(q.order_by(Activity.start_instant.desc()))
        except SQLAlchemyError as e:
            raise PersistenceFailed(f"Failed to load activities for user_id={user_id}") from e
        return [_to_normalized(row) for row in r.scalars().all()]


class OnDemandActivitySource(ActivitySource):
    name = "on_demand"

    def __init__(self, session: AsyncSession, client: StravaClient, *, cache: ActivityCache | None = None, **kwargs):
        super().__init__(session, client, **kwargs)
        self.cache = cache

    async def activities(
        self,
        user_id: int,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        force_refresh: bool = False,
    ) -> list[NormalizedActivity]:
        after = to_epoch_seconds(start) if start else None
        before = to_epoch_seconds(end) if end else None
        shape = ActivityCache.query_shape(after, before)
        if self.cache is not None and not force_refresh:
            cached = await self.cache.get(user_id, shape)
            if cached is not None:
                return cached.activities
        acts = await self.fetch_normalized(user_id, after=after, before=before)
        if self.cache is not None:
            await self.cache.set(user_id, shape, acts)
        return acts

    async def sync(self, user_id: int, *, start: datetime | None = None, end: datetime | None = None) -> SyncResult:
        acts = await self.activities(user_id, start=start, end=end, force_refresh=True)
        return SyncResult(fetched=len(acts), synced=len(acts))


class EventTableActivitySource(ActivitySource):
    name = "event_table"

    async def sync_event(self, event: Event, user_id: int, now: datetime | None = None) -> SyncResult:
        table = await provision_event_partition(self.session, event.id, now=now)
        if table is None:
            raise EventNotStarted(event.id)
        start, end = event_window(event)
        if start is None:
            logger.error("Invalid start date for event %s: %r", event.id, event.start_date)
            return SyncResult()
        logger.info(
            "Event %s range (UTC): %s to %s", event.id, start.isoformat(), end.isoformat()
        )
        normalized = await self.fetch_normalized(
            user_id, after=to_epoch_seconds(start), before=to_epoch_seconds(end)
        )
        in_window = [a for a in normalized if within_range(a.start_instant, start, end)]
        filtered_out = len(normalized) - len(in_window)
        if filtered_out:
            logger.info("Skipped %s activities outside the event window for user_id=%s", filtered_out, user_id)
        rows = [{**a.model_dump(), "event_id": event.id} for a in in_window]
        synced, skipped = await self._upsert_each(EventActivity, rows, ["event_id", "external_id"])
        logger.info("Event %s sync: user_id=%s synced=%s skipped=%s", event.id, user_id, synced, skipped)
        return SyncResult(fetched=len(normalized), synced=synced, skipped=skipped, filtered_out=filtered_out)

    async def user_events(self, user_id: int) -> list[Event]:
        """Active, provisioned events the user has a paid registration for."""
        r = await self.session.execute(
            select(Event)
            .join(EventRegistration, EventRegistration.event_id == Event.id)
            .where(
                EventRegistration.user_id == user_id,
                EventRegistration.payment_status == PAYMENT_PAID,
                Event.is_active.is_(True),
                Event.activity_table_created.is_(True),
            )
            .order_by(Event.start_date.desc())
        )
        return list(r.scalars().all())

    async def sync(self, user_id: int, *, start: datetime | None = None, end: datetime | None = None) -> SyncResult:
        # fail with NotConnected even when the user has no events to sync into
        await self.credentials.get_valid_access_token(user_id)
        total = SyncResult()
        for event in await self.user_events(user_id):
            result = await self.sync_event(event, user_id)
            total.fetched += result.fetched
            total.synced += result.synced
            total.skipped += result.skipped
            total.filtered_out += result.filtered_out
        return total

    async def activities(
        self,
        user_id: int,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        force_refresh: bool = False,
    ) -> list[NormalizedActivity]:
        q = select(EventActivity).where(EventActivity.user_id == user_id)
        if start is not None:
            q = q.where(EventActivity.start_instant >= as_utc(start))
        if end is not None:
            q = q.where(EventActivity.start_instant <= as_utc(end))
        try:
            r = await self.session.execute(q.order_by(EventActivity.start_instant.desc()))
        except SQLAlchemyError as e:
            raise PersistenceFailed(f"Failed to load event activities for user_id={user_id}") from e
        seen: set[int] = set()
        out = []
        for row in r.scalars().all():
            # the same Strava activity can sit in several event partitions
            if row.external_id in seen:
                continue
            seen.add(row.external_id)
            out.append(_to_normalized(row))
        return out

    async def event_activities(self, event: Event, user_ids: Iterable[int]) -> dict[int, list[NormalizedActivity]]:
        out: dict[int, list[NormalizedActivity]] = {uid: [] for uid in user_ids}
        try:
            r = await self.session.execute(select(EventActivity).where(EventActivity.event_id == event.id))
        except SQLAlchemyError as e:
            raise PersistenceFailed(f"Failed to load activities for event {event.id}") from e
        for row in r.scalars().all():
            if row.user_id in out:
                out[row.user_id].append(_to_normalized(row))
        return out


SOURCES: dict[str, type[ActivitySource]] = {
    PersistedActivitySource.name: PersistedActivitySource,
    OnDemandActivitySource.name: OnDemandActivitySource,
    EventTableActivitySource.name: EventTableActivitySource,
}


def get_activity_source(
    name: str,
    session: AsyncSession,
    client: StravaClient,
    *,
    cache: ActivityCache | None = None,
    config: Settings = settings,
) -> ActivitySource:
    """Pick the deployment's activity source by name (settings.activity_source)."""
    try:
        cls = SOURCES[name]
    except KeyError:
        raise ValueError(f"Unknown activity source: {name!r}") from None
    if cls is OnDemandActivitySource:
        return cls(session, client, cache=cache, config=config)
    return cls(session, client, config=config)
