"""
Event leaderboard: distinct eligible days per participant.

An activity counts toward a day when its category's minimum distance is met (inclusive). Several
eligible activities on the same local_date count as one day. Ranking is by eligible day count,
then eligible distance, then display name, then user id.
"""
import logging
from collections.abc import Mapping
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fitclub.core.errors import EventNotStarted
from fitclub.models.user import User
from fitclub.schemas.activity import NormalizedActivity
from fitclub.schemas.leaderboard import Leaderboard, LeaderboardEntry, Participant
from fitclub.services.activity_sources import ActivitySource, EventTableActivitySource
from fitclub.services.event_partitions import get_event, has_started, provision_event_partition
from fitclub.services.event_sync import paid_participants

logger = logging.getLogger(__name__)

ELIGIBILITY_THRESHOLDS_M: dict[str, float] = {
    "run": 3000.0,
    "walk": 3000.0,
    "hiking": 3000.0,
    "cycling": 10000.0,
    "swimming": 500.0,
}
CATEGORY_ALIASES = {"swim": "swimming"}
ALL_TYPES = "all"
MOVE_YOUR_BODY_GOAL_DAYS = 21


def _canonical(category: str | None) -> str:
    c = (category or "").lower()
    return CATEGORY_ALIASES.get(c, c)


def is_eligible(category: str | None, distance_m: float | None) -> bool:
    threshold = ELIGIBILITY_THRESHOLDS_M.get(_canonical(category))
    if threshold is None:
        return False
    return (distance_m or 0.0) >= threshold


def matches_filter(category: str | None, activity_type: str | None) -> bool:
    if not activity_type or activity_type.lower() == ALL_TYPES:
        return True
    return _canonical(category) == _canonical(activity_type)


def display_name(email: str, profile: Participant | None = None) -> str:
    local_part = (email or "").split("@")[0]
    if profile is None:
        return local_part
    name = f"{profile.first_name or ''} {profile.last_name or ''}".strip() or local_part
    return name[:1].upper() + name[1:]


def goal_days_for(event_name: str) -> int | None:
    return MOVE_YOUR_BODY_GOAL_DAYS if "move your body" in (event_name or "").lower() else None


def _entry(user_id: int, activities: list[NormalizedActivity], activity_type: str, profile: Participant | None) -> LeaderboardEntry:
    days: set[date] = set()
    eligible_activities = 0
    eligible_distance = 0.0
    total_distance = 0.0
    for act in activities:
        total_distance += act.distance_m
        if matches_filter(act.category, activity_type) and is_eligible(act.category, act.distance_m):
            days.add(act.local_date)
            eligible_activities += 1
            eligible_distance += act.distance_m
    email = profile.email if profile else ""
    return LeaderboardEntry(
        user_id=user_id,
        email=email,
        display_name=display_name(email, profile) if email else f"Member {user_id}",
        eligible_days=sorted(days),
        eligible_activities=eligible_activities,
        eligible_distance_m=eligible_distance,
        total_activities=len(activities),
        total_distance_m=total_distance,
        strava_connected=profile.strava_connected if profile else False,
    )


def build_leaderboard(
    event_id: int,
    participant_activities: Mapping[int, list[NormalizedActivity]],
    activity_type: str = ALL_TYPES,
    profiles: Mapping[int, Participant] | None = None,
) -> list[LeaderboardEntry]:
    """
    Rank the participants of one event. The keys of participant_activities are the paid
    registrants: everyone listed appears (zero stats when they have no activities), nobody else does.
    """
    profiles = profiles or {}
    entries = [
        _entry(uid, list(acts or []), activity_type, profiles.get(uid))
        for uid, acts in participant_activities.items()
    ]
    entries.sort(
        key=lambda e: (-e.eligible_day_count, -e.eligible_distance_m, e.display_name.casefold(), e.user_id)
    )
    for i, e in enumerate(entries, start=1):
        e.rank = i
    logger.debug("Leaderboard for event %s: %s entries (filter=%s)", event_id, len(entries), activity_type)
    return entries


async def load_profiles(session: AsyncSession, user_ids: list[int]) -> dict[int, Participant]:
    """Profiles by user id; a failed lookup degrades to no profiles rather than failing the page."""
    if not user_ids:
        return {}
    try:
        r = await session.execute(select(User).where(User.id.in_(user_ids)))
    except SQLAlchemyError as e:
        logger.error("Error fetching participant profiles: %s", e)
        return {}
    return {u.id: Participant.model_validate(u) for u in r.scalars().all()}


async def load_event_leaderboard(
    session: AsyncSession,
    event_id: int,
    source: ActivitySource,
    activity_type: str = ALL_TYPES,
    now: datetime | None = None,
) -> Leaderboard:
    """Build an event's leaderboard from its paid registrants and their in-window activities."""
    event = await get_event(session, event_id)
    if isinstance(source, EventTableActivitySource):
        if await provision_event_partition(session, event_id, now=now) is None:
            raise EventNotStarted(event_id)
    elif not has_started(event, now):
        raise EventNotStarted(event_id)

    user_ids = await paid_participants(session, event_id)
    profiles = await load_profiles(session, user_ids)
    activities = await source.event_activities(event, user_ids)
    entries = build_leaderboard(event_id, activities, activity_type, profiles)
    return Leaderboard(
        event_id=event.id,
        event_name=event.name,
        activity_type=activity_type or ALL_TYPES,
        goal_days=goal_days_for(event.name),
        entries=entries,
    )
