"""Event leaderboard."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fitclub.api.deps import get_current_user, get_source
from fitclub.db.session import get_db
from fitclub.models.user import User
from fitclub.schemas.leaderboard import Leaderboard
from fitclub.services.activity_sources import ActivitySource
from fitclub.services.leaderboard import ALL_TYPES, load_event_leaderboard

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/{event_id}/leaderboard")
async def get_event_leaderboard(
    event_id: int,
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    source: Annotated[ActivitySource, Depends(get_source)],
    activity_type: str = ALL_TYPES,
) -> Leaderboard:
    """Paid registrants ranked by distinct eligible days, optionally for one activity type."""
    board = await load_event_leaderboard(session, event_id, source, activity_type)
    await session.commit()
    return board
