"""Pydantic schemas for Strava payloads and normalized activities."""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TokenGrant(BaseModel):
    """Response of the Strava token endpoint (authorization_code or refresh_token grant)."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str
    expires_at: int  # Unix seconds
    athlete: dict[str, Any] | None = None

    @property
    def athlete_id(self) -> int | None:
        if not self.athlete:
            return None
        raw = self.athlete.get("id")
        return int(raw) if raw is not None else None


class NormalizedActivity(BaseModel):
    """Canonical activity shape, independent of the source API."""

    model_config = ConfigDict(from_attributes=True)

    user_id: int
    external_id: int
    name: str | None = None
    category: str
    distance_m: float = 0.0
    moving_time_s: int = 0
    elapsed_time_s: int = 0
    elevation_m: float = 0.0
    local_date: date  # calendar-day bucket from the athlete's local start time
    start_instant: datetime  # UTC, used for range filtering


class CachedActivities(BaseModel):
    activities: list[NormalizedActivity]
    timestamp: int  # ms since epoch at write time


class ActivityResponse(BaseModel):
    """Activity as returned to the dashboard."""

    external_id: int
    name: str | None
    category: str
    distance_m: float
    moving_time_s: int
    elevation_m: float
    local_date: date
    start_instant: datetime


class SyncResult(BaseModel):
    """Outcome of syncing one user (into one store or one event)."""

    fetched: int = 0
    synced: int = 0
    skipped: int = 0
    filtered_out: int = 0


class SyncTally(BaseModel):
    """Outcome of syncing every paid registrant of an event."""

    total: int = 0
    synced: int = 0
    no_credential: int = 0
    errored: int = 0
    activities_synced: int = 0
    activities_skipped: int = 0


class AutoSyncReport(BaseModel):
    ran: bool = False
    events: int = 0
    synced: int = 0
    errored: int = 0
    results: dict[int, SyncResult] = Field(default_factory=dict)
