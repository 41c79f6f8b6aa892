from datetime import date

from pydantic import BaseModel, ConfigDict, Field, computed_field


class Participant(BaseModel):
    """Profile fields the leaderboard shows for a paid registrant."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    first_name: str | None = None
    last_name: str | None = None
    strava_connected: bool = False


class LeaderboardEntry(BaseModel):
    """Derived per-user standing for one event. Recomputed on every render, never stored."""

    user_id: int
    email: str
    display_name: str
    eligible_days: list[date] = Field(default_factory=list)
    eligible_activities: int = 0
    eligible_distance_m: float = 0.0
    total_activities: int = 0
    total_distance_m: float = 0.0
    strava_connected: bool = False
    rank: int = 0

    @computed_field
    @property
    def eligible_day_count(self) -> int:
        return len(self.eligible_days)


class Leaderboard(BaseModel):
    event_id: int
    event_name: str
    activity_type: str = "all"
    goal_days: int | None = None
    entries: list[LeaderboardEntry] = Field(default_factory=list)
