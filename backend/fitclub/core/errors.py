"""
Error taxonomy for the activity sync pipeline.
Single-user operations raise these; batch operations count them in a tally.
"""
from __future__ import annotations


class FitclubError(Exception):
    """Base class for pipeline errors."""


class NotConnected(FitclubError):
    """No usable Strava credential on file; the user must (re)connect."""

    def __init__(self, user_id: int | str | None = None, message: str | None = None):
        self.user_id = user_id
        super().__init__(message or "No Strava tokens found. Please connect your Strava account.")


class CredentialRefreshFailed(FitclubError):
    """Token endpoint rejected the refresh (or was unreachable). Reconnect required."""

    def __init__(self, message: str = "Strava token refresh failed", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class FetchFailed(FitclubError):
    """Activities endpoint returned non-2xx or could not be reached."""

    def __init__(self, message: str = "Failed to fetch activities", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimited(FetchFailed):
    """HTTP 429 persisted after backoff."""

    def __init__(self, message: str = "Strava rate limit exceeded", retry_after: int | None = None):
        self.retry_after = retry_after
        super().__init__(message, status_code=429)


class PersistenceFailed(FitclubError):
    """Persistence service rejected a select/upsert/delete."""


class EventNotFound(FitclubError):
    def __init__(self, event_id: int):
        self.event_id = event_id
        super().__init__(f"Event not found: {event_id}")


class EventNotStarted(FitclubError):
    """Event partition cannot be provisioned before the event start."""

    def __init__(self, event_id: int):
        self.event_id = event_id
        super().__init__(
            "Event has not started yet. Leaderboard will be available once the event begins."
        )
