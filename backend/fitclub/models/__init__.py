from fitclub.models.user import User
from fitclub.models.strava_credentials import StravaCredentials
from fitclub.models.activity import Activity
from fitclub.models.event import Event
from fitclub.models.event_registration import EventRegistration
from fitclub.models.event_activity import EventActivity

__all__ = [
    "User",
    "StravaCredentials",
    "Activity",
    "Event",
    "EventRegistration",
    "EventActivity",
]
