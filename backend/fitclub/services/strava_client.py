"""
Strava API client: OAuth code exchange/refresh, list athlete activities, and normalization
of raw activity payloads into NormalizedActivity.
All activity requests go through _get_activities_page() to track rate limits.
"""
import asyncio
import logging
import time
from datetime import date, datetime, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
from prometheus_client import Counter

from fitclub.config import Settings, settings
from fitclub.core.errors import CredentialRefreshFailed, FetchFailed, RateLimited
from fitclub.schemas.activity import NormalizedActivity, TokenGrant
from fitclub.services.http_client import get_http_client

logger = logging.getLogger(__name__)

STRAVA_REQUESTS = Counter(
    "fitclub_strava_requests_total",
    "Requests sent to the Strava API",
    ["endpoint", "status"],
)

# Strava: 200/15min, 2000/day. Stop short of the hard limits.
THRESHOLD_15MIN = 180
THRESHOLD_DAILY = 1900
MAX_BACKOFF_SECONDS = 60

CATEGORY_MAP = {
    "Ride": "cycling",
    "VirtualRide": "cycling",
    "E-BikeRide": "cycling",
    "EBikeRide": "cycling",
    "Run": "run",
    "VirtualRun": "run",
    "Walk": "walk",
    "Hike": "hiking",
    "Swim": "swimming",
}


def normalize_category(source_type: str | None) -> str:
    """Map a Strava activity type to a club category; unknown types pass through lowercased."""
    if not source_type:
        return "unknown"
    return CATEGORY_MAP.get(source_type, source_type.lower())


def _parse_utc(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _local_date(item: dict) -> date | None:
    # start_date_local carries the athlete's wall clock with a bogus "Z"; only the date part is meaningful
    raw = item.get("start_date_local")
    if isinstance(raw, str) and len(raw) >= 10:
        try:
            return date.fromisoformat(raw[:10])
        except ValueError:
            pass
    start = _parse_utc(item.get("start_date"))
    return start.date() if start else None


def normalize_activity(item: dict, user_id: int) -> NormalizedActivity | None:
    """Raw Strava activity -> NormalizedActivity. None when id or start time is missing."""
    external_id = item.get("id")
    start = _parse_utc(item.get("start_date")) or _parse_utc(item.get("start_date_local"))
    local_day = _local_date(item)
    if external_id is None or start is None or local_day is None:
        logger.debug("Skipping Strava activity without id/start: %s", item.get("id"))
        return None
    return NormalizedActivity(
        user_id=user_id,
        external_id=int(external_id),
        name=item.get("name"),
        category=normalize_category(item.get("type")),
        distance_m=float(item.get("distance") or 0),
        moving_time_s=int(item.get("moving_time") or 0),
        elapsed_time_s=int(item.get("elapsed_time") or 0),
        elevation_m=float(item.get("total_elevation_gain") or 0),
        local_date=local_day,
        start_instant=start,
    )


def normalize_activities(items: list[dict], user_id: int) -> list[NormalizedActivity]:
    out = []
    for item in items:
        act = normalize_activity(item, user_id)
        if act is not None:
            out.append(act)
    return out


class RequestCounter:
    """In-memory request log per process, for the 15-minute and daily Strava windows."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._usage_15min: list[float] = []
        self._usage_daily: list[float] = []

    def _trim(self) -> None:
        now = self._clock()
        self._usage_15min = [t for t in self._usage_15min if t > now - 15 * 60]
        self._usage_daily = [t for t in self._usage_daily if t > now - 86400]

    def can_make_request(self) -> bool:
        self._trim()
        return len(self._usage_15min) < THRESHOLD_15MIN and len(self._usage_daily) < THRESHOLD_DAILY

    def record(self) -> None:
        t = self._clock()
        self._usage_15min.append(t)
        self._usage_daily.append(t)

    def usage(self) -> tuple[int, int]:
        """Return (current 15min count, current daily count)."""
        self._trim()
        return len(self._usage_15min), len(self._usage_daily)


request_counter = RequestCounter()


def _retry_after_seconds(response: httpx.Response) -> int | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0, int(float(raw)))
    except ValueError:
        return None


def _log_response_error(method: str, url: str, response: httpx.Response) -> None:
    """Log HTTP error without sensitive data."""
    body = (response.text or "")[:500]
    logger.warning("Strava %s %s -> %s body=%s", method, url, response.status_code, body)


class StravaClient:
    """Outbound client for the Strava token and activities endpoints."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        config: Settings = settings,
        counter: RequestCounter | None = None,
        sleep=asyncio.sleep,
    ):
        self._http = http_client
        self.config = config
        self.counter = counter or request_counter
        self._sleep = sleep

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http or get_http_client()

    def authorization_url(self, state: str | None = None) -> str:
        params = {
            "client_id": self.config.strava_client_id,
            "redirect_uri": self.config.strava_redirect_uri,
            "response_type": "code",
            "scope": self.config.strava_scope,
            "approval_prompt": "force",
        }
        if state:
            params["state"] = state
        return f"{self.config.strava_authorize_url}?{urlencode(params)}"

    async def _token_request(self, payload: dict[str, str], grant: str) -> TokenGrant:
        body = {
            "client_id": self.config.strava_client_id,
            "client_secret": self.config.strava_client_secret,
            **payload,
            "grant_type": grant,
        }
        url = self.config.strava_oauth_url
        try:
            r = await self.http.post(url, json=body)
        except httpx.HTTPError as e:
            STRAVA_REQUESTS.labels("token", "error").inc()
            raise CredentialRefreshFailed(f"Strava token request failed: {e}") from e
        STRAVA_REQUESTS.labels("token", str(r.status_code)).inc()
        if r.status_code >= 400:
            _log_response_error("POST", url, r)
            raise CredentialRefreshFailed(
                f"Strava {grant} grant failed: HTTP {r.status_code}", status_code=r.status_code
            )
        try:
            return TokenGrant.model_validate(r.json())
        except ValueError as e:
            raise CredentialRefreshFailed(f"Strava {grant} grant returned an invalid body") from e

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange authorization code for tokens."""
        grant = await self._token_request({"code": code}, "authorization_code")
        logger.info("Strava token exchange successful (athlete_id=%s)", grant.athlete_id)
        return grant

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access/refresh pair. The refresh token may rotate."""
        grant = await self._token_request({"refresh_token": refresh_token}, "refresh_token")
        logger.info("Strava token refreshed (expires_at=%s)", grant.expires_at)
        return grant

    async def _get_activities_page(
        self,
        access_token: str,
        after: int | None,
        before: int | None,
        page: int,
        per_page: int,
    ) -> list[dict]:
        url = f"{self.config.strava_api_base}/athlete/activities"
        params: dict[str, int] = {"per_page": per_page}
        if after is not None:
            params["after"] = after
        if before is not None:
            params["before"] = before
        if page > 1:
            params["page"] = page
        attempt = 0
        while True:
            if not self.counter.can_make_request():
                raise RateLimited("Strava rate limit threshold reached; try again later.")
            self.counter.record()
            try:
                r = await self.http.get(url, params=params, headers={"Authorization": f"Bearer {access_token}"})
            except httpx.HTTPError as e:
                STRAVA_REQUESTS.labels("activities", "error").inc()
                raise FetchFailed(f"Strava activities request failed: {e}") from e
            STRAVA_REQUESTS.labels("activities", str(r.status_code)).inc()
            if r.status_code == 429:
                retry_after = _retry_after_seconds(r)
                delay = retry_after if retry_after is not None else self.config.strava_retry_base_seconds * 2 ** attempt
                if attempt >= self.config.strava_max_retries or delay > MAX_BACKOFF_SECONDS:
                    raise RateLimited(retry_after=retry_after)
                logger.warning("Strava 429 on activities; retrying in %.1fs (attempt %s)", delay, attempt + 1)
                await self._sleep(delay)
                attempt += 1
                continue
            if r.status_code >= 400:
                _log_response_error("GET", url, r)
                raise FetchFailed(f"Failed to fetch activities: HTTP {r.status_code}", status_code=r.status_code)
            data = r.json() if r.content else []
            return data if isinstance(data, list) else []

    async def fetch_activities(
        self,
        access_token: str,
        *,
        after: int | None = None,
        before: int | None = None,
        page_size: int | None = None,
    ) -> list[dict]:
        """
        Raw activities, newest first. after/before are Unix seconds (advisory: re-filter client-side).
        Omitting both returns the most recent page_size activities. Pages beyond the first are
        requested only when strava_max_pages > 1 and the previous page was full.
        """
        per_page = page_size or self.config.strava_page_size
        max_pages = max(1, self.config.strava_max_pages)
        all_activities: list[dict] = []
        page = 1
        while True:
            batch = await self._get_activities_page(access_token, after, before, page, per_page)
            all_activities.extend(batch)
            if len(batch) < per_page or page >= max_pages:
                break
            page += 1
        logger.info(
            "Fetched %s activities from Strava (after=%s before=%s pages=%s)",
            len(all_activities), after, before, page,
        )
        return all_activities
