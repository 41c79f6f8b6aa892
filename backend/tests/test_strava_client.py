"""Tests for the Strava client: category mapping, normalization, token grants, activity fetch with 429 backoff."""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import FAR_FUTURE, raw_activity
from fitclub.core.errors import CredentialRefreshFailed, FetchFailed, RateLimited
from fitclub.services.strava_client import (
    THRESHOLD_15MIN,
    RequestCounter,
    StravaClient,
    normalize_activity,
    normalize_category,
)


@pytest.mark.parametrize(
    "source_type,expected",
    [
        ("Ride", "cycling"),
        ("VirtualRide", "cycling"),
        ("E-BikeRide", "cycling"),
        ("Run", "run"),
        ("VirtualRun", "run"),
        ("Walk", "walk"),
        ("Hike", "hiking"),
        ("Swim", "swimming"),
        ("FutureSportXYZ", "futuresportxyz"),
        ("Yoga", "yoga"),
        (None, "unknown"),
    ],
)
def test_normalize_category(source_type, expected):
    assert normalize_category(source_type) == expected


def test_normalize_activity_maps_fields():
    item = {
        "id": 987654321,
        "name": "Morning Ride",
        "type": "Ride",
        "distance": 25000.5,
        "moving_time": 3600,
        "elapsed_time": 3900,
        "total_elevation_gain": 210.0,
        "start_date": "2024-06-01T23:30:00Z",
        "start_date_local": "2024-06-02T01:30:00Z",
    }
    act = normalize_activity(item, user_id=7)
    assert act.user_id == 7
    assert act.external_id == 987654321
    assert act.category == "cycling"
    assert act.distance_m == 25000.5
    assert act.moving_time_s == 3600
    assert act.elapsed_time_s == 3900
    assert act.elevation_m == 210.0
    # the day bucket comes from the athlete's wall clock, not UTC
    assert act.local_date == date(2024, 6, 2)
    assert act.start_instant == datetime(2024, 6, 1, 23, 30, tzinfo=timezone.utc)


def test_normalize_activity_defaults_and_missing_fields():
    act = normalize_activity({"id": 1, "type": "Walk", "start_date": "2024-06-01T08:00:00Z"}, user_id=1)
    assert act.distance_m == 0.0
    assert act.moving_time_s == 0
    assert act.local_date == date(2024, 6, 1)
    assert normalize_activity({"type": "Run", "start_date": "2024-06-01T08:00:00Z"}, user_id=1) is None
    assert normalize_activity({"id": 2, "type": "Run"}, user_id=1) is None


def test_authorization_url_carries_state(strava_client):
    url = strava_client.authorization_url(state="17")
    q = parse_qs(urlparse(url).query)
    assert q["client_id"] == ["12345"]
    assert q["response_type"] == ["code"]
    assert q["scope"] == ["activity:read_all"]
    assert q["state"] == ["17"]


@pytest.mark.asyncio
async def test_exchange_code_posts_json_body(strava_client, fake_strava):
    grant = await strava_client.exchange_code("the-code")
    assert grant.access_token == "code-access"
    assert grant.refresh_token == "code-refresh"
    assert grant.expires_at == FAR_FUTURE
    assert grant.athlete_id == 4242
    body = fake_strava.token_calls()[0]
    assert body == {
        "client_id": "12345",
        "client_secret": "strava-secret",
        "code": "the-code",
        "grant_type": "authorization_code",
    }


@pytest.mark.asyncio
async def test_refresh_rejected_raises_credential_refresh_failed(strava_client):
    with pytest.raises(CredentialRefreshFailed) as exc:
        await strava_client.refresh_access_token("unknown-refresh")
    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_refresh_unreachable_raises_credential_refresh_failed():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(boom)) as http:
        client = StravaClient(http, counter=RequestCounter(), sleep=AsyncMock())
        with pytest.raises(CredentialRefreshFailed):
            await client.refresh_access_token("r")


@pytest.mark.asyncio
async def test_fetch_activities_sends_bounds_and_page_size(strava_client, fake_strava):
    fake_strava.activities["tok"] = [raw_activity(1, date(2024, 6, 1))]
    items = await strava_client.fetch_activities("tok", after=1717200000, before=1718999999)
    assert [i["id"] for i in items] == [1]
    req = fake_strava.activity_calls()[0]
    assert req.headers["Authorization"] == "Bearer tok"
    assert req.url.params["per_page"] == "200"
    assert req.url.params["after"] == "1717200000"
    assert req.url.params["before"] == "1718999999"
    assert "page" not in req.url.params


@pytest.mark.asyncio
async def test_fetch_activities_without_bounds_is_recent_query(strava_client, fake_strava):
    fake_strava.activities["tok"] = []
    assert await strava_client.fetch_activities("tok") == []
    params = fake_strava.activity_calls()[0].url.params
    assert "after" not in params and "before" not in params


@pytest.mark.asyncio
async def test_fetch_activities_single_page_by_default(strava_client, fake_strava):
    fake_strava.activities["tok"] = [raw_activity(i, date(2024, 6, 1)) for i in range(3)]
    items = await strava_client.fetch_activities("tok", page_size=3)
    assert len(items) == 3
    assert len(fake_strava.activity_calls()) == 1


@pytest.mark.asyncio
async def test_fetch_activities_follows_pages_when_enabled(strava_http, fake_strava):
    from fitclub.config import settings

    config = settings.model_copy(update={"strava_max_pages": 3})
    client = StravaClient(strava_http, config=config, counter=RequestCounter(), sleep=AsyncMock())
    fake_strava.activity_responses = [
        httpx.Response(200, json=[raw_activity(1, date(2024, 6, 1)), raw_activity(2, date(2024, 6, 1))]),
        httpx.Response(200, json=[raw_activity(3, date(2024, 6, 2))]),
    ]
    items = await client.fetch_activities("tok", page_size=2)
    assert [i["id"] for i in items] == [1, 2, 3]
    calls = fake_strava.activity_calls()
    assert len(calls) == 2
    assert calls[1].url.params["page"] == "2"


@pytest.mark.asyncio
async def test_non_2xx_raises_fetch_failed(strava_client, fake_strava):
    fake_strava.activity_responses = [httpx.Response(500, json={"message": "error"})]
    with pytest.raises(FetchFailed) as exc:
        await strava_client.fetch_activities("tok")
    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_429_is_retried_with_retry_after(strava_http, fake_strava):
    sleep = AsyncMock()
    client = StravaClient(strava_http, counter=RequestCounter(), sleep=sleep)
    fake_strava.activities["tok"] = [raw_activity(5, date(2024, 6, 1))]
    fake_strava.activity_responses = [httpx.Response(429, headers={"Retry-After": "7"}, json={})]
    items = await client.fetch_activities("tok")
    assert [i["id"] for i in items] == [5]
    sleep.assert_awaited_once_with(7)


@pytest.mark.asyncio
async def test_429_backs_off_exponentially_then_gives_up(strava_http, fake_strava):
    sleep = AsyncMock()
    client = StravaClient(strava_http, counter=RequestCounter(), sleep=sleep)
    fake_strava.activity_responses = [httpx.Response(429, json={}) for _ in range(3)]
    with pytest.raises(RateLimited) as exc:
        await client.fetch_activities("tok")
    assert exc.value.status_code == 429
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
    assert len(fake_strava.activity_calls()) == 3


@pytest.mark.asyncio
async def test_429_with_long_retry_after_fails_fast(strava_http, fake_strava):
    sleep = AsyncMock()
    client = StravaClient(strava_http, counter=RequestCounter(), sleep=sleep)
    fake_strava.activity_responses = [httpx.Response(429, headers={"Retry-After": "900"}, json={})]
    with pytest.raises(RateLimited) as exc:
        await client.fetch_activities("tok")
    assert exc.value.retry_after == 900
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_local_threshold_blocks_requests(strava_http, fake_strava):
    counter = RequestCounter(clock=lambda: 1000.0)
    for _ in range(THRESHOLD_15MIN):
        counter.record()
    client = StravaClient(strava_http, counter=counter, sleep=AsyncMock())
    with pytest.raises(RateLimited):
        await client.fetch_activities("tok")
    assert fake_strava.activity_calls() == []


def test_request_counter_window_expires():
    now = [0.0]
    counter = RequestCounter(clock=lambda: now[0])
    counter.record()
    assert counter.usage() == (1, 1)
    now[0] = 15 * 60 + 1
    assert counter.usage() == (0, 1)


@pytest.mark.asyncio
async def test_uses_shared_client_when_none_injected(fake_strava):
    from fitclub.services.http_client import close_http_client, get_http_client, init_http_client

    shared = init_http_client(transport=httpx.MockTransport(fake_strava.handler))
    try:
        assert init_http_client() is shared
        fake_strava.activities["tok"] = []
        await StravaClient(counter=RequestCounter()).fetch_activities("tok")
        req = fake_strava.activity_calls()[0]
        assert req.headers["User-Agent"].startswith("fitclub-backend")
    finally:
        await close_http_client()
    with pytest.raises(RuntimeError):
        get_http_client()
