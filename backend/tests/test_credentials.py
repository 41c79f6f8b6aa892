"""Tests for credential validity, refresh with rotation, grant storage, and disconnect."""

import pytest
from sqlalchemy import select

from fitclub.core.errors import CredentialRefreshFailed, NotConnected
from fitclub.models.strava_credentials import StravaCredentials
from fitclub.models.user import User
from fitclub.schemas.activity import TokenGrant
from fitclub.services.credentials import CredentialManager, is_token_expired
from fitclub.services.crypto import decrypt_token

NOW = 1_717_200_000


def test_skew_buffer_boundaries():
    assert is_token_expired(NOW + 200, now=NOW) is True
    assert is_token_expired(NOW + 400, now=NOW) is False
    assert is_token_expired(NOW + 300, now=NOW) is True
    assert is_token_expired(NOW - 10, now=NOW) is True
    assert is_token_expired(None, now=NOW) is True


@pytest.mark.asyncio
async def test_token_near_expiry_is_refreshed_and_rotated(session, seed, strava_client, fake_strava):
    uid = await seed.user("a@club.test")
    await seed.connect(uid, access_token="old-access", refresh_token="old-refresh", expires_at=NOW + 200)
    fake_strava.refresh_grants["old-refresh"] = {
        "access_token": "new-access",
        "refresh_token": "new-refresh",
        "expires_at": NOW + 21600,
    }
    manager = CredentialManager(session, strava_client, clock=lambda: NOW)
    assert await manager.get_valid_access_token(uid) == "new-access"
    await session.commit()

    assert fake_strava.token_calls()[0]["grant_type"] == "refresh_token"
    creds = (await session.execute(select(StravaCredentials).where(StravaCredentials.user_id == uid))).scalar_one()
    assert creds.access_token == "new-access"
    assert creds.expires_at == NOW + 21600
    # stored encrypted, never in clear
    assert creds.encrypted_refresh_token != "new-refresh"
    assert decrypt_token(creds.encrypted_refresh_token) == "new-refresh"


@pytest.mark.asyncio
async def test_token_outside_buffer_is_used_as_is(session, seed, strava_client, fake_strava):
    uid = await seed.user("b@club.test")
    await seed.connect(uid, access_token="still-good", expires_at=NOW + 400)
    manager = CredentialManager(session, strava_client, clock=lambda: NOW)
    assert await manager.get_valid_access_token(uid) == "still-good"
    assert fake_strava.token_calls() == []


@pytest.mark.asyncio
async def test_missing_credential_raises_not_connected(session, seed, strava_client):
    uid = await seed.user("c@club.test")
    with pytest.raises(NotConnected) as exc:
        await CredentialManager(session, strava_client).get_valid_access_token(uid)
    assert exc.value.user_id == uid


@pytest.mark.asyncio
async def test_rejected_refresh_raises_and_keeps_old_tokens(session, seed, strava_client):
    uid = await seed.user("d@club.test")
    await seed.connect(uid, access_token="old-access", refresh_token="revoked", expires_at=NOW - 1)
    manager = CredentialManager(session, strava_client, clock=lambda: NOW)
    with pytest.raises(CredentialRefreshFailed):
        await manager.get_valid_access_token(uid)
    creds = (await session.execute(select(StravaCredentials).where(StravaCredentials.user_id == uid))).scalar_one()
    assert creds.access_token == "old-access"


@pytest.mark.asyncio
async def test_store_grant_creates_credential_and_marks_connected(session, seed, strava_client):
    uid = await seed.user("e@club.test")
    grant = TokenGrant(access_token="acc", refresh_token="ref", expires_at=NOW + 21600, athlete={"id": 99})
    await CredentialManager(session, strava_client).store_grant(uid, grant)
    await session.commit()
    user = await session.get(User, uid)
    assert user.strava_connected is True
    creds = (await session.execute(select(StravaCredentials).where(StravaCredentials.user_id == uid))).scalar_one()
    assert creds.strava_athlete_id == 99
    assert decrypt_token(creds.encrypted_refresh_token) == "ref"


@pytest.mark.asyncio
async def test_disconnect_nulls_tokens_and_keeps_row(session, seed, strava_client):
    uid = await seed.user("f@club.test")
    await seed.connect(uid)
    manager = CredentialManager(session, strava_client)
    assert await manager.disconnect(uid) is True
    await session.commit()
    creds = (await session.execute(select(StravaCredentials).where(StravaCredentials.user_id == uid))).scalar_one()
    assert creds.access_token is None
    assert creds.encrypted_refresh_token is None
    assert creds.expires_at is None
    assert (await session.get(User, uid)).strava_connected is False
    with pytest.raises(NotConnected):
        await manager.get_valid_access_token(uid)


@pytest.mark.asyncio
async def test_disconnect_without_credential_returns_false(session, seed, strava_client):
    uid = await seed.user("g@club.test")
    assert await CredentialManager(session, strava_client).disconnect(uid) is False
