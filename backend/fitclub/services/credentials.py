"""
Strava credential lifecycle: initial grant, validity check with skew buffer, refresh + persist,
and disconnect. The refresh always rewrites the full (access, refresh, expires_at) triple since
Strava may rotate the refresh token.
"""
import logging
import time

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fitclub.config import settings
from fitclub.core.errors import NotConnected, PersistenceFailed
from fitclub.models.strava_credentials import StravaCredentials
from fitclub.models.user import User
from fitclub.schemas.activity import TokenGrant
from fitclub.services.crypto import decrypt_token, encrypt_token
from fitclub.services.strava_client import StravaClient

logger = logging.getLogger(__name__)

DEFAULT_SKEW_SECONDS = 300


def is_token_expired(expires_at: int | None, now: float | None = None, skew: int = DEFAULT_SKEW_SECONDS) -> bool:
    """True when the access token must be refreshed before use (missing expiry counts as expired)."""
    if expires_at is None:
        return True
    if now is None:
        now = time.time()
    return now >= expires_at - skew


async def load_credentials(session: AsyncSession, user_id: int) -> StravaCredentials | None:
    try:
        r = await session.execute(select(StravaCredentials).where(StravaCredentials.user_id == user_id))
    except SQLAlchemyError as e:
        raise PersistenceFailed(f"Failed to load Strava credentials for user_id={user_id}") from e
    return r.scalar_one_or_none()


class CredentialManager:
    def __init__(
        self,
        session: AsyncSession,
        client: StravaClient,
        *,
        skew_seconds: int | None = None,
        clock=time.time,
    ):
        self.session = session
        self.client = client
        self.skew_seconds = settings.token_skew_seconds if skew_seconds is None else skew_seconds
        self._clock = clock

    async def get_valid_access_token(self, user_id: int) -> str:
        """
        Return a usable access token, refreshing and persisting a new pair when within the skew buffer.
        Raises NotConnected when either token is missing; CredentialRefreshFailed propagates unretried.
        """
        creds = await load_credentials(self.session, user_id)
        refresh_token = decrypt_token(creds.encrypted_refresh_token) if creds else None
        if creds is None or not creds.access_token or not refresh_token:
            raise NotConnected(user_id)
        if not is_token_expired(creds.expires_at, self._clock(), self.skew_seconds):
            return creds.access_token
        logger.info("Strava token expired for user_id=%s, refreshing", user_id)
        grant = await self.client.refresh_access_token(refresh_token)
        await self._apply_grant(creds, grant)
        return grant.access_token

    async def _apply_grant(self, creds: StravaCredentials, grant: TokenGrant) -> None:
        creds.access_token = grant.access_token
        creds.encrypted_refresh_token = encrypt_token(grant.refresh_token)
        creds.expires_at = grant.expires_at
        if grant.athlete_id is not None:
            creds.strava_athlete_id = grant.athlete_id
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            raise PersistenceFailed(f"Failed to save Strava tokens for user_id={creds.user_id}") from e

    async def store_grant(self, user_id: int, grant: TokenGrant) -> StravaCredentials:
        """Persist tokens from the initial authorization grant and mark the profile connected."""
        creds = await load_credentials(self.session, user_id)
        if creds is None:
            creds = StravaCredentials(user_id=user_id)
            self.session.add(creds)
        user = await self.session.get(User, user_id)
        if user is not None:
            user.strava_connected = True
        await self._apply_grant(creds, grant)
        logger.info("Strava tokens saved for user_id=%s", user_id)
        return creds

    async def disconnect(self, user_id: int) -> bool:
        """Null the tokens (the record is kept) and mark the profile disconnected."""
        creds = await load_credentials(self.session, user_id)
        user = await self.session.get(User, user_id)
        if user is not None:
            user.strava_connected = False
        if creds is None:
            await self.session.flush()
            return False
        creds.access_token = None
        creds.encrypted_refresh_token = None
        creds.expires_at = None
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            raise PersistenceFailed(f"Failed to clear Strava tokens for user_id={user_id}") from e
        logger.info("Strava disconnected for user_id=%s", user_id)
        return True
