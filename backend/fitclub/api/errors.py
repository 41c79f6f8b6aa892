"""Map pipeline errors to HTTP responses for single-user operations."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from fitclub.core.errors import (
    CredentialRefreshFailed,
    EventNotFound,
    EventNotStarted,
    FetchFailed,
    FitclubError,
    NotConnected,
    PersistenceFailed,
    RateLimited,
)

logger = logging.getLogger(__name__)

_STATUS = [
    (NotConnected, 400),
    (CredentialRefreshFailed, 401),
    (RateLimited, 429),
    (FetchFailed, 502),
    (EventNotFound, 404),
    (EventNotStarted, 409),
    (PersistenceFailed, 500),
]


def status_for(exc: FitclubError) -> int:
    for cls, status in _STATUS:
        if isinstance(exc, cls):
            return status
    return 500


async def fitclub_error_handler(request: Request, exc: FitclubError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, status, exc)
    headers = {}
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, CredentialRefreshFailed):
        detail = "Strava authorization expired. Please reconnect your Strava account."
    else:
        detail = str(exc)
    return JSONResponse(status_code=status, content={"detail": detail}, headers=headers or None)
