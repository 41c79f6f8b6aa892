"""
Process-wide httpx.AsyncClient for outbound Strava calls.
Created in the app lifespan from settings (timeout, connection limits, JSON accept header);
StravaClient uses it whenever no client is injected.
"""
from __future__ import annotations

import httpx

from fitclub.config import Settings, settings

USER_AGENT = "fitclub-backend/0.1"

_shared_client: httpx.AsyncClient | None = None


def build_http_client(config: Settings = settings, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.http_timeout_seconds, connect=10.0),
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        transport=transport,
    )


def get_http_client() -> httpx.AsyncClient:
    if _shared_client is None:
        raise RuntimeError("HTTP client not initialized; the app lifespan must call init_http_client().")
    return _shared_client


def init_http_client(config: Settings = settings, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Create the shared client once; later calls return the existing one."""
    global _shared_client
    if _shared_client is None:
        _shared_client = build_http_client(config, transport)
    return _shared_client


async def close_http_client() -> None:
    global _shared_client
    if _shared_client is not None:
        await _shared_client.aclose()
        _shared_client = None
