import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from fitclub.api.errors import fitclub_error_handler
from fitclub.api.v1 import admin_events, leaderboard, strava
from fitclub.config import settings
from fitclub.core.errors import FitclubError
from fitclub.db.session import init_db
from fitclub.services.activity_cache import RedisCacheStore, build_cache_store
from fitclub.services.http_client import close_http_client, init_http_client

# Ensure app loggers (sync, cache, Strava) print to stdout so you see them in the terminal
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logging.getLogger("fitclub").setLevel(logging.DEBUG if settings.debug else logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_production()
    await init_db()
    init_http_client(settings)
    app.state.cache_store = build_cache_store(settings)
    yield
    if isinstance(app.state.cache_store, RedisCacheStore):
        await app.state.cache_store.close()
    await close_http_client()


app = FastAPI(
    title="Fitclub API",
    description="Club fitness events: Strava activity sync and eligible-day leaderboards",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_exception_handler(FitclubError, fitclub_error_handler)

_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] if settings.cors_origins else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(strava.router, prefix="/api/v1")
app.include_router(leaderboard.router, prefix="/api/v1")
app.include_router(admin_events.router, prefix="/api/v1")

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
def health():
    return {"status": "ok"}
