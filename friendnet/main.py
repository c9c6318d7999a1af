"""Application entry point for the friend network API."""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Iterable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .database import init_db
from .routers import directory_router, friends_router, presence_router, realtime_router
from .services import FriendNetworkError, event_bus, get_store, sweep_stale_presence
from .services.realtime import friend_stream_manager

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

APP_NAME = settings.app_name
API_VERSION = settings.api_version
DISABLE_PRESENCE_SWEEP = settings.disable_presence_sweep or os.getenv("PYTEST_CURRENT_TEST") is not None

app = FastAPI(title=APP_NAME, version=API_VERSION)

cors_origins = os.getenv("CORS_ORIGINS")
if cors_origins:
    origins: Iterable[str] = [origin.strip() for origin in cors_origins.split(",") if origin.strip()]
else:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(friends_router)
app.include_router(directory_router)
app.include_router(presence_router)
app.include_router(realtime_router)

_sweep_task: asyncio.Task[None] | None = None
_sweep_stop = asyncio.Event()
_detach_stream: Callable[[], None] | None = None


@app.exception_handler(FriendNetworkError)
async def friend_network_error_handler(request: Request, exc: FriendNetworkError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("Friend network error on %s: %s", request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


async def _run_sweep_once() -> None:
    """Execute a single stale presence sweep in a worker thread."""

    try:
        await asyncio.to_thread(sweep_stale_presence, get_store(), window=settings.heartbeat_window)
    except Exception:
        logger.exception("Presence sweep failed")


async def _sweep_loop() -> None:
    """Background task that flips expired heartbeats to offline on a fixed interval."""

    while not _sweep_stop.is_set():
        await _run_sweep_once()
        try:
            await asyncio.wait_for(_sweep_stop.wait(), timeout=settings.sweep_interval.total_seconds())
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def _startup() -> None:
    """Ensure database schema, event fan-out and background tasks are ready before serving."""

    try:
        init_db()
    except Exception:
        logger.exception("Database initialisation failed")
        raise

    global _detach_stream
    if _detach_stream is None:
        _detach_stream = friend_stream_manager.attach(event_bus, asyncio.get_running_loop(), store=get_store())

    if DISABLE_PRESENCE_SWEEP:
        logger.info("Presence sweep disabled")
        return

    global _sweep_task
    if _sweep_task is None or _sweep_task.done():
        _sweep_stop.clear()
        _sweep_task = asyncio.create_task(_sweep_loop())


@app.on_event("shutdown")
async def _shutdown() -> None:
    """Stop background tasks cleanly during application shutdown."""

    global _detach_stream
    if _detach_stream is not None:
        _detach_stream()
        _detach_stream = None

    _sweep_stop.set()
    if _sweep_task is not None:
        try:
            await _sweep_task
        except asyncio.CancelledError:
            pass


@app.get("/api", tags=["system"])
def api_info() -> dict[str, str]:
    return {"service": APP_NAME, "version": API_VERSION}


@app.get("/health", tags=["system"])
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
