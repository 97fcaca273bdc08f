"""SessionLens FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionlens import config
from sessionlens.models import CanonicalEvent
from sessionlens.observability import initialize as initialize_observability, shutdown as shutdown_observability
from sessionlens.parsers.platforms.registry import detect_provider
from sessionlens.routers import api
from sessionlens.routers.api import projects_router, providers_router, sessions_router
from sessionlens.services.session_watcher import session_watcher

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("sessionlens")


def _log_new_events(session_path: str, events: list[CanonicalEvent]) -> None:
    logger.info("Session %s: %d new events", session_path, len(events))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("SessionLens backend starting up")
    initialize_observability(app)

    provider = detect_provider()
    api.set_provider(provider)
    app.state.provider = provider

    if config.WATCH_ENABLED:
        active = provider.find_active_session(api.workspace_path())
        if active:
            reader = provider.create_reader(active)
            # Start at the current tail; only later activity is reported.
            reader.read_new()
            session_watcher.register(active, reader, _log_new_events)
        await session_watcher.start(provider)

    yield

    logger.info("SessionLens backend shutting down")
    await session_watcher.stop()
    api.set_provider(None)
    shutdown_observability(app)


app = FastAPI(
    title="SessionLens API",
    description="Normalized sessions, statistics and mind-map graphs for AI coding CLIs",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for the dashboard dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(providers_router)
app.include_router(sessions_router)
app.include_router(projects_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "provider": api.get_provider().id,
        "watcher": "running" if session_watcher.is_running else "stopped",
    }


def run() -> None:
    import uvicorn

    uvicorn.run("sessionlens.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
