"""API routers for providers, sessions, and project folders."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from sessionlens import config
from sessionlens.models import GraphData, ProjectFolderInfo, SearchHit, SessionStats, SessionSummary
from sessionlens.observability import start_span
from sessionlens.parsers.platforms.base import SessionProvider
from sessionlens.parsers.platforms.registry import detect_provider, list_providers
from sessionlens.services.mind_map import build_graph
from sessionlens.services.session_stats import SessionStatsAggregator

logger = logging.getLogger("sessionlens.api")

providers_router = APIRouter(prefix="/api/providers", tags=["providers"])
sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
projects_router = APIRouter(prefix="/api/projects", tags=["projects"])

_active_provider: SessionProvider | None = None


def get_provider() -> SessionProvider:
    global _active_provider
    if _active_provider is None:
        _active_provider = detect_provider()
    return _active_provider


def set_provider(provider: SessionProvider | None) -> None:
    global _active_provider
    if _active_provider is not None and _active_provider is not provider:
        _active_provider.dispose()
    _active_provider = provider


def workspace_path() -> str:
    return config.WORKSPACE_PATH or os.getcwd()


def _resolve_session_path(provider: SessionProvider, session_id: str) -> str:
    for path in provider.find_all_sessions(workspace_path()):
        if provider.extract_session_id(path) == session_id:
            return path
    raise HTTPException(status_code=404, detail=f"Session {session_id} not found")


def _read_events(provider: SessionProvider, session_path: str) -> list[Any]:
    reader = provider.create_reader(session_path)
    events = reader.read_all()
    events.extend(reader.flush())
    return events


def _session_stats(provider: SessionProvider, session_path: str, session_id: str) -> SessionStats:
    aggregator = SessionStatsAggregator(provider)
    aggregator.ingest(_read_events(provider, session_path))
    aggregator.set_subagents(provider.scan_subagents(str(Path(session_path).parent), session_id))
    snapshot = provider.current_usage_snapshot(session_path)
    if snapshot is not None:
        aggregator.stats.currentContextSize = provider.compute_context_size(snapshot)
    return aggregator.stats


# ── Providers ──

@providers_router.get("")
def get_providers():
    provider = get_provider()
    return {
        "active": provider.id,
        "providers": [info.model_dump() for info in list_providers(provider.id)],
    }


# ── Sessions ──

@sessions_router.get("", response_model=list[SessionSummary])
def list_sessions():
    provider = get_provider()
    workspace = workspace_path()
    active = provider.find_active_session(workspace)
    return [
        SessionSummary(
            id=provider.extract_session_id(path),
            path=path,
            provider=provider.id,
            label=provider.extract_session_label(path),
            isActive=path == active,
        )
        for path in provider.find_all_sessions(workspace)
    ]


@sessions_router.get("/{session_id}/events")
def get_session_events(session_id: str):
    provider = get_provider()
    session_path = _resolve_session_path(provider, session_id)
    with start_span("sessions.events", {"provider": provider.id, "session_id": session_id}):
        events = _read_events(provider, session_path)
    return [event.to_json() for event in events]


@sessions_router.get("/{session_id}/stats", response_model=SessionStats)
def get_session_stats(session_id: str):
    provider = get_provider()
    session_path = _resolve_session_path(provider, session_id)
    with start_span("sessions.stats", {"provider": provider.id, "session_id": session_id}):
        return _session_stats(provider, session_path, session_id)


@sessions_router.get("/{session_id}/graph", response_model=GraphData, response_model_exclude_none=True)
def get_session_graph(session_id: str):
    provider = get_provider()
    session_path = _resolve_session_path(provider, session_id)
    with start_span("sessions.graph", {"provider": provider.id, "session_id": session_id}):
        stats = _session_stats(provider, session_path, session_id)
        return build_graph(stats)


@sessions_router.get("/{session_id}/search", response_model=list[SearchHit])
def search_session(
    session_id: str,
    q: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
):
    provider = get_provider()
    session_path = _resolve_session_path(provider, session_id)
    return provider.search_in_session(session_path, q, limit)


# ── Projects ──

@projects_router.get("", response_model=list[ProjectFolderInfo])
def list_projects():
    provider = get_provider()
    return provider.get_all_project_folders(workspace_path())
