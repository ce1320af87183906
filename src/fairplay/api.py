from __future__ import annotations

from threading import Lock
from typing import cast

from fastapi import Depends, FastAPI, HTTPException, Request, status
from pydantic import BaseModel, Field
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware

from fairplay.config import get_settings
from fairplay.db import DuckDbGameStore
from fairplay.events import LoggingScoreNotifier, ScoreEventBus
from fairplay.jobs import ImportJobManager, JobHandle
from fairplay.models import GameSource
from fairplay.utils.logger import get_logger

logger = get_logger(__name__)

_MANAGER_LOCK = Lock()


class ImportRequest(BaseModel):
    source: str
    username: str = Field(min_length=1)
    limit: int | None = Field(default=None, ge=1)


class PgnImportRequest(BaseModel):
    pgn: str = Field(min_length=1)
    username: str = Field(min_length=1)
    source: str = GameSource.LICHESS.value
    limit: int | None = Field(default=None, ge=1)


def build_default_manager() -> ImportJobManager:
    """Job manager backed by the configured DuckDB file and a logging notifier."""
    settings = get_settings()
    store = DuckDbGameStore.open(settings.duckdb_path)
    bus = ScoreEventBus()
    LoggingScoreNotifier(bus).start()
    return ImportJobManager(settings, store, event_bus=bus)


def get_manager(request: Request) -> ImportJobManager:
    state = request.app.state
    with _MANAGER_LOCK:
        if getattr(state, "manager", None) is None:
            state.manager = build_default_manager()
    return cast(ImportJobManager, state.manager)


def _parse_source(value: str) -> GameSource:
    try:
        return GameSource.parse(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _job_or_404(manager: ImportJobManager, job_id: str) -> JobHandle:
    try:
        return manager.get(job_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found") from exc


def create_app(manager: ImportJobManager | None = None) -> FastAPI:
    app = FastAPI(
        title="FairPlay Scout",
        version="0.1.0",
        middleware=[
            Middleware(
                cast("type[object]", CORSMiddleware),
                allow_origins=["*"],
                allow_methods=["*"],
                allow_headers=["*"],
            )
        ],
    )
    app.state.manager = manager

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/imports", status_code=status.HTTP_202_ACCEPTED)
    def start_import(
        body: ImportRequest, jobs: ImportJobManager = Depends(get_manager)
    ) -> dict[str, object]:
        source = _parse_source(body.source)
        handle = jobs.start_import(source, body.username, body.limit)
        return {"status": "ok", "job": handle.to_dict()}

    @app.post("/api/imports/pgn", status_code=status.HTTP_202_ACCEPTED)
    def start_pgn_import(
        body: PgnImportRequest, jobs: ImportJobManager = Depends(get_manager)
    ) -> dict[str, object]:
        source = _parse_source(body.source)
        handle = jobs.start_pgn_import(body.pgn, body.username, source, body.limit)
        return {"status": "ok", "job": handle.to_dict()}

    @app.get("/api/imports/{job_id}")
    def import_status(
        job_id: str, jobs: ImportJobManager = Depends(get_manager)
    ) -> dict[str, object]:
        return {"status": "ok", "job": _job_or_404(jobs, job_id).to_dict()}

    @app.post("/api/imports/{job_id}/cancel")
    def cancel_import(
        job_id: str, jobs: ImportJobManager = Depends(get_manager)
    ) -> dict[str, object]:
        handle = _job_or_404(jobs, job_id)
        cancelled = jobs.cancel(handle.job_id)
        return {"status": "ok", "cancelled": cancelled, "job": handle.to_dict()}

    @app.get("/api/rate-limits")
    def rate_limits(
        username: str | None = None, jobs: ImportJobManager = Depends(get_manager)
    ) -> dict[str, object]:
        payload: dict[str, object] = {}
        for source, health in jobs.rate_limit_health(username).items():
            payload[source.value] = {
                "healthy": health.healthy,
                "allowed": health.status.allowed,
                "remaining": health.status.remaining,
                "retry_after_ms": health.status.retry_after_ms,
                "reset_time_ms": health.status.reset_time_ms,
                "quota_exceeded": health.status.quota_exceeded,
                "used_bytes": health.quota.used_bytes,
                "limit_bytes": health.quota.limit_bytes,
                "quota_reset_time_ms": health.quota.reset_time_ms,
                "requests_in_hour": health.quota.requests_in_hour,
                "recommendations": health.recommendations,
            }
        return {"status": "ok", "sources": payload}

    return app


app = create_app()
