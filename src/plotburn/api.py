from __future__ import annotations

import dataclasses
import logging
import os
from datetime import datetime, timezone
from typing import Iterator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import storage
from .config import Config, ConfigError, bootstrap_runtime_config, load_runtime_config
from .context import RunContext
from .db import DEFAULT_DATA_DIR, DBConn, get_state_db_path
from .errors import NotFound
from .orchestrator import start_background_run
from .pipeline import DISCLAIMER
from .providers import Providers, build_providers
from .queue import WorkQueue
from .tracker import JobTracker
from .utils import configure_logging, log_event

app = FastAPI(title="PlotBurn API")

CORRELATION_HEADER = "X-Correlation-ID"


class TriggerResponse(BaseModel):
    status: str
    correlation_id: str


class QueueStatsResponse(BaseModel):
    queue: str
    counts: dict[str, int]


@app.middleware("http")
async def _run_context_middleware(request: Request, call_next):
    logs_dir = os.path.join(os.environ.get("PB_DATA_DIR", DEFAULT_DATA_DIR), "logs")
    ctx = RunContext(
        request.headers.get(CORRELATION_HEADER),
        logs_dir=logs_dir,
        logger=logging.getLogger("plotburn.api"),
        prefix="req",
    )
    request.state.ctx = ctx
    try:
        response = await call_next(request)
    except Exception as exc:
        ctx.event("request_error", logging.ERROR, path=request.url.path, error=str(exc))
        ctx.flush()
        raise
    ctx.event(
        "request_complete",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
    )
    ctx.flush()
    response.headers[CORRELATION_HEADER] = ctx.correlation_id
    return response


@app.exception_handler(NotFound)
async def _not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse({"error": "not_found", "detail": str(exc)}, status_code=404)


@app.exception_handler(ConfigError)
async def _config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    return JSONResponse({"error": "config_error", "detail": str(exc)}, status_code=400)


def _connect() -> DBConn:
    conn = storage.init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def get_conn() -> Iterator[DBConn]:
    conn = _connect()
    try:
        yield conn
    finally:
        conn.close()


def get_config(conn: DBConn = Depends(get_conn)) -> Config:
    return load_runtime_config(conn)


def get_providers(config: Config = Depends(get_config)) -> Providers:
    return build_providers(config)


@app.on_event("startup")
def _startup() -> None:
    configure_logging("plotburn.api")


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "PlotBurn API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/movies/{movie_id}")
def movie_detail(
    movie_id: int,
    config: Config = Depends(get_config),
    conn: DBConn = Depends(get_conn),
) -> dict[str, object]:
    movie = storage.get_movie(conn, movie_id)
    if movie is None:
        raise NotFound(f"movie {movie_id}")
    roast = storage.get_active_roast(conn, movie_id, config.roasts.default_language)
    extraction = storage.get_latest_extraction(conn, movie_id)
    return {
        "movie": dataclasses.asdict(movie),
        "roast": _roast_payload(roast),
        "truth_source": extraction.source if extraction else None,
        "truth_fetched_at": extraction.fetched_at if extraction else None,
        "streaming_providers": storage.list_streaming_providers(conn, movie_id),
        "disclaimer": DISCLAIMER,
    }


@app.get("/movies/{movie_id}/truth")
def movie_truth(movie_id: int, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    history = storage.list_extractions(conn, movie_id)
    if not history:
        raise NotFound(f"truth for movie {movie_id}")
    extraction = history[0]
    return {
        "movie_id": movie_id,
        "source": extraction.source,
        "model": extraction.model,
        "fetched_at": extraction.fetched_at,
        "citations": extraction.citations,
        "content": extraction.content,
        "usage": {
            "prompt_tokens": extraction.prompt_tokens,
            "completion_tokens": extraction.completion_tokens,
            "total_tokens": extraction.total_tokens,
        },
        "cost": extraction.total_cost,
        "history": [
            {
                "id": item.id,
                "model": item.model,
                "fetched_at": item.fetched_at,
                "cost": item.total_cost,
            }
            for item in history
        ],
    }


@app.get("/movies/{movie_id}/roasts")
def movie_roasts(
    movie_id: int,
    config: Config = Depends(get_config),
    conn: DBConn = Depends(get_conn),
) -> dict[str, object]:
    if storage.get_movie(conn, movie_id) is None:
        raise NotFound(f"movie {movie_id}")
    history = storage.get_roast_history(conn, movie_id, config.roasts.default_language)
    return {"movie_id": movie_id, "roasts": [_roast_payload(item) for item in history]}


@app.get("/categories/{category}")
def category_movies(
    category: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    config: Config = Depends(get_config),
    conn: DBConn = Depends(get_conn),
) -> dict[str, object]:
    if category not in config.catalog.categories:
        raise NotFound(f"category {category}")
    movies, total = storage.list_movies_by_category(conn, category, limit=limit, offset=(page - 1) * limit)
    return {
        "category": category,
        "page": page,
        "limit": limit,
        "total": total,
        "movies": [dataclasses.asdict(movie) for movie in movies],
    }


@app.get("/feed")
def feed(
    category: str = Query("now_playing"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    config: Config = Depends(get_config),
    conn: DBConn = Depends(get_conn),
) -> dict[str, object]:
    if category not in config.catalog.categories:
        raise NotFound(f"category {category}")
    items, total = storage.list_feed(
        conn,
        category,
        limit=limit,
        offset=(page - 1) * limit,
        language=config.roasts.default_language,
    )
    return {
        "category": category,
        "page": page,
        "limit": limit,
        "total": total,
        "has_more": page * limit < total,
        "items": [
            {
                "movie": dataclasses.asdict(item["movie"]),
                "roast": _roast_payload(item["roast"]),
                "truth_source": item["truth_source"],
                "truth_fetched_at": item["truth_fetched_at"],
                "disclaimer": DISCLAIMER,
            }
            for item in items
        ],
    }


@app.post("/jobs/trigger", status_code=202, response_model=TriggerResponse)
def jobs_trigger(
    request: Request,
    config: Config = Depends(get_config),
    providers: Providers = Depends(get_providers),
) -> dict[str, object]:
    correlation_id, thread = start_background_run(_connect, config, providers)
    app.state.last_trigger_thread = thread
    log_event(
        logging.getLogger("plotburn.api"),
        logging.INFO,
        "job_triggered",
        correlation_id=correlation_id,
        request_id=request.state.ctx.correlation_id,
    )
    return {"status": "accepted", "correlation_id": correlation_id}


@app.get("/jobs/status")
def jobs_status(
    config: Config = Depends(get_config),
    conn: DBConn = Depends(get_conn),
) -> dict[str, object]:
    tracker = JobTracker(conn, config.jobs.job_name)
    history = tracker.get_history(limit=config.jobs.history_limit)
    return {
        "job_name": config.jobs.job_name,
        "last_run": dataclasses.asdict(history[0]) if history else None,
        "history": [dataclasses.asdict(run) for run in history],
    }


@app.get("/queue/stats", response_model=QueueStatsResponse)
def queue_stats(
    config: Config = Depends(get_config),
    conn: DBConn = Depends(get_conn),
) -> dict[str, object]:
    queue = WorkQueue(conn, config.queue.name)
    return {"queue": config.queue.name, "counts": queue.counts()}


def _roast_payload(roast) -> dict[str, object] | None:
    if roast is None:
        return None
    return {
        "id": roast.id,
        "language": roast.language,
        "created_at": roast.created_at,
        "is_featured": roast.is_featured,
        "is_active": roast.is_active,
        **roast.roast,
    }


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("plotburn")
    except Exception:  # noqa: BLE001
        return "unknown"
