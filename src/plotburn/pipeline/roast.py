from __future__ import annotations

import logging
from typing import Any

from .. import storage
from ..config import Config
from ..context import RunContext
from ..db import safe_rollback
from ..errors import (
    GenerationFailure,
    GenerationParseFailure,
    PersistenceFailure,
    ProviderError,
)
from ..models import MovieMeta, ProcessResult, Truth
from ..providers import Providers
from ..schemas import ROAST_SCHEMA_V1, StructuredOutputError, validate_payload
from ..utils import json_dumps
from .truth import get_or_create_truth

DISCLAIMER = "Satire. Facts unchanged."


def generate_roast(
    conn: Any,
    movie_id: int,
    meta: MovieMeta,
    truth: Truth,
    providers: Providers,
    ctx: RunContext | None = None,
    language: str = storage.DEFAULT_LANGUAGE,
    *,
    recent_limit: int = 5,
) -> int:
    ctx = ctx or RunContext(prefix="roast")
    recent = storage.list_recent_roast_texts(conn, recent_limit) if recent_limit > 0 else []
    try:
        roast = providers.generation.generate(truth, meta, recent)
    except GenerationFailure:
        ctx.event("generation_failed", logging.ERROR, movie_id=movie_id)
        raise
    except ProviderError as exc:
        ctx.event("generation_failed", logging.ERROR, movie_id=movie_id, error=str(exc))
        raise GenerationFailure(f"generation failed for {movie_id}: {exc}") from exc
    try:
        validate_payload(roast, ROAST_SCHEMA_V1)
    except StructuredOutputError as exc:
        ctx.event("generation_invalid", logging.ERROR, movie_id=movie_id, error=str(exc))
        raise GenerationParseFailure(str(exc), raw=json_dumps(roast)) from exc
    try:
        roast_id = storage.upsert_roast(conn, movie_id, roast, language)
    except Exception as exc:  # noqa: BLE001
        safe_rollback(conn)
        ctx.event("roast_persist_failed", logging.ERROR, movie_id=movie_id, error=str(exc))
        raise PersistenceFailure(f"failed to store roast for {movie_id}: {exc}") from exc
    ctx.event("roast_stored", movie_id=movie_id, roast_id=roast_id, language=language)
    return roast_id


def refresh_streaming_providers(
    conn: Any,
    movie_id: int,
    providers: Providers,
    region: str,
    ctx: RunContext | None = None,
) -> int:
    """Best-effort availability refresh; never raises."""
    ctx = ctx or RunContext(prefix="streaming")
    try:
        rows = providers.catalog.fetch_watch_providers(movie_id, region)
        saved = storage.save_streaming_providers(conn, movie_id, region, rows)
    except Exception as exc:  # noqa: BLE001
        ctx.event(
            "streaming_refresh_failed",
            logging.WARNING,
            movie_id=movie_id,
            region=region,
            error=str(exc),
        )
        return 0
    ctx.event("streaming_refreshed", movie_id=movie_id, region=region, providers=saved)
    return saved


def process_movie(
    conn: Any,
    config: Config,
    movie_id: int,
    providers: Providers,
    ctx: RunContext | None = None,
) -> ProcessResult:
    ctx = ctx or RunContext(prefix="movie")
    language = config.roasts.default_language
    meta = providers.catalog.fetch_movie_details(movie_id)
    try:
        storage.upsert_movie(conn, meta, language=language, skip_popularity=True)
    except Exception as exc:  # noqa: BLE001
        safe_rollback(conn)
        raise PersistenceFailure(f"failed to store movie {movie_id}: {exc}") from exc
    truth = get_or_create_truth(
        conn,
        movie_id,
        meta,
        providers,
        ctx,
        pricing=config.providers.pricing,
    )
    roast_id = generate_roast(
        conn,
        movie_id,
        meta,
        truth,
        providers,
        ctx,
        language,
        recent_limit=config.roasts.recent_limit,
    )
    if config.streaming.enabled:
        refresh_streaming_providers(conn, movie_id, providers, config.streaming.region, ctx)
    return ProcessResult(
        movie_id=movie_id,
        title=meta.title,
        truth_cached=truth.from_cache,
        roast_id=roast_id,
    )
