from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from . import storage
from .config import Config
from .context import RunContext
from .errors import AlreadyRunning
from .models import MovieMeta, QueueMessage
from .providers import Providers
from .providers.tmdb import NOW_PLAYING
from .queue import WorkQueue
from .tracker import JobTracker
from .utils import log_event, new_correlation_id


@dataclass(frozen=True)
class RunOutcome:
    status: str
    run_id: int | None
    enqueued: int
    categories: dict[str, int] = field(default_factory=dict)
    failed_categories: list[str] = field(default_factory=list)
    correlation_id: str | None = None


def run_daily_enrichment(
    conn: Any,
    config: Config,
    providers: Providers,
    *,
    correlation_id: str | None = None,
    ctx: RunContext | None = None,
) -> RunOutcome:
    """Refresh tracked categories and enqueue one message per unique movie.

    Returns a ``skipped`` outcome when another run holds the lock. Catalog
    failures are counted per category; anything else fails the run and
    propagates.
    """
    correlation_id = correlation_id or new_correlation_id("cron")
    ctx = ctx or RunContext(correlation_id, logs_dir=config.paths.logs_dir)
    tracker = JobTracker(
        conn,
        config.jobs.job_name,
        stale_run_seconds=config.jobs.stale_run_seconds,
    )
    try:
        run_id = tracker.start_run(correlation_id=correlation_id)
    except AlreadyRunning as exc:
        ctx.event("run_skipped", logging.WARNING, job_name=exc.job_name, running_run_id=exc.run_id)
        return RunOutcome(status="skipped", run_id=None, enqueued=0, correlation_id=correlation_id)

    ctx.event("run_started", run_id=run_id, categories=",".join(config.catalog.categories))
    try:
        unique: dict[int, MovieMeta] = {}
        counts: dict[str, int] = {}
        failed: list[str] = []
        for category in config.catalog.categories:
            try:
                movies = providers.catalog.fetch_items(category)
            except Exception as exc:  # noqa: BLE001
                failed.append(category)
                ctx.event(
                    "category_fetch_failed",
                    logging.ERROR,
                    run_id=run_id,
                    category=category,
                    error=str(exc),
                )
                continue
            counts[category] = storage.refresh_category(
                conn,
                category,
                movies,
                skip_popularity=category == NOW_PLAYING,
            )
            for meta in movies:
                unique.pop(meta.id, None)
                unique[meta.id] = meta
            ctx.event("category_refreshed", run_id=run_id, category=category, movies=len(movies))

        if failed and len(failed) == len(config.catalog.categories):
            error = "all categories failed: " + ",".join(failed)
            tracker.fail_run(run_id, error)
            ctx.event("run_failed", logging.ERROR, run_id=run_id, error=error)
            return RunOutcome(
                status="failed",
                run_id=run_id,
                enqueued=0,
                categories=counts,
                failed_categories=failed,
                correlation_id=correlation_id,
            )

        queue = WorkQueue(
            conn,
            config.queue.name,
            batch_size=config.queue.batch_size,
            max_attempts=config.queue.max_attempts,
        )
        messages = [
            QueueMessage(movie_id=meta.id, title=meta.title, correlation_id=correlation_id)
            for meta in unique.values()
        ]
        enqueued = queue.send_batch(messages)
        tracker.update_progress(run_id, [message.title for message in messages], enqueued)
        status = "partial" if failed else "success"
        tracker.complete_run(run_id, status=status)
    except Exception as exc:
        tracker.fail_run(run_id, f"{type(exc).__name__}: {exc}")
        ctx.event("run_failed", logging.ERROR, run_id=run_id, error=str(exc))
        raise
    ctx.event(
        "run_complete",
        run_id=run_id,
        status=status,
        enqueued=enqueued,
        failed_categories=",".join(failed),
    )
    return RunOutcome(
        status=status,
        run_id=run_id,
        enqueued=enqueued,
        categories=counts,
        failed_categories=failed,
        correlation_id=correlation_id,
    )


def start_background_run(
    connect: Callable[[], Any],
    config: Config,
    providers: Providers,
    *,
    logger: logging.Logger | None = None,
) -> tuple[str, threading.Thread]:
    """Launch ``run_daily_enrichment`` on a thread and return its correlation id at once."""
    logger = logger or logging.getLogger("plotburn.orchestrator")
    correlation_id = new_correlation_id("manual")

    def _target() -> None:
        conn = connect()
        try:
            with RunContext(correlation_id, logs_dir=config.paths.logs_dir) as ctx:
                run_daily_enrichment(conn, config, providers, correlation_id=correlation_id, ctx=ctx)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "background_run_failed",
                correlation_id=correlation_id,
                error=str(exc),
            )
        finally:
            conn.close()

    thread = threading.Thread(target=_target, name=f"enrichment-{correlation_id}", daemon=True)
    thread.start()
    log_event(logger, logging.INFO, "background_run_started", correlation_id=correlation_id)
    return correlation_id, thread
