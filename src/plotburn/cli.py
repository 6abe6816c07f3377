from __future__ import annotations

import argparse
import json
import logging
import sys

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_config_file,
    load_runtime_config,
    set_runtime_config,
)
from .context import RunContext
from .db import get_state_db_path
from .orchestrator import run_daily_enrichment
from .pipeline import process_movie
from .providers import build_providers
from .queue import WorkQueue
from .storage import init_db, toggle_roast_featured
from .tracker import JobTracker
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("plotburn")


def _open(args: argparse.Namespace, logger: logging.Logger):
    conn = init_db(args.db or get_state_db_path())
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None, None
    return conn, config


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    path = args.db or get_state_db_path()
    conn = init_db(path)
    bootstrap_runtime_config(conn)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=path)
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        cfg = load_config_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    conn = init_db(args.db or get_state_db_path())
    try:
        set_runtime_config(conn, cfg)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db or get_state_db_path())
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    json.dump(cfg, sys.stdout, indent=2, sort_keys=True)
    sys.stdout.write("\n")
    return 0


def _cmd_run_daily(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    try:
        with RunContext(logs_dir=config.paths.logs_dir, logger=logger, prefix="cron") as ctx:
            outcome = run_daily_enrichment(
                conn,
                config,
                build_providers(config),
                correlation_id=ctx.correlation_id,
                ctx=ctx,
            )
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "run_failed", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "run_outcome",
        status=outcome.status,
        run_id=outcome.run_id,
        enqueued=outcome.enqueued,
        failed_categories=",".join(outcome.failed_categories),
    )
    return 1 if outcome.status == "failed" else 0


def _cmd_movie_process(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    try:
        with RunContext(logs_dir=config.paths.logs_dir, logger=logger, prefix="movie") as ctx:
            result = process_movie(conn, config, args.movie_id, build_providers(config), ctx)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "movie_process_failed", movie_id=args.movie_id, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "movie_processed",
        movie_id=result.movie_id,
        title=result.title,
        truth_cached=result.truth_cached,
        roast_id=result.roast_id,
    )
    return 0


def _cmd_jobs_history(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    tracker = JobTracker(conn, config.jobs.job_name)
    for run in tracker.get_history(limit=args.limit or config.jobs.history_limit):
        log_event(
            logger,
            logging.INFO,
            "job_run",
            run_id=run.id,
            status=run.status,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_ms=run.duration_ms,
            items_count=run.items_count,
            error=run.error,
        )
    conn.close()
    return 0


def _cmd_jobs_reclaim(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    tracker = JobTracker(conn, config.jobs.job_name)
    reclaimed = tracker.reclaim_stale_runs(args.max_age_seconds)
    conn.close()
    log_event(logger, logging.INFO, "job_runs_reclaimed", count=reclaimed)
    return 0


def _queue(conn, config) -> WorkQueue:
    return WorkQueue(
        conn,
        config.queue.name,
        batch_size=config.queue.batch_size,
        max_attempts=config.queue.max_attempts,
    )


def _cmd_queue_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    counts = _queue(conn, config).counts()
    conn.close()
    log_event(logger, logging.INFO, "queue_stats", queue=config.queue.name, **counts)
    return 0


def _cmd_queue_dead_letters(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    items = _queue(conn, config).list_dead_letters(limit=args.limit)
    conn.close()
    for item in items:
        log_event(
            logger,
            logging.INFO,
            "dead_letter",
            message_id=item["id"],
            movie_id=item["body"].get("movie_id"),
            attempts=item["attempts"],
            last_error=item["last_error"],
        )
    return 0


def _cmd_queue_requeue(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    ok = _queue(conn, config).requeue_dead_letter(args.message_id)
    conn.close()
    if not ok:
        log_event(logger, logging.ERROR, "dead_letter_not_found", message_id=args.message_id)
        return 1
    log_event(logger, logging.INFO, "dead_letter_requeued", message_id=args.message_id)
    return 0


def _cmd_roast_feature(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db or get_state_db_path())
    ok = toggle_roast_featured(conn, args.roast_id)
    conn.close()
    if not ok:
        log_event(logger, logging.ERROR, "roast_not_found", roast_id=args.roast_id)
        return 1
    log_event(logger, logging.INFO, "roast_featured_toggled", roast_id=args.roast_id)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="plotburn", description="PlotBurn CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the sqlite state db (defaults to $PB_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run-daily", help="Refresh categories and enqueue movies for processing"
    )
    run_parser.set_defaults(func=_cmd_run_daily)

    movie_parser = subparsers.add_parser("movie", help="Single movie commands")
    movie_subparsers = movie_parser.add_subparsers(dest="movie_command", required=True)
    movie_process = movie_subparsers.add_parser(
        "process", help="Run truth and roast generation for one movie now"
    )
    movie_process.add_argument("movie_id", type=int, help="TMDB movie id")
    movie_process.set_defaults(func=_cmd_movie_process)

    roast_parser = subparsers.add_parser("roast", help="Roast commands")
    roast_subparsers = roast_parser.add_subparsers(dest="roast_command", required=True)
    roast_feature = roast_subparsers.add_parser("feature", help="Toggle the featured flag")
    roast_feature.add_argument("roast_id", type=int, help="Roast id")
    roast_feature.set_defaults(func=_cmd_roast_feature)

    config_parser = subparsers.add_parser("config", help="Runtime config")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_import = config_subparsers.add_parser("import", help="Import config from YAML")
    config_import.add_argument("path", help="Path to config YAML file")
    config_import.set_defaults(func=_cmd_config_import)
    config_show = config_subparsers.add_parser("show", help="Print the runtime config")
    config_show.set_defaults(func=_cmd_config_show)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    jobs_parser = subparsers.add_parser("jobs", help="Job run commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_history = jobs_subparsers.add_parser("history", help="List recent runs")
    jobs_history.add_argument("--limit", type=int, default=None, help="Max runs")
    jobs_history.set_defaults(func=_cmd_jobs_history)
    jobs_reclaim = jobs_subparsers.add_parser(
        "reclaim", help="Fail running rows older than the given age"
    )
    jobs_reclaim.add_argument("--max-age-seconds", type=int, default=3600)
    jobs_reclaim.set_defaults(func=_cmd_jobs_reclaim)

    queue_parser = subparsers.add_parser("queue", help="Work queue commands")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", required=True)
    queue_stats = queue_subparsers.add_parser("stats", help="Message counts by status")
    queue_stats.set_defaults(func=_cmd_queue_stats)
    queue_dead = queue_subparsers.add_parser("dead-letters", help="List dead-lettered messages")
    queue_dead.add_argument("--limit", type=int, default=50)
    queue_dead.set_defaults(func=_cmd_queue_dead_letters)
    queue_requeue = queue_subparsers.add_parser("requeue", help="Requeue a dead-lettered message")
    queue_requeue.add_argument("message_id", type=int)
    queue_requeue.set_defaults(func=_cmd_queue_requeue)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
