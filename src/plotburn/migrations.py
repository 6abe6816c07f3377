from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("plotburn.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_catalog(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS movies (
            id INTEGER PRIMARY KEY,
            title TEXT NOT NULL,
            release_date TEXT NULL,
            popularity REAL NULL,
            vote_average REAL NULL,
            vote_count INTEGER NULL,
            poster_path TEXT NULL,
            language TEXT NOT NULL DEFAULT 'en',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_movies_title ON movies(title)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_movies_popularity ON movies(popularity DESC)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS movie_categories (
            movie_id INTEGER NOT NULL REFERENCES movies(id),
            category TEXT NOT NULL,
            added_at TEXT NOT NULL,
            PRIMARY KEY (movie_id, category)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_movie_categories_category "
        "ON movie_categories(category, added_at DESC)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_artifacts(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS extractions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            movie_id INTEGER NOT NULL REFERENCES movies(id),
            source TEXT NOT NULL,
            model TEXT NOT NULL,
            fetched_at TEXT NOT NULL,
            content_json TEXT NOT NULL,
            evidence_json TEXT NOT NULL,
            citations_json TEXT NULL,
            prompt_tokens INTEGER NULL,
            completion_tokens INTEGER NULL,
            total_tokens INTEGER NULL,
            total_cost REAL NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_extractions_movie_time "
        "ON extractions(movie_id, fetched_at DESC)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS roasts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            movie_id INTEGER NOT NULL REFERENCES movies(id),
            roast_json TEXT NOT NULL,
            language TEXT NOT NULL DEFAULT 'en',
            created_at TEXT NOT NULL,
            is_featured INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_roasts_created ON roasts(created_at DESC)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_roasts_movie ON roasts(movie_id)")
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uniq_active_roast "
        "ON roasts(movie_id, language) WHERE is_active = 1"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS streaming_providers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            movie_id INTEGER NOT NULL REFERENCES movies(id),
            region TEXT NOT NULL,
            provider_id INTEGER NULL,
            provider_name TEXT NULL,
            logo_path TEXT NULL,
            type TEXT NULL,
            link TEXT NULL,
            last_updated TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_streaming_providers_movie "
        "ON streaming_providers(movie_id, region)"
    )


def _migration_job_runs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_name TEXT NOT NULL,
            correlation_id TEXT NULL,
            started_at TEXT NOT NULL,
            started_ms INTEGER NOT NULL,
            finished_at TEXT NULL,
            finished_ms INTEGER NULL,
            heartbeat_ms INTEGER NULL,
            duration_ms INTEGER NULL,
            status TEXT NOT NULL,
            items_count INTEGER NOT NULL DEFAULT 0,
            item_titles TEXT NULL,
            cursor TEXT NULL,
            error TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_job_runs_name_started "
        "ON job_runs(job_name, started_ms DESC)"
    )
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uniq_running_job "
        "ON job_runs(job_name) WHERE status = 'running'"
    )


def _migration_work_queue(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS work_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            queue_name TEXT NOT NULL,
            body_json TEXT NOT NULL,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL,
            visible_at TEXT NOT NULL,
            leased_by TEXT NULL,
            last_error TEXT NULL,
            enqueued_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_work_queue_visible "
        "ON work_queue(queue_name, status, visible_at)"
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_catalog", _migration_catalog),
        ("002_artifacts", _migration_artifacts),
        ("003_job_runs", _migration_job_runs),
        ("004_work_queue", _migration_work_queue),
    ]
