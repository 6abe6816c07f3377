from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("plotburn.migrations")
    conn.execute("BEGIN")
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
        for version, statements in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            for statement in statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


_CATALOG = [
    """
    CREATE TABLE IF NOT EXISTS movies (
        id BIGINT PRIMARY KEY,
        title TEXT NOT NULL,
        release_date TEXT NULL,
        popularity DOUBLE PRECISION NULL,
        vote_average DOUBLE PRECISION NULL,
        vote_count INTEGER NULL,
        poster_path TEXT NULL,
        language TEXT NOT NULL DEFAULT 'en',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_movies_title ON movies(title)",
    "CREATE INDEX IF NOT EXISTS idx_movies_popularity ON movies(popularity DESC)",
    """
    CREATE TABLE IF NOT EXISTS movie_categories (
        movie_id BIGINT NOT NULL REFERENCES movies(id),
        category TEXT NOT NULL,
        added_at TEXT NOT NULL,
        PRIMARY KEY (movie_id, category)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_movie_categories_category
        ON movie_categories(category, added_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
]

_ARTIFACTS = [
    """
    CREATE TABLE IF NOT EXISTS extractions (
        id BIGSERIAL PRIMARY KEY,
        movie_id BIGINT NOT NULL REFERENCES movies(id),
        source TEXT NOT NULL,
        model TEXT NOT NULL,
        fetched_at TEXT NOT NULL,
        content_json TEXT NOT NULL,
        evidence_json TEXT NOT NULL,
        citations_json TEXT NULL,
        prompt_tokens INTEGER NULL,
        completion_tokens INTEGER NULL,
        total_tokens INTEGER NULL,
        total_cost DOUBLE PRECISION NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_extractions_movie_time
        ON extractions(movie_id, fetched_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS roasts (
        id BIGSERIAL PRIMARY KEY,
        movie_id BIGINT NOT NULL REFERENCES movies(id),
        roast_json TEXT NOT NULL,
        language TEXT NOT NULL DEFAULT 'en',
        created_at TEXT NOT NULL,
        is_featured INTEGER NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_roasts_created ON roasts(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_roasts_movie ON roasts(movie_id)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uniq_active_roast
        ON roasts(movie_id, language) WHERE is_active = 1
    """,
    """
    CREATE TABLE IF NOT EXISTS streaming_providers (
        id BIGSERIAL PRIMARY KEY,
        movie_id BIGINT NOT NULL REFERENCES movies(id),
        region TEXT NOT NULL,
        provider_id INTEGER NULL,
        provider_name TEXT NULL,
        logo_path TEXT NULL,
        type TEXT NULL,
        link TEXT NULL,
        last_updated TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_streaming_providers_movie
        ON streaming_providers(movie_id, region)
    """,
]

_JOB_RUNS = [
    """
    CREATE TABLE IF NOT EXISTS job_runs (
        id BIGSERIAL PRIMARY KEY,
        job_name TEXT NOT NULL,
        correlation_id TEXT NULL,
        started_at TEXT NOT NULL,
        started_ms BIGINT NOT NULL,
        finished_at TEXT NULL,
        finished_ms BIGINT NULL,
        heartbeat_ms BIGINT NULL,
        duration_ms BIGINT NULL,
        status TEXT NOT NULL,
        items_count INTEGER NOT NULL DEFAULT 0,
        item_titles TEXT NULL,
        cursor TEXT NULL,
        error TEXT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_job_runs_name_started
        ON job_runs(job_name, started_ms DESC)
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uniq_running_job
        ON job_runs(job_name) WHERE status = 'running'
    """,
]

_WORK_QUEUE = [
    """
    CREATE TABLE IF NOT EXISTS work_queue (
        id BIGSERIAL PRIMARY KEY,
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
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_work_queue_visible
        ON work_queue(queue_name, status, visible_at)
    """,
]


def _get_migrations() -> list[tuple[str, list[str]]]:
    return [
        ("001_catalog", _CATALOG),
        ("002_artifacts", _ARTIFACTS),
        ("003_job_runs", _JOB_RUNS),
        ("004_work_queue", _WORK_QUEUE),
    ]
