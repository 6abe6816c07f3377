from __future__ import annotations

import logging
from typing import Any

from .db import is_unique_violation, safe_rollback
from .errors import AlreadyRunning
from .models import JobRun
from .utils import epoch_ms, json_dumps, json_loads_or, log_event, ms_to_iso

DEFAULT_JOB_NAME = "daily_enrichment"
STALE_RUN_ERROR = "stale_run_reclaimed"

_RUN_COLUMNS = """
    id, job_name, correlation_id, started_at, finished_at, duration_ms, status,
    items_count, item_titles, cursor, error
"""


class JobTracker:
    """Single-flight lock and progress record for a named recurring job.

    At most one ``running`` row exists per job name. The check before insert
    is a fast path; the partial unique index ``uniq_running_job`` is what
    actually settles a race between two starters.
    """

    def __init__(
        self,
        conn: Any,
        job_name: str = DEFAULT_JOB_NAME,
        *,
        stale_run_seconds: int = 0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.job_name = job_name
        self.stale_run_seconds = stale_run_seconds
        self.logger = logger or logging.getLogger("plotburn.tracker")

    def start_run(self, job_name: str | None = None, correlation_id: str | None = None) -> int:
        name = job_name or self.job_name
        if self.stale_run_seconds > 0:
            self.reclaim_stale_runs(self.stale_run_seconds, job_name=name)
        row = self.conn.execute(
            "SELECT id FROM job_runs WHERE job_name = ? AND status = 'running' LIMIT 1",
            (name,),
        ).fetchone()
        if row:
            raise AlreadyRunning(name, int(row[0]))
        started_ms = epoch_ms()
        try:
            with self.conn.transaction():
                run_id = self.conn.insert_returning_id(
                    """
                    INSERT INTO job_runs
                        (job_name, correlation_id, started_at, started_ms, heartbeat_ms,
                         status, items_count)
                    VALUES (?, ?, ?, ?, ?, 'running', 0)
                    """,
                    (name, correlation_id, ms_to_iso(started_ms), started_ms, started_ms),
                )
        except Exception as exc:
            if is_unique_violation(exc):
                raise AlreadyRunning(name) from exc
            raise
        log_event(
            self.logger,
            logging.INFO,
            "job_run_started",
            job_name=name,
            run_id=run_id,
            correlation_id=correlation_id,
        )
        return run_id

    def update_progress(self, run_id: int, item_titles: list[str], count: int) -> None:
        try:
            self.conn.execute(
                """
                UPDATE job_runs
                SET items_count = ?, item_titles = ?, heartbeat_ms = ?
                WHERE id = ? AND status = 'running'
                """,
                (count, json_dumps(list(item_titles)), epoch_ms(), run_id),
            )
            self.conn.commit()
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.WARNING,
                "job_progress_update_failed",
                run_id=run_id,
                error=str(exc),
            )
            safe_rollback(self.conn)

    def complete_run(self, run_id: int, cursor: str | None = None, status: str = "success") -> bool:
        if status not in ("success", "partial"):
            raise ValueError(f"invalid completion status: {status}")
        return self._finish(run_id, status, cursor=cursor)

    def fail_run(self, run_id: int, error: str) -> bool:
        return self._finish(run_id, "failed", error=error)

    def get_history(self, limit: int = 10) -> list[JobRun]:
        cursor = self.conn.execute(
            f"""
            SELECT {_RUN_COLUMNS}
            FROM job_runs
            WHERE job_name = ?
            ORDER BY started_ms DESC, id DESC
            LIMIT ?
            """,
            (self.job_name, limit),
        )
        return [_row_to_run(row) for row in cursor.fetchall()]

    def get_run(self, run_id: int) -> JobRun | None:
        row = self.conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM job_runs WHERE id = ?",
            (run_id,),
        ).fetchone()
        return _row_to_run(row) if row else None

    def get_last_run(self) -> JobRun | None:
        history = self.get_history(limit=1)
        return history[0] if history else None

    def reclaim_stale_runs(self, max_age_seconds: int, job_name: str | None = None) -> int:
        name = job_name or self.job_name
        cutoff = epoch_ms() - max_age_seconds * 1000
        rows = self.conn.execute(
            """
            SELECT id FROM job_runs
            WHERE job_name = ? AND status = 'running'
              AND COALESCE(heartbeat_ms, started_ms) < ?
            """,
            (name, cutoff),
        ).fetchall()
        reclaimed = 0
        for (run_id,) in rows:
            if self._finish(int(run_id), "failed", error=STALE_RUN_ERROR):
                reclaimed += 1
                log_event(
                    self.logger,
                    logging.WARNING,
                    "job_run_reclaimed",
                    job_name=name,
                    run_id=run_id,
                    max_age_seconds=max_age_seconds,
                )
        return reclaimed

    def _finish(
        self,
        run_id: int,
        status: str,
        *,
        cursor: str | None = None,
        error: str | None = None,
    ) -> bool:
        with self.conn.transaction():
            row = self.conn.execute(
                "SELECT started_ms FROM job_runs WHERE id = ? AND status = 'running'",
                (run_id,),
            ).fetchone()
            if not row:
                log_event(self.logger, logging.WARNING, "job_run_not_running", run_id=run_id, status=status)
                return False
            started_ms = int(row[0])
            finished_ms = max(epoch_ms(), started_ms)
            updated = self.conn.execute(
                """
                UPDATE job_runs
                SET status = ?, finished_at = ?, finished_ms = ?, duration_ms = ?,
                    cursor = COALESCE(?, cursor), error = ?
                WHERE id = ? AND status = 'running'
                """,
                (
                    status,
                    ms_to_iso(finished_ms),
                    finished_ms,
                    finished_ms - started_ms,
                    cursor,
                    error,
                    run_id,
                ),
            )
        log_event(
            self.logger,
            logging.INFO if status != "failed" else logging.ERROR,
            "job_run_finished",
            run_id=run_id,
            status=status,
            duration_ms=finished_ms - started_ms,
            error=error,
        )
        return updated.rowcount == 1


def _row_to_run(row: tuple) -> JobRun:
    (
        run_id,
        job_name,
        correlation_id,
        started_at,
        finished_at,
        duration_ms,
        status,
        items_count,
        item_titles,
        cursor,
        error,
    ) = row
    titles = json_loads_or(item_titles, [])
    return JobRun(
        id=int(run_id),
        job_name=job_name,
        correlation_id=correlation_id,
        started_at=started_at,
        finished_at=finished_at,
        duration_ms=int(duration_ms) if duration_ms is not None else None,
        status=status,
        items_count=int(items_count or 0),
        item_titles=titles if isinstance(titles, list) else [],
        cursor=cursor,
        error=error,
    )
