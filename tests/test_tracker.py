import threading

import pytest

from plotburn.errors import AlreadyRunning
from plotburn.storage import init_db
from plotburn.tracker import STALE_RUN_ERROR, JobTracker
from plotburn.utils import epoch_ms


def test_start_run_is_single_flight(conn):
    tracker = JobTracker(conn, "daily_enrichment")
    run_id = tracker.start_run(correlation_id="cron-1")

    with pytest.raises(AlreadyRunning) as excinfo:
        tracker.start_run(correlation_id="cron-2")
    assert excinfo.value.run_id == run_id

    assert tracker.complete_run(run_id) is True
    second = tracker.start_run(correlation_id="cron-3")
    assert second != run_id


def test_job_names_lock_independently(conn):
    tracker = JobTracker(conn, "daily_enrichment")
    tracker.start_run()
    other = tracker.start_run(job_name="backfill")
    assert other > 0


def test_concurrent_start_admits_one_run(db_path):
    init_db(db_path).close()
    barrier = threading.Barrier(4)
    started: list[int] = []
    rejected: list[str] = []
    lock = threading.Lock()

    def _attempt() -> None:
        conn = init_db(db_path)
        try:
            barrier.wait()
            run_id = JobTracker(conn, "daily_enrichment").start_run()
            with lock:
                started.append(run_id)
        except AlreadyRunning as exc:
            with lock:
                rejected.append(exc.job_name)
        finally:
            conn.close()

    threads = [threading.Thread(target=_attempt) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(started) == 1
    assert len(rejected) == 3


def test_finished_run_duration_matches_timestamps(conn):
    tracker = JobTracker(conn, "daily_enrichment")
    run_id = tracker.start_run(correlation_id="cron-1")
    tracker.update_progress(run_id, ["Movie A", "Movie B"], 2)
    tracker.complete_run(run_id, cursor="done", status="partial")

    row = conn.execute(
        "SELECT started_ms, finished_ms, duration_ms FROM job_runs WHERE id = ?",
        (run_id,),
    ).fetchone()
    assert row[2] == row[1] - row[0]
    assert row[2] >= 0

    run = tracker.get_run(run_id)
    assert run.status == "partial"
    assert run.items_count == 2
    assert run.item_titles == ["Movie A", "Movie B"]
    assert run.cursor == "done"
    assert run.finished_at is not None


def test_complete_run_rejects_unknown_status(conn):
    tracker = JobTracker(conn, "daily_enrichment")
    run_id = tracker.start_run()
    with pytest.raises(ValueError):
        tracker.complete_run(run_id, status="failed")


def test_finishing_twice_is_a_noop(conn):
    tracker = JobTracker(conn, "daily_enrichment")
    run_id = tracker.start_run()
    assert tracker.fail_run(run_id, "boom") is True
    assert tracker.complete_run(run_id) is False
    assert tracker.get_run(run_id).status == "failed"
    assert tracker.get_run(run_id).error == "boom"


def test_history_is_newest_first(conn):
    tracker = JobTracker(conn, "daily_enrichment")
    ids = []
    for _ in range(3):
        run_id = tracker.start_run()
        tracker.complete_run(run_id)
        ids.append(run_id)

    history = tracker.get_history(limit=2)
    assert [run.id for run in history] == [ids[2], ids[1]]
    assert tracker.get_last_run().id == ids[2]


def test_stale_running_row_is_reclaimed(conn):
    tracker = JobTracker(conn, "daily_enrichment", stale_run_seconds=60)
    run_id = tracker.start_run()
    old = epoch_ms() - 120_000
    conn.execute(
        "UPDATE job_runs SET started_ms = ?, heartbeat_ms = ? WHERE id = ?",
        (old, old, run_id),
    )
    conn.commit()

    next_id = tracker.start_run()

    stale = tracker.get_run(run_id)
    assert stale.status == "failed"
    assert stale.error == STALE_RUN_ERROR
    assert stale.duration_ms >= 120_000
    assert tracker.get_run(next_id).status == "running"


def test_fresh_heartbeat_is_not_reclaimed(conn):
    tracker = JobTracker(conn, "daily_enrichment")
    run_id = tracker.start_run()
    tracker.update_progress(run_id, [], 0)
    assert tracker.reclaim_stale_runs(60) == 0
    assert tracker.get_run(run_id).status == "running"


def test_progress_update_failure_is_swallowed(conn):
    tracker = JobTracker(conn, "daily_enrichment")
    run_id = tracker.start_run()
    conn.execute("DROP TABLE job_runs")
    tracker.update_progress(run_id, ["Movie"], 1)
