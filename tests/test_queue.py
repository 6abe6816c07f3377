from plotburn.models import QueueMessage
from plotburn.queue import ACKED, DEAD_LETTER, LEASED, QUEUED, WorkQueue
from plotburn.storage import init_db
from plotburn.utils import utc_now_iso_offset


def _message(movie_id: int) -> QueueMessage:
    return QueueMessage(movie_id=movie_id, title=f"Movie {movie_id}", correlation_id="cron-1")


def test_send_receive_ack(conn):
    queue = WorkQueue(conn, batch_size=2)
    assert queue.send_batch([_message(i) for i in range(1, 6)]) == 5

    batch = queue.receive_batch("worker-1", max_messages=3)
    assert [delivery.message.movie_id for delivery in batch] == [1, 2, 3]
    assert all(delivery.attempts == 1 for delivery in batch)
    assert batch[0].message.correlation_id == "cron-1"

    assert queue.ack(batch[0].id) is True
    assert queue.ack(batch[0].id) is False

    counts = queue.counts()
    assert counts[ACKED] == 1
    assert counts[LEASED] == 2
    assert counts[QUEUED] == 2
    assert counts[DEAD_LETTER] == 0


def test_leased_messages_are_invisible_to_other_workers(db_path):
    conn = init_db(db_path)
    conn2 = init_db(db_path)
    queue = WorkQueue(conn)
    queue.send_batch([_message(1)])

    first = queue.receive_batch("worker-1")
    second = WorkQueue(conn2).receive_batch("worker-2")

    assert len(first) == 1
    assert second == []
    conn.close()
    conn2.close()


def test_retry_then_dead_letter(conn):
    queue = WorkQueue(conn, max_attempts=2)
    queue.send_batch([_message(1)])

    delivery = queue.receive_batch("worker-1")[0]
    assert queue.retry(delivery.id, "boom") == QUEUED

    delivery = queue.receive_batch("worker-1")[0]
    assert delivery.attempts == 2
    assert queue.retry(delivery.id, "boom again") == DEAD_LETTER

    assert queue.receive_batch("worker-1") == []
    dead = queue.list_dead_letters()
    assert dead[0]["id"] == delivery.id
    assert dead[0]["body"]["movie_id"] == 1
    assert dead[0]["last_error"] == "boom again"


def test_retry_delay_hides_message(conn):
    queue = WorkQueue(conn)
    queue.send_batch([_message(1)])
    delivery = queue.receive_batch("worker-1")[0]

    queue.retry(delivery.id, "later", delay_seconds=300)

    assert queue.receive_batch("worker-1") == []
    assert queue.counts()[QUEUED] == 1


def test_retry_ignores_messages_not_leased(conn):
    queue = WorkQueue(conn)
    queue.send_batch([_message(1)])
    delivery = queue.receive_batch("worker-1")[0]
    queue.ack(delivery.id)
    assert queue.retry(delivery.id, "late failure") is None


def test_requeue_dead_letter_resets_attempts(conn):
    queue = WorkQueue(conn, max_attempts=1)
    queue.send_batch([_message(1)])
    delivery = queue.receive_batch("worker-1")[0]
    assert queue.retry(delivery.id, "boom") == DEAD_LETTER

    assert queue.requeue_dead_letter(delivery.id) is True
    again = queue.receive_batch("worker-1")
    assert again[0].id == delivery.id
    assert again[0].attempts == 1
    assert queue.requeue_dead_letter(delivery.id) is False


def test_expired_lease_is_redelivered(conn):
    queue = WorkQueue(conn)
    queue.send_batch([_message(1)])
    delivery = queue.receive_batch("worker-1", visibility_seconds=300)[0]
    conn.execute(
        "UPDATE work_queue SET visible_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-1), delivery.id),
    )
    conn.commit()

    again = queue.receive_batch("worker-2")
    assert again[0].id == delivery.id
    assert again[0].attempts == 2


def test_expired_lease_with_no_attempts_left_is_dead_lettered(conn):
    queue = WorkQueue(conn, max_attempts=1)
    queue.send_batch([_message(1)])
    delivery = queue.receive_batch("worker-1")[0]
    conn.execute(
        "UPDATE work_queue SET visible_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-1), delivery.id),
    )
    conn.commit()

    assert queue.receive_batch("worker-2") == []
    assert queue.list_dead_letters()[0]["last_error"] == "lease_expired"


def test_malformed_body_is_dead_lettered(conn):
    queue = WorkQueue(conn)
    conn.execute(
        """
        INSERT INTO work_queue
            (queue_name, body_json, status, attempts, max_attempts, visible_at,
             enqueued_at, updated_at)
        VALUES (?, ?, 'queued', 0, 3, ?, ?, ?)
        """,
        (
            queue.name,
            '{"title": "no id"}',
            utc_now_iso_offset(seconds=-1),
            utc_now_iso_offset(seconds=-1),
            utc_now_iso_offset(seconds=-1),
        ),
    )
    conn.commit()

    assert queue.receive_batch("worker-1") == []
    assert queue.list_dead_letters()[0]["last_error"] == "malformed_body"


def test_queues_are_isolated_by_name(conn):
    WorkQueue(conn, "movie-processing").send_batch([_message(1)])
    assert WorkQueue(conn, "other").receive_batch("worker-1") == []


def test_stale_worker_cannot_settle_a_redelivered_message(conn):
    queue = WorkQueue(conn)
    queue.send_batch([_message(1)])
    first = queue.receive_batch("worker-1")[0]
    assert first.leased_by == "worker-1"
    conn.execute(
        "UPDATE work_queue SET visible_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-1), first.id),
    )
    conn.commit()
    second = queue.receive_batch("worker-2")[0]

    assert queue.retry(first.id, "late failure", worker_id="worker-1") is None
    assert queue.ack(first.id, "worker-1") is False
    assert queue.dead_letter(first.id, "late parse error", "worker-1") is False
    assert queue.counts()[LEASED] == 1

    assert queue.ack(second.id, second.leased_by) is True
    assert queue.counts()[ACKED] == 1


def test_dead_letter_skips_remaining_attempts(conn):
    queue = WorkQueue(conn, max_attempts=3)
    queue.send_batch([_message(1)])
    delivery = queue.receive_batch("worker-1")[0]

    assert queue.dead_letter(delivery.id, "bad output", delivery.leased_by) is True

    assert queue.receive_batch("worker-1") == []
    dead = queue.list_dead_letters()
    assert dead[0]["attempts"] == 1
    assert dead[0]["last_error"] == "bad output"
