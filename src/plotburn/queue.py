from __future__ import annotations

import logging
from typing import Any, Iterable

from .models import Delivery, QueueMessage
from .utils import chunked, json_dumps, json_loads_or, log_event, utc_now_iso, utc_now_iso_offset

QUEUED = "queued"
LEASED = "leased"
ACKED = "acked"
DEAD_LETTER = "dead_letter"
STATUSES = (QUEUED, LEASED, ACKED, DEAD_LETTER)


class WorkQueue:
    """Database-backed message queue with leases, bounded retries and a dead-letter state.

    ``attempts`` counts deliveries: it is incremented when a message is leased.
    A message whose lease expires is delivered again. ``retry`` either puts
    the message back (optionally delayed) or, once ``attempts`` reached
    ``max_attempts``, parks it in ``dead_letter``.
    """

    def __init__(
        self,
        conn: Any,
        name: str = "movie-processing",
        *,
        batch_size: int = 100,
        max_attempts: int = 3,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.name = name
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.logger = logger or logging.getLogger("plotburn.queue")

    def send_batch(self, messages: Iterable[QueueMessage]) -> int:
        messages = list(messages)
        if not messages:
            return 0
        sent = 0
        for chunk in chunked(messages, self.batch_size):
            now = utc_now_iso()
            with self.conn.transaction():
                self.conn.executemany(
                    """
                    INSERT INTO work_queue
                        (queue_name, body_json, status, attempts, max_attempts, visible_at,
                         enqueued_at, updated_at)
                    VALUES (?, ?, 'queued', 0, ?, ?, ?, ?)
                    """,
                    [
                        (self.name, _encode(message), self.max_attempts, now, now, now)
                        for message in chunk
                    ],
                )
            sent += len(chunk)
            log_event(self.logger, logging.DEBUG, "queue_chunk_sent", queue=self.name, size=len(chunk))
        log_event(self.logger, logging.INFO, "queue_batch_sent", queue=self.name, count=sent)
        return sent

    def receive_batch(
        self,
        worker_id: str,
        max_messages: int = 5,
        visibility_seconds: int = 300,
    ) -> list[Delivery]:
        now = utc_now_iso()
        lock_clause = " FOR UPDATE SKIP LOCKED" if getattr(self.conn, "backend", "") == "postgres" else ""
        deliveries: list[Delivery] = []
        with self.conn.transaction():
            self._expire_exhausted_leases(now)
            rows = self.conn.execute(
                f"""
                SELECT id, body_json, attempts, max_attempts
                FROM work_queue
                WHERE queue_name = ? AND status IN ('queued', 'leased') AND visible_at <= ?
                ORDER BY visible_at ASC, id ASC
                LIMIT ?{lock_clause}
                """,
                (self.name, now, max_messages),
            ).fetchall()
            visible_at = utc_now_iso_offset(seconds=visibility_seconds)
            for message_id, body_json, attempts, max_attempts in rows:
                self.conn.execute(
                    """
                    UPDATE work_queue
                    SET status = 'leased', leased_by = ?, attempts = attempts + 1,
                        visible_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (worker_id, visible_at, now, message_id),
                )
                message = _decode(body_json)
                if message is None:
                    self.conn.execute(
                        """
                        UPDATE work_queue
                        SET status = 'dead_letter', last_error = 'malformed_body', updated_at = ?
                        WHERE id = ?
                        """,
                        (now, message_id),
                    )
                    continue
                deliveries.append(
                    Delivery(
                        id=int(message_id),
                        message=message,
                        attempts=int(attempts) + 1,
                        max_attempts=int(max_attempts),
                        leased_by=worker_id,
                    )
                )
        if deliveries:
            log_event(
                self.logger,
                logging.INFO,
                "queue_batch_received",
                queue=self.name,
                worker_id=worker_id,
                count=len(deliveries),
            )
        return deliveries

    def ack(self, message_id: int, worker_id: str | None = None) -> bool:
        """Mark a leased message done. With ``worker_id`` only that worker's lease counts."""
        lease_clause, lease_params = _lease_filter(worker_id)
        cursor = self.conn.execute(
            f"""
            UPDATE work_queue
            SET status = 'acked', leased_by = NULL, updated_at = ?
            WHERE id = ? AND status = 'leased'{lease_clause}
            """,
            (utc_now_iso(), message_id, *lease_params),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def retry(
        self,
        message_id: int,
        error: str,
        delay_seconds: int = 0,
        worker_id: str | None = None,
    ) -> str | None:
        lease_clause, lease_params = _lease_filter(worker_id)
        row = self.conn.execute(
            f"SELECT attempts, max_attempts FROM work_queue WHERE id = ? AND status = 'leased'{lease_clause}",
            (message_id, *lease_params),
        ).fetchone()
        if not row:
            return None
        attempts, max_attempts = row
        now = utc_now_iso()
        if int(attempts) >= int(max_attempts):
            status = DEAD_LETTER
            visible_at = now
        else:
            status = QUEUED
            visible_at = utc_now_iso_offset(seconds=delay_seconds)
        cursor = self.conn.execute(
            f"""
            UPDATE work_queue
            SET status = ?, leased_by = NULL, visible_at = ?, last_error = ?, updated_at = ?
            WHERE id = ? AND status = 'leased'{lease_clause}
            """,
            (status, visible_at, error[:2000], now, message_id, *lease_params),
        )
        self.conn.commit()
        if cursor.rowcount != 1:
            return None
        log_event(
            self.logger,
            logging.WARNING if status == QUEUED else logging.ERROR,
            "queue_message_retry" if status == QUEUED else "queue_message_dead_lettered",
            queue=self.name,
            message_id=message_id,
            attempts=attempts,
            max_attempts=max_attempts,
        )
        return status

    def dead_letter(self, message_id: int, error: str, worker_id: str | None = None) -> bool:
        """Park a leased message without spending its remaining attempts."""
        lease_clause, lease_params = _lease_filter(worker_id)
        cursor = self.conn.execute(
            f"""
            UPDATE work_queue
            SET status = 'dead_letter', leased_by = NULL, last_error = ?, updated_at = ?
            WHERE id = ? AND status = 'leased'{lease_clause}
            """,
            (error[:2000], utc_now_iso(), message_id, *lease_params),
        )
        self.conn.commit()
        parked = cursor.rowcount == 1
        if parked:
            log_event(
                self.logger,
                logging.ERROR,
                "queue_message_dead_lettered",
                queue=self.name,
                message_id=message_id,
                reason="non_retryable",
            )
        return parked

    def list_dead_letters(self, limit: int = 50) -> list[dict[str, object]]:
        cursor = self.conn.execute(
            """
            SELECT id, body_json, attempts, last_error, updated_at
            FROM work_queue
            WHERE queue_name = ? AND status = 'dead_letter'
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (self.name, limit),
        )
        items = []
        for message_id, body_json, attempts, last_error, updated_at in cursor.fetchall():
            items.append(
                {
                    "id": int(message_id),
                    "body": json_loads_or(body_json, {}),
                    "attempts": int(attempts),
                    "last_error": last_error,
                    "updated_at": updated_at,
                }
            )
        return items

    def requeue_dead_letter(self, message_id: int) -> bool:
        now = utc_now_iso()
        cursor = self.conn.execute(
            """
            UPDATE work_queue
            SET status = 'queued', attempts = 0, leased_by = NULL, visible_at = ?,
                updated_at = ?
            WHERE id = ? AND queue_name = ? AND status = 'dead_letter'
            """,
            (now, now, message_id, self.name),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def counts(self) -> dict[str, int]:
        cursor = self.conn.execute(
            """
            SELECT status, COUNT(*)
            FROM work_queue
            WHERE queue_name = ?
            GROUP BY status
            """,
            (self.name,),
        )
        counts = {status: 0 for status in STATUSES}
        for status, count in cursor.fetchall():
            counts[status] = int(count)
        return counts

    def _expire_exhausted_leases(self, now: str) -> None:
        self.conn.execute(
            """
            UPDATE work_queue
            SET status = 'dead_letter', leased_by = NULL, last_error = 'lease_expired',
                updated_at = ?
            WHERE queue_name = ? AND status = 'leased' AND visible_at <= ?
              AND attempts >= max_attempts
            """,
            (now, self.name, now),
        )


def _encode(message: QueueMessage) -> str:
    return json_dumps(
        {
            "movie_id": message.movie_id,
            "title": message.title,
            "correlation_id": message.correlation_id,
        }
    )


def _decode(body_json: str) -> QueueMessage | None:
    body = json_loads_or(body_json, None)
    if not isinstance(body, dict) or "movie_id" not in body:
        return None
    try:
        movie_id = int(body["movie_id"])
    except (TypeError, ValueError):
        return None
    return QueueMessage(
        movie_id=movie_id,
        title=str(body.get("title") or ""),
        correlation_id=str(body.get("correlation_id") or ""),
    )


def _lease_filter(worker_id: str | None) -> tuple[str, tuple[str, ...]]:
    if worker_id is None:
        return "", ()
    return " AND leased_by = ?", (worker_id,)
