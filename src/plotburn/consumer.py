from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable

from . import storage
from .config import Config
from .context import RunContext
from .db import safe_rollback
from .errors import ExtractionParseFailure, GenerationParseFailure
from .models import Delivery
from .pipeline import process_movie
from .providers import Providers
from .queue import DEAD_LETTER, QUEUED, WorkQueue
from .utils import log_event

NON_RETRYABLE = (ExtractionParseFailure, GenerationParseFailure)


@dataclass
class BatchResult:
    received: int = 0
    processed: int = 0
    skipped: int = 0
    retried: int = 0
    dead_lettered: int = 0

    def add(self, other: "BatchResult") -> None:
        self.received += other.received
        self.processed += other.processed
        self.skipped += other.skipped
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered


def handle_batch(
    conn: Any,
    config: Config,
    batch: list[Delivery],
    queue: WorkQueue,
    providers: Providers,
    ctx: RunContext | None = None,
) -> BatchResult:
    """Process each delivery independently; one failure never touches its siblings.

    Ack and retry failures are logged and left to lease expiry, which hands
    the message out again.
    """
    ctx = ctx or RunContext(prefix="batch", logs_dir=config.paths.logs_dir)
    language = config.roasts.default_language
    result = BatchResult(received=len(batch))
    for delivery in batch:
        message = delivery.message
        started = time.monotonic()
        try:
            skip = storage.has_active_roast(conn, message.movie_id, language)
            if not skip:
                process_movie(conn, config, message.movie_id, providers, ctx)
        except Exception as exc:  # noqa: BLE001
            safe_rollback(conn)
            _fail(conn, config, delivery, queue, exc, result, ctx)
            continue
        _bookkeep(conn, delivery, ctx, "ack", lambda: queue.ack(delivery.id, delivery.leased_by or None))
        if skip:
            result.skipped += 1
            ctx.event(
                "message_skipped",
                movie_id=message.movie_id,
                title=message.title,
                reason="active_roast_exists",
            )
            continue
        result.processed += 1
        ctx.event(
            "message_processed",
            movie_id=message.movie_id,
            title=message.title,
            attempt=delivery.attempts,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
    return result


def _fail(
    conn: Any,
    config: Config,
    delivery: Delivery,
    queue: WorkQueue,
    exc: Exception,
    result: BatchResult,
    ctx: RunContext,
) -> None:
    message = delivery.message
    error = f"{type(exc).__name__}: {exc}"
    worker_id = delivery.leased_by or None
    if isinstance(exc, NON_RETRYABLE):
        raw = getattr(exc, "raw", None)
        if raw:
            error = f"{error} | raw: {raw[:500]}"
        parked = _bookkeep(
            conn,
            delivery,
            ctx,
            "dead_letter",
            lambda: queue.dead_letter(delivery.id, error, worker_id),
        )
        status = DEAD_LETTER if parked else None
    else:
        status = _bookkeep(
            conn,
            delivery,
            ctx,
            "retry",
            lambda: queue.retry(delivery.id, error, config.queue.retry_delay_seconds, worker_id),
        )
    if status == DEAD_LETTER:
        result.dead_lettered += 1
    elif status == QUEUED:
        result.retried += 1
    ctx.event(
        "message_failed",
        logging.ERROR,
        movie_id=message.movie_id,
        title=message.title,
        attempt=delivery.attempts,
        error_type=type(exc).__name__,
        error=str(exc),
        next_status=status,
    )


def _bookkeep(conn: Any, delivery: Delivery, ctx: RunContext, action: str, call: Callable[[], Any]) -> Any:
    try:
        return call()
    except Exception as exc:  # noqa: BLE001
        safe_rollback(conn)
        ctx.event(
            "queue_bookkeeping_failed",
            logging.ERROR,
            message_id=delivery.id,
            movie_id=delivery.message.movie_id,
            action=action,
            error=f"{type(exc).__name__}: {exc}",
        )
        return None


def consume_once(
    conn: Any,
    config: Config,
    queue: WorkQueue,
    providers: Providers,
    worker_id: str,
) -> BatchResult:
    batch = queue.receive_batch(
        worker_id,
        max_messages=config.queue.max_batch_size,
        visibility_seconds=config.queue.visibility_seconds,
    )
    if not batch:
        return BatchResult()
    correlation_id = batch[0].message.correlation_id or None
    with RunContext(
        f"{correlation_id}-{worker_id}" if correlation_id else None,
        logs_dir=config.paths.logs_dir,
        prefix="batch",
    ) as ctx:
        result = handle_batch(conn, config, batch, queue, providers, ctx)
        ctx.event(
            "batch_complete",
            worker_id=worker_id,
            received=result.received,
            processed=result.processed,
            skipped=result.skipped,
            retried=result.retried,
            dead_lettered=result.dead_lettered,
        )
    return result


def run_consumer_pool(
    connect: Callable[[], Any],
    config: Config,
    providers: Providers,
    worker_id: str,
    *,
    stop_event: threading.Event | None = None,
    drain: bool = False,
    logger: logging.Logger | None = None,
) -> BatchResult:
    """Run ``queue.max_concurrency`` consumers, each with its own connection.

    With ``drain`` the pool returns once every worker sees an empty queue;
    otherwise workers poll until ``stop_event`` is set.
    """
    logger = logger or logging.getLogger("plotburn.consumer")
    stop_event = stop_event or threading.Event()
    workers = max(1, config.queue.max_concurrency)
    totals = BatchResult()

    def _worker(index: int) -> BatchResult:
        name = f"{worker_id}-{index}"
        conn = connect()
        queue = WorkQueue(
            conn,
            config.queue.name,
            batch_size=config.queue.batch_size,
            max_attempts=config.queue.max_attempts,
        )
        local = BatchResult()
        try:
            while not stop_event.is_set():
                try:
                    result = consume_once(conn, config, queue, providers, name)
                except Exception as exc:  # noqa: BLE001
                    safe_rollback(conn)
                    log_event(
                        logger,
                        logging.ERROR,
                        "consumer_iteration_failed",
                        worker_id=name,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                    if drain:
                        break
                    stop_event.wait(config.queue.poll_interval_seconds)
                    continue
                local.add(result)
                if result.received:
                    continue
                if drain:
                    break
                stop_event.wait(config.queue.poll_interval_seconds)
        finally:
            conn.close()
        return local

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(_worker, index) for index in range(workers)]
        for future in as_completed(futures):
            try:
                totals.add(future.result())
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.ERROR, "consumer_thread_error", error=str(exc))
    log_event(
        logger,
        logging.INFO,
        "consumer_pool_stopped",
        workers=workers,
        processed=totals.processed,
        skipped=totals.skipped,
        retried=totals.retried,
        dead_lettered=totals.dead_lettered,
    )
    return totals
