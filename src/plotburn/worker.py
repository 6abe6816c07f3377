from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from dataclasses import replace

from .config import ConfigError, load_runtime_config
from .consumer import run_consumer_pool
from .db import get_state_db_path
from .providers import build_providers
from .storage import init_db
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("plotburn.worker")


def run(worker_id: str, *, drain: bool = False, concurrency: int | None = None) -> int:
    logger = _setup_logging()
    db_path = get_state_db_path()
    try:
        conn = init_db(db_path)
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    conn.close()
    if concurrency:
        config = replace(config, queue=replace(config.queue, max_concurrency=concurrency))

    stop_event = threading.Event()
    if not drain and threading.current_thread() is threading.main_thread():
        def _stop(signum, _frame) -> None:
            log_event(logger, logging.INFO, "worker_stopping", signal=signum)
            stop_event.set()

        signal.signal(signal.SIGTERM, _stop)
        signal.signal(signal.SIGINT, _stop)

    log_event(
        logger,
        logging.INFO,
        "worker_started",
        worker_id=worker_id,
        queue=config.queue.name,
        concurrency=config.queue.max_concurrency,
        drain=drain,
    )
    run_consumer_pool(
        lambda: init_db(db_path),
        config,
        build_providers(config),
        worker_id,
        stop_event=stop_event,
        drain=drain,
        logger=logger,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="plotburn-worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Drain the queue and exit instead of polling",
    )
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("PB_WORKER_CONCURRENCY", "0")),
        help="Override queue.max_concurrency",
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    return run(args.worker_id, drain=args.once, concurrency=args.concurrency or None)


if __name__ == "__main__":
    raise SystemExit(main())
