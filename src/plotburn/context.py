from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from .utils import _json_default, log_event, new_correlation_id, utc_now_iso


class RunContext:
    """Correlation id plus a buffer of structured events for one boundary.

    A boundary is one API request, one job run or one consumer batch. Every
    event is logged immediately through ``log_event`` and kept in memory;
    ``flush`` appends the buffer to ``<logs_dir>/<day>.jsonl`` exactly once.
    """

    def __init__(
        self,
        correlation_id: str | None = None,
        *,
        logs_dir: str | None = None,
        logger: logging.Logger | None = None,
        prefix: str = "run",
    ) -> None:
        self.correlation_id = correlation_id or new_correlation_id(prefix)
        self.logs_dir = logs_dir
        self.logger = logger or logging.getLogger("plotburn")
        self._events: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._flushed = False

    @property
    def events(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._events)

    @property
    def flushed(self) -> bool:
        return self._flushed

    def event(self, name: str, level: int = logging.INFO, **fields: Any) -> None:
        log_event(self.logger, level, name, correlation_id=self.correlation_id, **fields)
        record = {
            "ts": utc_now_iso(),
            "level": logging.getLevelName(level),
            "event": name,
            "correlation_id": self.correlation_id,
        }
        record.update(fields)
        with self._lock:
            self._events.append(record)

    def flush(self) -> str | None:
        with self._lock:
            if self._flushed:
                return None
            self._flushed = True
            events = list(self._events)
        if not self.logs_dir or not events:
            return None
        Path(self.logs_dir).mkdir(parents=True, exist_ok=True)
        path = os.path.join(self.logs_dir, f"{events[0]['ts'][:10]}.jsonl")
        with open(path, "a", encoding="utf-8") as handle:
            for record in events:
                handle.write(json.dumps(record, default=_json_default, sort_keys=True))
                handle.write("\n")
        return path

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            self.event("context_error", logging.ERROR, error=str(exc))
        self.flush()
