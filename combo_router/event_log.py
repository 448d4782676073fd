from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

logger = logging.getLogger("uvicorn.error")


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlEventLogger:
    """Appends one JSON object per line from a background writer thread.

    ``log`` never blocks: when the bounded queue is full the record is counted
    as dropped and a summary line is written once the writer drains.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        enabled: bool = True,
        max_queue_size: int = 8192,
        thread_name: str = "combo-router-event-writer",
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(target=self._drain_queue, name=thread_name, daemon=True)
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def log(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return
        line = _encode({"ts": int(time.time()), **event})
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if not self.enabled or queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)
        self._queue = None
        self._worker = None

    def _take_dropped(self) -> int:
        with self._lock:
            dropped = self._dropped_records
            self._dropped_records = 0
        return dropped

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                dropped = self._take_dropped() if queue.empty() else 0
                if dropped > 0:
                    logger.warning("event_log_dropped_records path=%s dropped=%d", self.path, dropped)
                    handle.write(
                        _encode({"ts": int(time.time()), "event": "event_log_dropped_records", "dropped_count": dropped})
                        + "\n"
                    )
                handle.flush()
                queue.task_done()
            dropped = self._take_dropped()
            if dropped > 0:
                handle.write(
                    _encode({"ts": int(time.time()), "event": "event_log_dropped_records", "dropped_count": dropped})
                    + "\n"
                )
                handle.flush()
