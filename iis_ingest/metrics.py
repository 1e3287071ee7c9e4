"""Operational counters shared by the reader, extractor and writer threads."""

import json
import os
import tempfile
import threading
import time
from datetime import datetime, timezone


class Metrics:
    def __init__(self, path: str | None = None):
        self._counters: dict[str, int] = {}
        self._lock = threading.Lock()
        self._path = path
        self._start_time = time.time()

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> dict:
        with self._lock:
            counters = dict(self._counters)
        return {
            "counters": counters,
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }

    def save(self) -> None:
        """Write a snapshot to the metrics file (tmp + os.replace)."""
        if not self._path:
            return
        directory = os.path.dirname(self._path) or "."
        os.makedirs(directory, exist_ok=True)
        data = self.get_all()
        fd, tmp = tempfile.mkstemp(dir=directory)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self._path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
