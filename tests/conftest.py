import threading
from collections import deque

import pytest

from iis_ingest.config import Config, StoreConfig, WriterConfig


class FakeStore:
    """In-memory stand-in for PostgresStore that records every bulk insert.

    Errors queued with ``fail_with`` are raised by the next calls, one per call.
    """

    def __init__(self):
        self.inserts: list[tuple[str, tuple, list[tuple]]] = []
        self.calls = 0
        self._errors: deque[Exception] = deque()
        self._lock = threading.Lock()

    def fail_with(self, *errors: Exception):
        with self._lock:
            self._errors.extend(errors)

    def bulk_insert(self, table, columns, rows):
        with self._lock:
            self.calls += 1
            if self._errors:
                raise self._errors.popleft()
            self.inserts.append((table, tuple(columns), list(rows)))
            return len(rows)

    def rows(self, table: str) -> list[tuple]:
        with self._lock:
            return [row for t, _, rows in self.inserts if t == table for row in rows]

    def close(self):
        pass


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def writer_config(tmp_path):
    return WriterConfig(
        max_records=100,
        max_bytes=1_000_000,
        max_age=60.0,
        tick=0.05,
        max_pending_batches=4,
        max_attempts=3,
        retry_backoff=0.0,
        retry_backoff_max=0.0,
        dead_letter_dir=str(tmp_path / "dead_letter"),
    )


@pytest.fixture
def make_config(tmp_path, writer_config):
    """Build a pipeline Config rooted in tmp_path."""

    def _make(sources, **overrides):
        defaults = dict(
            sources=tuple(str(s) for s in sources),
            mode="once",
            registry_file=str(tmp_path / "state" / "registry.json"),
            metrics_file=str(tmp_path / "state" / "metrics.json"),
            checkpoint_interval=0.2,
            poll_interval=0.05,
            store=StoreConfig(dsn="postgresql://test"),
            writer=writer_config,
        )
        defaults.update(overrides)
        return Config(**defaults)

    return _make


@pytest.fixture
def iis_line():
    """Format a well-formed IIS line; keyword arguments replace single fields."""

    def _line(
        path="/app/page",
        query=None,
        status="200",
        cookie="teammsiuid=bob",
        time="10:22:31",
        client="10.0.0.5",
    ):
        parts = ["2025-04-14", time, client, "GET", path]
        if query is not None:
            parts.append(query)
        parts += [status, "512", "128", "45"]
        if cookie is not None:
            parts.append(f"cs_cookie={cookie}")
        return " ".join(parts)

    return _line
