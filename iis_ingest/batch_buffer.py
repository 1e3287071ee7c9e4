"""Per-stream batch buffer - cuts batches on size, byte or age threshold."""

import logging
import threading
import time
from collections import deque

from iis_ingest.routing import row_size

logger = logging.getLogger(__name__)


class StreamBuffer:
    """Buffers rows for one destination stream and hands complete batches to
    a dedicated flush worker thread.

    A batch is cut when the row count reaches ``max_records``, the estimated
    payload reaches ``max_bytes``, or the oldest buffered row is older than
    ``max_age`` seconds (checked every ``tick`` seconds). Cut batches wait in
    a FIFO and the single worker writes them one at a time, so rows reach
    ``on_flush`` in the order they were added.

    ``on_flush`` is always invoked OUTSIDE the lock. When ``max_pending_batches``
    batches are already waiting, ``add`` blocks until the worker catches up.
    """

    def __init__(
        self,
        stream: str,
        on_flush,
        max_records: int = 500,
        max_bytes: int = 1_048_576,
        max_age: float = 5.0,
        tick: float = 1.0,
        max_pending_batches: int = 4,
        clock=time.monotonic,
    ):
        self.stream = stream
        self._on_flush = on_flush
        self._max_records = max_records
        self._max_bytes = max_bytes
        self._max_age = max_age
        self._tick = tick
        self._max_pending = max_pending_batches
        self._clock = clock

        self._rows: list[tuple] = []
        self._bytes = 0
        self._oldest: float | None = None
        self._pending: deque[tuple[list[tuple], str]] = deque()
        self._in_flight = False
        self._closed = False
        self._cond = threading.Condition()

        self._worker = threading.Thread(
            target=self._run, name=f"flush-{stream}", daemon=True
        )
        self._worker.start()

    # Public API

    def add(self, row: tuple):
        """Append a row. Cuts a batch immediately if a size threshold is hit."""
        size = row_size(row)
        with self._cond:
            while len(self._pending) >= self._max_pending and not self._closed:
                self._cond.wait()
            if self._closed:
                raise RuntimeError(f"stream buffer {self.stream!r} is closed")

            if not self._rows:
                self._oldest = self._clock()
            self._rows.append(row)
            self._bytes += size

            if len(self._rows) >= self._max_records:
                self._cut("size")
            elif self._bytes >= self._max_bytes:
                self._cut("bytes")

    def drain(self, timeout: float | None = None) -> bool:
        """Cut whatever is buffered and wait until every batch is resolved.

        Returns False if *timeout* elapsed first.
        """
        with self._cond:
            if self._rows:
                self._cut("drain")
            return self._cond.wait_for(
                lambda: not self._pending and not self._in_flight, timeout
            )

    def shutdown(self):
        """Stop accepting rows and schedule the final flush."""
        with self._cond:
            if self._rows:
                self._cut("shutdown")
            self._closed = True
            self._cond.notify_all()

    def join(self, timeout: float | None = None):
        self._worker.join(timeout)
        if self._worker.is_alive():
            logger.warning("Flush worker for %s did not finish within %s s", self.stream, timeout)

    def close(self, timeout: float | None = None):
        self.shutdown()
        self.join(timeout)

    @property
    def pending_count(self) -> int:
        """Rows buffered but not yet cut into a batch."""
        with self._cond:
            return len(self._rows)

    @property
    def queued_batches(self) -> int:
        with self._cond:
            return len(self._pending)

    # Internal helpers

    def _cut(self, trigger: str):
        # Caller holds the lock.
        self._pending.append((self._rows, trigger))
        self._rows = []
        self._bytes = 0
        self._oldest = None
        self._cond.notify_all()

    def _aged(self) -> bool:
        return bool(self._rows) and self._clock() - self._oldest >= self._max_age

    def _run(self):
        while True:
            with self._cond:
                while not self._pending and not self._closed:
                    if self._aged():
                        self._cut("age")
                    else:
                        self._cond.wait(timeout=self._tick)
                if not self._pending:
                    return
                batch, trigger = self._pending.popleft()
                self._in_flight = True
                self._cond.notify_all()

            self._safe_flush(batch, trigger)

            with self._cond:
                self._in_flight = False
                self._cond.notify_all()

    def _safe_flush(self, batch: list[tuple], trigger: str):
        """Invoke the on_flush callback with error handling so that a
        failing callback never crashes the worker."""
        try:
            self._on_flush(self.stream, batch, trigger)
            logger.debug("Flushed %d %s rows (trigger=%s)", len(batch), self.stream, trigger)
        except Exception:
            logger.exception(
                "on_flush callback failed for %d %s rows", len(batch), self.stream
            )
