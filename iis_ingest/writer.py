"""Batching writer - one buffer and flush worker per stream, bulk writes with retry."""

import logging
import random
import time

from iis_ingest.batch_buffer import StreamBuffer
from iis_ingest.config import WriterConfig
from iis_ingest.dead_letter import DeadLetterSpool
from iis_ingest.metrics import Metrics
from iis_ingest.models import STREAMS, ClassifiedRecord, FailureRecord
from iis_ingest.routing import COLUMNS, to_row
from iis_ingest.store import StoreError, TransientStoreError

logger = logging.getLogger(__name__)


class UnrecoverableBatchError(Exception):
    """A batch that could not be written within the retry budget."""

    def __init__(self, stream: str, rows: list[tuple], attempts: int):
        super().__init__(f"{stream}: {len(rows)} rows not written after {attempts} attempt(s)")
        self.stream = stream
        self.rows = rows
        self.attempts = attempts


class BatchingWriter:
    """Routes rows into per-stream buffers and writes cut batches to the store.

    Streams flush independently and in parallel; within a stream, batches are
    written in the order their rows were submitted.
    """

    def __init__(
        self,
        store,
        config: WriterConfig,
        tables: dict[str, str] | None = None,
        metrics: Metrics | None = None,
        spool: DeadLetterSpool | None = None,
        sleep=time.sleep,
    ):
        self._store = store
        self._config = config
        self._tables = {s: s for s in STREAMS}
        self._tables.update(tables or {})
        self._metrics = metrics or Metrics()
        self._spool = spool or DeadLetterSpool(config.dead_letter_dir)
        self._sleep = sleep
        self._buffers = {
            stream: StreamBuffer(
                stream,
                on_flush=self._write_batch,
                max_records=config.max_records,
                max_bytes=config.max_bytes,
                max_age=config.max_age,
                tick=config.tick,
                max_pending_batches=config.max_pending_batches,
            )
            for stream in STREAMS
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, result: ClassifiedRecord | FailureRecord, streams) -> None:
        """Append *result* to every stream in *streams*."""
        for stream in sorted(streams):
            self._buffers[stream].add(to_row(stream, result))

    def drain(self, timeout: float | None = None) -> bool:
        """Flush every buffer and wait for all queued batches to resolve."""
        results = [buf.drain(timeout) for buf in self._buffers.values()]
        return all(results)

    def close(self, timeout: float | None = 30.0) -> None:
        """Final flush of every non-empty buffer, then stop the workers."""
        for buf in self._buffers.values():
            buf.shutdown()
        for buf in self._buffers.values():
            buf.join(timeout)
        logger.info("Writer closed")

    def buffer(self, stream: str) -> StreamBuffer:
        return self._buffers[stream]

    # ------------------------------------------------------------------
    # Flush callback (called by StreamBuffer workers)
    # ------------------------------------------------------------------

    def _write_batch(self, stream: str, rows: list[tuple], trigger: str) -> None:
        try:
            self._write_with_retry(stream, rows)
        except UnrecoverableBatchError as exc:
            logger.error("Unrecoverable batch: %s", exc)
            self._metrics.increment(f"batches_failed.{stream}")
            self._spool.spool(stream, COLUMNS[stream], rows)
            return

        self._metrics.increment(f"batches_written.{stream}")
        self._metrics.increment(f"rows_written.{stream}", len(rows))
        logger.info("Wrote %d rows to %s (trigger=%s)", len(rows), self._tables[stream], trigger)

    def _write_with_retry(self, stream: str, rows: list[tuple]) -> None:
        table = self._tables[stream]
        max_attempts = self._config.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                self._store.bulk_insert(table, COLUMNS[stream], rows)
                return
            except TransientStoreError as exc:
                if attempt >= max_attempts:
                    logger.error("Write to %s failed after %d attempts: %s", table, attempt, exc)
                    raise UnrecoverableBatchError(stream, rows, attempt) from exc
                logger.warning(
                    "Write to %s failed (attempt %d/%d): %s",
                    table, attempt, max_attempts, exc,
                )
                self._metrics.increment("write_retries")
                self._sleep(self._backoff_delay(attempt))
            except StoreError as exc:
                logger.error("Write to %s rejected: %s", table, exc)
                raise UnrecoverableBatchError(stream, rows, attempt) from exc
            except Exception as exc:
                logger.exception("Unexpected error writing to %s", table)
                raise UnrecoverableBatchError(stream, rows, attempt) from exc

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter.

        The base delay doubles each attempt, is capped at
        ``retry_backoff_max``, then multiplied by a random jitter factor
        between 0.8 and 1.2.
        """
        base = self._config.retry_backoff * (2 ** (attempt - 1))
        capped = min(base, self._config.retry_backoff_max)
        return capped * random.uniform(0.8, 1.2)
