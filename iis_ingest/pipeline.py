"""Pipeline coordinator: reader, extractor, classifier, router and writer."""

import logging
import os
import threading
import time

from watchdog.observers import Observer

from iis_ingest.classifier import classify
from iis_ingest.config import Config
from iis_ingest.dead_letter import DeadLetterSpool
from iis_ingest.extractor import extract
from iis_ingest.metrics import Metrics
from iis_ingest.models import FailureRecord, RawLine
from iis_ingest.reader import SourceEventHandler, SourceReader
from iis_ingest.registry import OffsetRegistry
from iis_ingest.routing import destinations
from iis_ingest.writer import BatchingWriter

logger = logging.getLogger(__name__)


class Pipeline:
    """Runs one reader thread per source and feeds every line through
    extraction, classification and routing into the batching writer.

    Offsets are checkpointed only after the writer has drained, so a restart
    never skips rows that were read but not yet written.
    """

    def __init__(
        self,
        config: Config,
        store,
        shutdown_event: threading.Event,
        metrics: Metrics | None = None,
        writer: BatchingWriter | None = None,
    ):
        self._config = config
        self._shutdown = shutdown_event
        self._metrics = metrics or Metrics(config.metrics_file)
        self._tz = config.tzinfo
        self._registry = OffsetRegistry(config.registry_file)
        self._writer = writer or BatchingWriter(
            store,
            config.writer,
            tables=config.store.tables,
            metrics=self._metrics,
            spool=DeadLetterSpool(config.writer.dead_letter_dir),
        )
        self._readers: list[SourceReader] = []

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def registry(self) -> OffsetRegistry:
        return self._registry

    def process_line(self, raw: RawLine) -> frozenset[str]:
        """Extract, classify and route one line. Returns its destination streams."""
        result = extract(raw, tz=self._tz)
        if isinstance(result, FailureRecord):
            self._metrics.increment("records_failed")
            logger.debug("%s:%d %s", raw.source, raw.line_no, result.detail)
        else:
            result = classify(result, self._config.static_extensions)
            self._metrics.increment("records_parsed")
            if result.is_static:
                self._metrics.increment("records_static")

        streams = destinations(result)
        self._writer.submit(result, streams)
        return streams

    def checkpoint(self, timeout: float | None = None) -> bool:
        """Drain the writer, then persist the offsets read before draining."""
        snapshot = self._registry.snapshot()
        if not self._writer.drain(timeout):
            logger.warning("Checkpoint skipped: writer did not drain within %s s", timeout)
            return False
        self._registry.save(snapshot)
        self._metrics.save()
        logger.debug("Checkpoint saved for %d source(s)", len(snapshot))
        return True

    def run(self):
        """Read all sources until they finish (once) or shutdown is requested."""
        follow = self._config.mode == "follow"
        handler = SourceEventHandler()
        for path in self._config.sources:
            self._readers.append(
                SourceReader(
                    path,
                    self._registry,
                    self.process_line,
                    self._shutdown,
                    follow=follow,
                    poll_interval=self._config.poll_interval,
                    encoding=self._config.encoding,
                    metrics=self._metrics,
                    wakeup=handler.register(path),
                )
            )

        observer = None
        if follow:
            observer = Observer()
            for dir_path in handler.watched_dirs():
                os.makedirs(dir_path, exist_ok=True)
                observer.schedule(handler, dir_path, recursive=False)
                logger.info("Watching directory: %s", dir_path)
            observer.start()

        threads = [
            threading.Thread(target=r.run, name=f"reader-{i}", daemon=True)
            for i, r in enumerate(self._readers)
        ]
        for t in threads:
            t.start()
        logger.info("Pipeline running: %d source(s), mode=%s", len(threads), self._config.mode)

        try:
            last_checkpoint = time.monotonic()
            while any(t.is_alive() for t in threads):
                if self._shutdown.wait(timeout=min(0.5, self._config.checkpoint_interval)):
                    break
                if time.monotonic() - last_checkpoint >= self._config.checkpoint_interval:
                    self.checkpoint()
                    last_checkpoint = time.monotonic()
        finally:
            self._stop(threads, observer)

    def _stop(self, threads: list[threading.Thread], observer):
        logger.info("Shutting down pipeline...")
        self._shutdown.set()
        for reader in self._readers:
            reader.wake()
        for t in threads:
            t.join(timeout=10)
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)

        snapshot = self._registry.snapshot()
        self._writer.close()
        self._registry.save(snapshot)
        self._metrics.save()

        failed = [r.path for r in self._readers if r.error is not None]
        if failed:
            logger.error("Source(s) ended with errors: %s", ", ".join(failed))
        logger.info("Pipeline stopped: %s", self._metrics.get_all()["counters"])
