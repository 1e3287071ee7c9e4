"""Source reader - reads log lines from a resume offset, once or continuously."""

import logging
import os
import threading

from watchdog.events import FileSystemEventHandler

from iis_ingest.metrics import Metrics
from iis_ingest.models import RawLine
from iis_ingest.registry import OffsetRegistry

logger = logging.getLogger(__name__)


class SourceEventHandler(FileSystemEventHandler):
    """Watchdog handler that wakes the reader of a file when it changes."""

    def __init__(self):
        super().__init__()
        self._wakeups: dict[str, threading.Event] = {}

    def register(self, path: str) -> threading.Event:
        return self._wakeups.setdefault(os.path.abspath(path), threading.Event())

    def watched_dirs(self) -> set[str]:
        """Unique parent directories of registered files (for Observer scheduling)."""
        return {os.path.dirname(p) for p in self._wakeups}

    def _notify(self, path):
        wakeup = self._wakeups.get(os.path.abspath(os.fsdecode(path)))
        if wakeup is not None:
            wakeup.set()

    def on_modified(self, event):
        if not event.is_directory:
            self._notify(event.src_path)

    def on_created(self, event):
        if not event.is_directory:
            self._notify(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._notify(event.src_path)
            self._notify(event.dest_path)


class SourceReader:
    """Reads one log source line by line and hands each line to *on_line*.

    In ``follow`` mode the reader tails the file: it waits for the file to
    appear, leaves an unterminated last line for the next read, and reopens
    the file after rotation (inode change) or truncation. In ``once`` mode
    it stops at end of file.

    The registry is updated after every line, so its offsets always point at
    the start of the next unread line.
    """

    def __init__(
        self,
        path: str,
        registry: OffsetRegistry,
        on_line,
        shutdown_event: threading.Event,
        follow: bool = False,
        poll_interval: float = 1.0,
        encoding: str = "utf-8",
        metrics: Metrics | None = None,
        wakeup: threading.Event | None = None,
    ):
        self.path = os.path.abspath(path)
        self.error: OSError | None = None
        self._registry = registry
        self._on_line = on_line
        self._shutdown = shutdown_event
        self._follow = follow
        self._poll_interval = poll_interval
        self._encoding = encoding
        self._metrics = metrics or Metrics()
        self._wakeup = wakeup or threading.Event()
        self._line_no = 0

    def run(self):
        """Read until EOF (once) or shutdown (follow). A failing source only
        ends its own loop."""
        try:
            self._run()
        except OSError as exc:
            self.error = exc
            self._metrics.increment("source_errors")
            logger.error("Source %s failed: %s", self.path, exc)
        except Exception as exc:
            self.error = exc
            self._metrics.increment("source_errors")
            logger.exception("Source %s failed unexpectedly", self.path)

    def wake(self):
        self._wakeup.set()

    def _run(self):
        while not self._shutdown.is_set():
            if self._follow and not os.path.exists(self.path):
                logger.debug("Waiting for file %s to appear...", self.path)
                self._wait()
                continue
            with open(self.path, "rb") as fh:
                self._read_file(fh)
            if not self._follow:
                return

    def _read_file(self, fh):
        stat = os.fstat(fh.fileno())
        inode = stat.st_ino
        offset = self._registry.resume_offset(self.path, inode, stat.st_size)
        fh.seek(offset)
        self._registry.update(self.path, offset, inode)
        logger.info("Reading %s from offset %d", self.path, offset)

        while not self._shutdown.is_set():
            data = fh.readline()
            if data.endswith(b"\n") or (data and not self._follow):
                self._emit(offset, data)
                offset += len(data)
                self._registry.update(self.path, offset, inode)
                continue

            if data:
                # Unterminated last line; re-read once the newline arrives.
                fh.seek(offset)
            if not self._follow:
                return
            if self._replaced(inode, offset):
                return
            self._wait()

    def _emit(self, offset: int, data: bytes):
        self._line_no += 1
        text = data.decode(self._encoding, errors="replace").rstrip("\r\n")
        if not text.strip():
            self._metrics.increment("blank_lines_skipped")
            return
        if text.startswith("#"):
            self._metrics.increment("directives_skipped")
            return
        self._metrics.increment("lines_read")
        self._on_line(RawLine(source=self.path, offset=offset, line_no=self._line_no, text=text))

    def _replaced(self, inode: int, offset: int) -> bool:
        """True when the path now names a different file, or was truncated."""
        try:
            stat = os.stat(self.path)
        except FileNotFoundError:
            return False
        if stat.st_ino != inode:
            logger.info("File rotation detected for %s", self.path)
            return True
        if stat.st_size < offset:
            logger.info("File truncation detected for %s", self.path)
            return True
        return False

    def _wait(self):
        self._wakeup.wait(self._poll_interval)
        self._wakeup.clear()
