"""Dead-letter spool for batches the store could not accept."""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Sequence

logger = logging.getLogger(__name__)


class DeadLetterSpool:
    """Writes each rejected batch to its own JSON-lines file.

    One line per row, keyed by column name, so the batch can be replayed
    into the store later. Files appear atomically (tmp + os.replace).
    """

    def __init__(self, directory: str):
        self._dir = directory
        self._counter = 0
        self._lock = threading.Lock()

    def spool(self, stream: str, columns: Sequence[str], rows: list[tuple]) -> str:
        os.makedirs(self._dir, exist_ok=True)
        with self._lock:
            self._counter += 1
            seq = self._counter
        now = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        dest = os.path.join(self._dir, f"{stream}_{now}_{seq:06d}.jsonl")

        fd, tmp = tempfile.mkstemp(dir=self._dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for row in rows:
                    f.write(json.dumps(dict(zip(columns, row)), default=str) + "\n")
            os.replace(tmp, dest)
        except Exception:
            os.unlink(tmp)
            raise
        logger.info("Spooled %d %s rows to %s", len(rows), stream, dest)
        return dest
