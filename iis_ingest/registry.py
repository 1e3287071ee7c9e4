"""Offset registry: persists per-source read positions to survive restarts.

State is a JSON mapping of source path to ``{"offset": ..., "inode": ...}``,
written atomically (tmp + os.replace).
"""

import json
import logging
import os
import tempfile
import threading

logger = logging.getLogger(__name__)


class OffsetRegistry:
    def __init__(self, registry_file: str):
        self._path = registry_file
        self._data: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self):
        if not os.path.exists(self._path):
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                self._data = json.load(f)
            logger.info("Loaded offset registry from %s (%d entries)", self._path, len(self._data))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load registry %s: %s", self._path, e)
            self._data = {}

    def get_offset(self, path: str) -> int:
        with self._lock:
            return self._data.get(path, {}).get("offset", 0)

    def get_inode(self, path: str) -> int | None:
        with self._lock:
            return self._data.get(path, {}).get("inode")

    def update(self, path: str, offset: int, inode: int):
        with self._lock:
            self._data[path] = {"offset": offset, "inode": inode}

    def resume_offset(self, path: str, inode: int, size: int) -> int:
        """Offset to continue reading *path* from. Resets to 0 when the file
        was rotated (inode changed) or truncated (smaller than the offset)."""
        saved_offset = self.get_offset(path)
        saved_inode = self.get_inode(path)
        if saved_inode is not None and saved_inode != inode:
            logger.info("File rotated (inode changed): %s", path)
            return 0
        if size < saved_offset:
            logger.info("File truncated: %s", path)
            return 0
        return saved_offset

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            return {path: dict(entry) for path, entry in self._data.items()}

    def save(self, snapshot: dict[str, dict] | None = None):
        """Atomic write of *snapshot*, or of the current state when omitted."""
        data = self.snapshot() if snapshot is None else snapshot
        directory = os.path.dirname(self._path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self._path)
        except Exception:
            os.unlink(tmp)
            raise
