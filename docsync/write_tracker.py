"""
Tracks files the application wrote itself.

The watcher asks the tracker before reacting to a filesystem notification.
A record stays valid for the whole ignore window, not just for the first
matching notification: one save can show up as several native events
(write + chmod, temp file renamed over the target, editors that truncate
then write).
"""

import logging
import os
import threading
import time
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_WINDOW = 2.0  # seconds; must exceed the watcher debounce delay


def normalize_path(path: str | os.PathLike) -> str:
    """Absolute, normalised string form used as the record key."""
    return os.path.normpath(os.path.abspath(os.fspath(path)))


class WriteTracker:
    """
    Remembers when the application last wrote each path.

    Thread-safe: ``mark_write`` is called from whatever thread persists a
    file, ``is_recent_write`` from the watcher's processing thread.
    """

    def __init__(self, ignore_window: float = DEFAULT_IGNORE_WINDOW):
        """
        Args:
            ignore_window: Seconds after a self-write during which
                notifications for the same path are treated as our own
        """
        if ignore_window <= 0:
            raise ValueError("ignore_window must be positive")
        self.ignore_window = ignore_window
        self._records: dict[str, float] = {}
        self._lock = threading.Lock()

    def mark_write(self, path: str | Path) -> None:
        """Record that the application is writing (or just wrote) ``path``."""
        key = normalize_path(path)
        with self._lock:
            self._records[key] = time.monotonic()

    def is_recent_write(self, path: str | Path) -> bool:
        """
        True if ``path`` was written by the application within the window.

        Expired records are dropped here. Records inside the window are kept
        so every notification produced by the same save is suppressed.
        """
        key = normalize_path(path)
        with self._lock:
            written_at = self._records.get(key)
            if written_at is None:
                return False
            if time.monotonic() - written_at > self.ignore_window:
                del self._records[key]
                return False
            return True

    def forget(self, path: str | Path) -> None:
        """Drop the record for ``path`` if any."""
        with self._lock:
            self._records.pop(normalize_path(path), None)

    def purge_expired(self) -> int:
        """Drop every expired record. Returns the number removed."""
        now = time.monotonic()
        with self._lock:
            expired = [
                key for key, written_at in self._records.items()
                if now - written_at > self.ignore_window
            ]
            for key in expired:
                del self._records[key]
        if expired:
            logger.debug("Purged %d expired self-write records", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
