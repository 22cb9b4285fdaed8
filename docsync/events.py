"""
Change events and the channel bus that delivers them.

Raw notifications from the filesystem carry a set of operation flags
(``Op``). The watcher classifies them into a single ``ChangeType`` with a
fixed precedence and publishes ``FileChangeEvent`` objects on named
channels of an ``EventBus``.
"""

import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, Flag, auto

logger = logging.getLogger(__name__)

INDEX_CHANGED = "file:index-changed"
DOCUMENT_CHANGED = "file:document-changed"


class Op(Flag):
    """Native operation flags, one raw notification may carry several."""
    NONE = 0
    CREATE = auto()
    WRITE = auto()
    REMOVE = auto()
    RENAME = auto()
    CHMOD = auto()


class ChangeType(str, Enum):
    CREATE = "create"
    WRITE = "write"
    REMOVE = "remove"
    RENAME = "rename"


# Highest precedence first. When one notification carries several flags
# the first match wins: create > write > remove > rename.
CLASSIFY_PRECEDENCE: tuple[tuple[Op, ChangeType], ...] = (
    (Op.CREATE, ChangeType.CREATE),
    (Op.WRITE, ChangeType.WRITE),
    (Op.REMOVE, ChangeType.REMOVE),
    (Op.RENAME, ChangeType.RENAME),
)


def classify(op: Op) -> ChangeType | None:
    """Map a flag set to one change type, or None if nothing relevant is set."""
    for flag, change_type in CLASSIFY_PRECEDENCE:
        if op & flag:
            return change_type
    return None


@dataclass(frozen=True)
class RawEvent:
    """A native notification before filtering and classification."""
    path: str
    op: Op


@dataclass(frozen=True)
class FileChangeEvent:
    """
    A coalesced change to one file, delivered to subscribers.

    Attributes:
        type: Classified change type
        path: Path reported by the filesystem
        is_index: True iff the base name is the reserved index file name
        doc_id: Base name without extension for documents, "" for the index
    """
    type: ChangeType
    path: str
    is_index: bool
    doc_id: str

    @classmethod
    def from_path(
        cls,
        change_type: ChangeType,
        path: str,
        index_filename: str = "index.json",
    ) -> "FileChangeEvent":
        base = os.path.basename(path)
        is_index = base == index_filename
        doc_id = "" if is_index else os.path.splitext(base)[0]
        return cls(type=change_type, path=path, is_index=is_index, doc_id=doc_id)

    @property
    def channel(self) -> str:
        return INDEX_CHANGED if self.is_index else DOCUMENT_CHANGED

    def to_dict(self) -> dict:
        """Wire payload as delivered to the UI layer."""
        return {
            "type": self.type.value,
            "path": self.path,
            "isIndex": self.is_index,
            "docId": self.doc_id,
        }


Subscriber = Callable[[FileChangeEvent], None]


class EventBus:
    """
    Named channels with synchronous subscribers.

    Constructed once at startup and handed to the watcher and to whatever
    listens (UI bridge, indexer, tests). Subscribers run on the emitting
    thread; one failing subscriber is logged and does not stop delivery to
    the others.

    Example:
        bus = EventBus()
        bus.subscribe(DOCUMENT_CHANGED, lambda e: print(e.doc_id))
        watcher = ChangeWatcher(paths, bus=bus)
    """

    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, channel: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` on ``channel``. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.setdefault(channel, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(channel, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def emit(self, channel: str, event: FileChangeEvent) -> int:
        """Deliver ``event`` to every subscriber of ``channel``.

        Returns the number of subscribers that handled it without raising.
        """
        with self._lock:
            callbacks = list(self._subscribers.get(channel, ()))
        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
                delivered += 1
            except Exception:
                logger.exception("Subscriber for %s failed on %s", channel, event.path)
        return delivered

    def channels(self) -> list[str]:
        with self._lock:
            return [name for name, callbacks in self._subscribers.items() if callbacks]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))
