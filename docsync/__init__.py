"""
docsync: watch a document directory and keep its embeddings in sync.

Quick start:
    from docsync import ChangeWatcher, DataPaths, EventBus, DOCUMENT_CHANGED

    bus = EventBus()
    bus.subscribe(DOCUMENT_CHANGED, lambda e: print(e.type.value, e.doc_id))
    with ChangeWatcher(DataPaths("~/Notes"), bus=bus):
        ...
"""

__version__ = "0.1.0"

from .errors import (
    ConfigError,
    DocsyncError,
    EmbeddingError,
    EmbeddingRequestError,
    EmbeddingServiceError,
    UnknownProviderError,
    WatcherSourceError,
    WatcherStartError,
    WatcherStateError,
)
from .events import DOCUMENT_CHANGED, INDEX_CHANGED, ChangeType, EventBus, FileChangeEvent
from .paths import DataPaths
from .watcher import ChangeWatcher
from .write_tracker import WriteTracker

__all__ = [
    "__version__",
    "ChangeType",
    "ChangeWatcher",
    "ConfigError",
    "DataPaths",
    "DOCUMENT_CHANGED",
    "DocsyncError",
    "EmbeddingError",
    "EmbeddingRequestError",
    "EmbeddingServiceError",
    "EventBus",
    "FileChangeEvent",
    "INDEX_CHANGED",
    "UnknownProviderError",
    "WatcherSourceError",
    "WatcherStartError",
    "WatcherStateError",
    "WriteTracker",
]
