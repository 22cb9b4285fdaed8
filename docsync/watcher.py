"""
File watcher for the document collection.

Turns native filesystem notifications (via watchdog) into a small number of
``FileChangeEvent`` objects:

- only files with the managed extension are considered
- notifications caused by the application's own writes are dropped
  (see ``WriteTracker``)
- bursts are coalesced per path and flushed together once the collection
  has been quiet for the debounce delay

Threading model: watchdog's emitter thread only enqueues ``RawEvent``
messages. A single processing thread owns the pending set and the debounce
deadline, so no lock guards them. Subscribers and the
``on_document_changed`` callback run on the processing thread.

Usage:
    bus = EventBus()
    watcher = ChangeWatcher(DataPaths("~/Notes"), bus=bus)
    watcher.on_document_changed = indexer.on_document_changed
    watcher.start()
    ...
    watcher.mark_document_write("doc123")   # before saving it ourselves
    ...
    watcher.stop()
"""

import errno
import logging
import os
import queue
import threading
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import WatcherSourceError, WatcherStartError, WatcherStateError
from .events import (
    DOCUMENT_CHANGED,
    INDEX_CHANGED,
    EventBus,
    FileChangeEvent,
    Op,
    RawEvent,
    classify,
)
from .paths import DataPaths
from .write_tracker import DEFAULT_IGNORE_WINDOW, WriteTracker

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 0.3  # seconds
STOP_TIMEOUT = 5.0
HEALTH_CHECK_INTERVAL = 1.0  # seconds between observer liveness checks


class WatcherState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    FAILED = "failed"  # native source died; call stop() to clean up


class _Stop:
    """Queue message that ends the processing loop."""


_STOP = _Stop()


class ChangeEventHandler(FileSystemEventHandler):
    """
    Watchdog handler that forwards file notifications as ``RawEvent``.

    watchdog reports one event type per notification. They are mapped to
    the flag set an inotify-style source would report:

        created  -> CREATE
        modified -> WRITE
        deleted  -> REMOVE
        moved    -> RENAME on the source path, CREATE on the destination

    Directory events and open/close events are not forwarded.
    """

    def __init__(self, sink: Callable[[RawEvent], None]):
        super().__init__()
        self._sink = sink

    def _forward(self, path, op: Op) -> None:
        self._sink(RawEvent(path=os.fsdecode(path), op=op))

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, Op.CREATE)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, Op.WRITE)

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self._forward(event.src_path, Op.REMOVE)

    def on_moved(self, event: FileSystemEvent):
        if event.is_directory:
            return
        self._forward(event.src_path, Op.RENAME)
        self._forward(event.dest_path, Op.CREATE)


class ChangeWatcher:
    """
    Watches a data directory and publishes coalesced change events.

    Two directories are watched, both non-recursively:
    the documents directory (mandatory; ``start`` raises if it cannot be
    watched) and the data directory itself for the index file (optional;
    a failure is logged and the watcher runs without it).

    Document changes are published on ``file:document-changed`` and passed
    to ``on_document_changed``; index changes go to ``file:index-changed``.
    """

    def __init__(
        self,
        paths: DataPaths,
        *,
        bus: EventBus | None = None,
        write_tracker: WriteTracker | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        on_document_changed: Callable[[FileChangeEvent], None] | None = None,
        observer_factory: Callable[[], object] = Observer,
    ):
        """
        Args:
            paths: Layout of the watched data directory
            bus: Channel bus to publish on (a private one if omitted)
            write_tracker: Self-write records (a new one with the default
                ignore window if omitted)
            debounce: Quiet period in seconds before pending events flush
            on_document_changed: Synchronous callback for document changes;
                must return quickly since it runs inside the flush
            observer_factory: Creates the watchdog observer
        """
        self.paths = paths
        self.bus = bus if bus is not None else EventBus()
        self.write_tracker = write_tracker if write_tracker is not None else WriteTracker(DEFAULT_IGNORE_WINDOW)
        if debounce <= 0:
            raise ValueError("debounce must be positive")
        if debounce >= self.write_tracker.ignore_window:
            logger.warning(
                "Debounce (%.3fs) is not shorter than the ignore window (%.3fs); "
                "self-writes may be reported as external changes",
                debounce, self.write_tracker.ignore_window,
            )
        self.debounce = debounce
        self.on_document_changed = on_document_changed
        self._observer_factory = observer_factory

        self._state = WatcherState.STOPPED
        self._lifecycle_lock = threading.Lock()
        self._queue: queue.Queue | None = None
        self._stopping = threading.Event()
        self._observer = None
        self._thread: threading.Thread | None = None
        self.health_check_interval = HEALTH_CHECK_INTERVAL

        # Owned by the processing thread
        self._pending: dict[str, FileChangeEvent] = {}
        self._reported_sources: set[str] = set()
        self._flush_count = 0
        self._emitted_count = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """
        Begin watching.

        Raises:
            WatcherStartError: The documents directory cannot be watched
            WatcherStateError: The watcher is already running
        """
        with self._lifecycle_lock:
            if self._state is not WatcherState.STOPPED:
                raise WatcherStateError(f"Watcher is already {self._state.value}")

            self._queue = queue.Queue()
            self._stopping = threading.Event()
            self._pending = {}
            self._reported_sources = set()
            handler = ChangeEventHandler(self.notify)
            observer = self._observer_factory()
            observer.start()

            docs_path = self.paths.documents_dir()
            try:
                if not docs_path.is_dir():
                    raise FileNotFoundError(
                        errno.ENOENT, "Documents directory not found", str(docs_path)
                    )
                observer.schedule(handler, str(docs_path), recursive=False)
            except OSError as e:
                logger.error("Failed to watch documents directory %s: %s", docs_path, e)
                self._shutdown_observer(observer)
                self._queue = None
                raise WatcherStartError(
                    f"Cannot watch documents directory {docs_path}: {e}"
                ) from e
            logger.info("File watcher: watching %s", docs_path)

            # The data directory holds the index file
            data_path = self.paths.data_path
            try:
                observer.schedule(handler, str(data_path), recursive=False)
            except OSError as e:
                logger.warning("Failed to watch data directory %s: %s", data_path, e)
            else:
                logger.info("File watcher: watching %s", data_path)

            self._observer = observer
            self._thread = threading.Thread(
                target=self._run,
                args=(self._queue, self._stopping),
                name="docsync-watcher",
                daemon=True,
            )
            self._state = WatcherState.RUNNING
            self._thread.start()
            logger.info("File watcher started")

    def stop(self) -> None:
        """
        Stop watching. Safe to call when already stopped.

        Native notifications stop first, then the processing loop ends.
        Events still waiting for their debounce deadline are discarded,
        and so is the rest of a batch that is being delivered when stop()
        is called from a subscriber or callback.
        """
        with self._lifecycle_lock:
            if self._state is WatcherState.STOPPED:
                return
            self._state = WatcherState.STOPPED
            self._stopping.set()

            observer, self._observer = self._observer, None
            if observer is not None:
                self._shutdown_observer(observer)

            if self._queue is not None:
                self._queue.put(_STOP)
            thread, self._thread = self._thread, None
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=STOP_TIMEOUT)
                if thread.is_alive():
                    logger.warning("File watcher thread did not exit within %.1fs", STOP_TIMEOUT)
            self._queue = None
            self._state = WatcherState.STOPPED
            logger.info("File watcher stopped")

    @staticmethod
    def _shutdown_observer(observer) -> None:
        try:
            observer.stop()
            observer.join(timeout=STOP_TIMEOUT)
        except (OSError, RuntimeError) as e:
            logger.warning("Failed to close watcher: %s", e)

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is WatcherState.RUNNING

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    # -------------------------------------------------------------------------
    # Self-write marking
    # -------------------------------------------------------------------------

    def mark_write(self, path: str | Path) -> None:
        """Mark ``path`` as about to be (or just) written by the application."""
        self.write_tracker.mark_write(path)

    def mark_document_write(self, doc_id: str) -> None:
        self.write_tracker.mark_write(self.paths.document(doc_id))

    def mark_index_write(self) -> None:
        self.write_tracker.mark_write(self.paths.index())

    # -------------------------------------------------------------------------
    # Input side (any thread)
    # -------------------------------------------------------------------------

    def notify(self, raw: RawEvent) -> None:
        """Hand a native notification to the processing thread."""
        q = self._queue
        if q is None:
            logger.debug("File watcher not running, dropping %s", raw.path)
            return
        q.put(raw)

    def report_error(self, error: BaseException) -> None:
        """Report a native source error; it is logged by the processing loop."""
        q = self._queue
        if q is not None:
            q.put(error)

    # -------------------------------------------------------------------------
    # Processing thread
    # -------------------------------------------------------------------------

    def _run(self, q: queue.Queue, stopping: threading.Event) -> None:
        deadline: float | None = None
        next_check = time.monotonic() + self.health_check_interval
        while True:
            wake = next_check if deadline is None else min(deadline, next_check)
            try:
                item = q.get(timeout=max(0.0, wake - time.monotonic()))
            except queue.Empty:
                item = None

            now = time.monotonic()
            if now >= next_check:
                next_check = now + self.health_check_interval
                self._check_sources()

            if item is None:
                if deadline is not None and now >= deadline:
                    batch, self._pending = self._pending, {}
                    deadline = None
                    self._flush(batch, stopping)
                    self.write_tracker.purge_expired()
                continue

            if item is _STOP:
                if self._pending:
                    logger.debug(
                        "Discarding %d pending change(s) on stop", len(self._pending)
                    )
                    self._pending = {}
                return

            if isinstance(item, BaseException):
                logger.error("File watcher error: %s", item)
                continue

            try:
                event = self._process(item)
            except Exception:
                logger.exception("File watcher failed to process %r", item)
                continue
            if event is None:
                continue

            self._pending[event.path] = event
            # One shared deadline: any new event postpones the whole batch
            deadline = time.monotonic() + self.debounce

    def _check_sources(self) -> None:
        """
        Detect watchdog threads that died while the watcher was running.

        A dead observer or a dead documents-directory emitter moves the
        watcher to FAILED. A dead data-directory emitter only loses index
        notifications, so it is reported and the watcher keeps running.
        """
        observer = self._observer
        if observer is None or self._state is not WatcherState.RUNNING:
            return

        docs_path = str(self.paths.documents_dir())
        fatal = None
        if not observer.is_alive():
            fatal = "watchdog observer thread exited"

        for emitter in list(observer.emitters):
            if emitter.is_alive():
                continue
            path = emitter.watch.path
            if path in self._reported_sources:
                continue
            self._reported_sources.add(path)
            if path == docs_path:
                fatal = f"watch on documents directory {path} ended"
            else:
                self.report_error(WatcherSourceError(
                    f"Watch on {path} ended; index changes are no longer reported"
                ))

        if fatal is not None:
            self.report_error(WatcherSourceError(f"File watcher failed: {fatal}"))
            self._state = WatcherState.FAILED

    def _process(self, raw: RawEvent) -> FileChangeEvent | None:
        """Filter and classify one notification. None means drop it."""
        if not raw.path.endswith(self.paths.extension):
            return None

        if self.write_tracker.is_recent_write(raw.path):
            logger.debug("File watcher: ignoring self-triggered event for %s", raw.path)
            return None

        change_type = classify(raw.op)
        if change_type is None:
            return None

        logger.debug("File watcher received external event: %s %s", raw.op, raw.path)
        return FileChangeEvent.from_path(
            change_type, raw.path, index_filename=self.paths.index_filename
        )

    def _flush(self, events: dict[str, FileChangeEvent], stopping: threading.Event) -> None:
        """Publish one batch. Runs without any lock held."""
        if not events:
            return
        self._flush_count += 1
        batch = list(events.values())
        for i, event in enumerate(batch):
            if stopping.is_set():
                logger.debug("Discarding %d undelivered change(s) on stop", len(batch) - i)
                return
            self._emitted_count += 1
            if event.is_index:
                logger.info("File watcher emitting: %s", INDEX_CHANGED)
                self.bus.emit(INDEX_CHANGED, event)
                continue

            logger.info("File watcher emitting: %s for %s", DOCUMENT_CHANGED, event.doc_id)
            self.bus.emit(DOCUMENT_CHANGED, event)
            callback = self.on_document_changed
            if callback is not None and not stopping.is_set():
                try:
                    callback(event)
                except Exception:
                    logger.exception("Document change callback failed for %s", event.doc_id)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def stats(self) -> dict:
        return {
            "state": self._state.value,
            "data_path": str(self.paths.data_path),
            "pending_events": len(self._pending),
            "flushes": self._flush_count,
            "emitted": self._emitted_count,
            "tracked_writes": len(self.write_tracker),
        }
