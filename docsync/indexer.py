"""
Reference indexing coordinator.

Connects the change watcher to an embedding provider: changed documents are
read, chunked, embedded and written to a vector sink. Per-document status is
kept in SQLite so failures survive restarts.

Failures are split the way ``EmbeddingServiceError.is_unrecoverable()``
splits them:

- failed_recoverable: retried with exponential backoff (30s, 60s, 120s, ...
  up to 1h)
- failed_unrecoverable: left alone until ``retry_failed()`` (typically
  after the configuration was fixed)
"""

import logging
import queue
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Protocol

from .chunking import DEFAULT_MAX_CHUNK_SIZE, DEFAULT_OVERLAP, chunk_text, extract_text
from .errors import EmbeddingError, EmbeddingServiceError
from .events import ChangeType, FileChangeEvent
from .paths import DataPaths
from .providers.base import EmbeddingProvider

logger = logging.getLogger(__name__)

STATUS_INDEXED = "indexed"
STATUS_FAILED_RECOVERABLE = "failed_recoverable"
STATUS_FAILED_UNRECOVERABLE = "failed_unrecoverable"

# Retry backoff: min(BASE * 2^(attempts-1), MAX) seconds
RETRY_BACKOFF_BASE = 30
RETRY_BACKOFF_MAX = 3600

RETRY_POLL_SECONDS = 5.0
STOP_TIMEOUT = 5.0


def retry_delay(attempts: int) -> int:
    """Backoff in seconds after ``attempts`` failures."""
    return min(RETRY_BACKOFF_BASE * (2 ** (max(attempts, 1) - 1)), RETRY_BACKOFF_MAX)


@dataclass
class IndexStatus:
    """Indexing state of one document."""
    doc_id: str
    status: str
    attempts: int = 0
    last_error: Optional[str] = None
    retry_after: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "doc_id": self.doc_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "retry_after": self.retry_after,
            "updated_at": self.updated_at,
        }


class IndexStatusStore:
    """
    SQLite-backed per-document index status.

    One row per document that has been processed at least once. Timestamps
    are UTC ISO strings, so they compare correctly as text.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS index_status (
                doc_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                last_error TEXT,
                retry_after TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_index_status
            ON index_status(status)
        """)
        self._conn.commit()

    def mark_indexed(self, doc_id: str) -> None:
        """Record a successful index; clears any previous failure."""
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO index_status
                (doc_id, status, attempts, last_error, retry_after, updated_at)
                VALUES (?, ?, 0, NULL, NULL, ?)
            """, (doc_id, STATUS_INDEXED, now))
            self._conn.commit()

    def mark_failed(self, doc_id: str, error: str, recoverable: bool) -> IndexStatus:
        """Record a failure and schedule a retry if it is recoverable.

        The attempt counter keeps growing across failures and resets on
        success. Returns the stored status.
        """
        now = datetime.now(timezone.utc)
        with self._lock:
            row = self._conn.execute(
                "SELECT attempts, status FROM index_status WHERE doc_id = ?",
                (doc_id,),
            ).fetchone()
            previous = row[0] if row and row[1] != STATUS_INDEXED else 0
            attempts = previous + 1

            if recoverable:
                status = STATUS_FAILED_RECOVERABLE
                delay = retry_delay(attempts)
                retry_after = (now + timedelta(seconds=delay)).isoformat()
            else:
                status = STATUS_FAILED_UNRECOVERABLE
                retry_after = None

            self._conn.execute("""
                INSERT OR REPLACE INTO index_status
                (doc_id, status, attempts, last_error, retry_after, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (doc_id, status, attempts, error, retry_after, now.isoformat()))
            self._conn.commit()

        if recoverable:
            logger.info(
                "Indexing %s failed (attempt %d), retry after %ds: %s",
                doc_id, attempts, delay, error,
            )
        else:
            logger.warning("Indexing %s failed permanently: %s", doc_id, error)
        return IndexStatus(
            doc_id=doc_id, status=status, attempts=attempts,
            last_error=error, retry_after=retry_after, updated_at=now.isoformat(),
        )

    def remove(self, doc_id: str) -> bool:
        """Forget a document. Returns True if it had a row."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM index_status WHERE doc_id = ?", (doc_id,)
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def get(self, doc_id: str) -> IndexStatus | None:
        with self._lock:
            row = self._conn.execute("""
                SELECT doc_id, status, attempts, last_error, retry_after, updated_at
                FROM index_status WHERE doc_id = ?
            """, (doc_id,)).fetchone()
        return IndexStatus(*row) if row else None

    def due_for_retry(self, now: datetime | None = None) -> list[str]:
        """Doc ids with a recoverable failure whose backoff has elapsed."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            cursor = self._conn.execute("""
                SELECT doc_id FROM index_status
                WHERE status = ?
                  AND (retry_after IS NULL OR retry_after <= ?)
                ORDER BY retry_after ASC
            """, (STATUS_FAILED_RECOVERABLE, now.isoformat()))
            return [row[0] for row in cursor.fetchall()]

    def list_failed(self) -> list[IndexStatus]:
        """All documents in either failed state, oldest update first."""
        with self._lock:
            cursor = self._conn.execute("""
                SELECT doc_id, status, attempts, last_error, retry_after, updated_at
                FROM index_status
                WHERE status IN (?, ?)
                ORDER BY updated_at ASC
            """, (STATUS_FAILED_RECOVERABLE, STATUS_FAILED_UNRECOVERABLE))
            return [IndexStatus(*row) for row in cursor.fetchall()]

    def retry_failed(self) -> int:
        """Make every unrecoverable failure due for retry now.

        Resets attempt counters. Returns the number of documents reset.
        """
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE index_status
                SET status = ?, attempts = 0, retry_after = NULL
                WHERE status = ?
            """, (STATUS_FAILED_RECOVERABLE, STATUS_FAILED_UNRECOVERABLE))
            self._conn.commit()
            count = cursor.rowcount
        if count:
            logger.info("Reset %d failed documents for retry", count)
        return count

    def stats(self) -> dict:
        """Counts per status."""
        with self._lock:
            cursor = self._conn.execute("""
                SELECT status, COUNT(*) FROM index_status GROUP BY status
            """)
            by_status = {row[0]: row[1] for row in cursor.fetchall()}
        return {
            STATUS_INDEXED: by_status.get(STATUS_INDEXED, 0),
            STATUS_FAILED_RECOVERABLE: by_status.get(STATUS_FAILED_RECOVERABLE, 0),
            STATUS_FAILED_UNRECOVERABLE: by_status.get(STATUS_FAILED_UNRECOVERABLE, 0),
            "total": sum(by_status.values()),
            "db_path": str(self._db_path),
        }

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# -----------------------------------------------------------------------------
# Vector storage
# -----------------------------------------------------------------------------

class VectorSink(Protocol):
    """Destination for document chunk vectors."""

    def upsert(self, doc_id: str, chunks: list[str], vectors: list[list[float]]) -> None:
        """Replace all stored chunks of ``doc_id``."""
        ...

    def delete(self, doc_id: str) -> None:
        """Drop all stored chunks of ``doc_id``. Unknown ids are ignored."""
        ...


class MemoryVectorSink:
    """
    In-memory vector sink.

    The first stored vector fixes the dimension; vectors of any other length
    are rejected, since they cannot be compared in one index.
    """

    def __init__(self):
        self._docs: dict[str, list[tuple[str, list[float]]]] = {}
        self._dimension: int | None = None
        self._lock = threading.Lock()

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def upsert(self, doc_id: str, chunks: list[str], vectors: list[list[float]]) -> None:
        if len(chunks) != len(vectors):
            raise ValueError(
                f"{len(chunks)} chunks but {len(vectors)} vectors for {doc_id}"
            )
        with self._lock:
            dim = self._dimension
            for vector in vectors:
                if dim is None:
                    dim = len(vector)
                elif len(vector) != dim:
                    raise ValueError(
                        f"Vector dimension {len(vector)} does not match index dimension {dim}"
                    )
            self._dimension = dim
            self._docs[doc_id] = list(zip(chunks, vectors))

    def delete(self, doc_id: str) -> None:
        with self._lock:
            self._docs.pop(doc_id, None)

    def get(self, doc_id: str) -> list[tuple[str, list[float]]]:
        with self._lock:
            return list(self._docs.get(doc_id, ()))

    def doc_ids(self) -> list[str]:
        with self._lock:
            return list(self._docs)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(chunks) for chunks in self._docs.values())


# -----------------------------------------------------------------------------
# Coordinator
# -----------------------------------------------------------------------------

_INDEX = "index"
_REMOVE = "remove"
_STOP = object()


class DocumentIndexer:
    """
    Keeps a vector sink in step with the documents directory.

    ``on_document_changed`` is meant to be wired to the watcher. It only
    enqueues; the work happens on a worker thread started by ``start()``.
    The worker also re-indexes documents whose retry backoff has elapsed.

    Usage:
        indexer = DocumentIndexer(paths, provider, MemoryVectorSink(), store)
        watcher.on_document_changed = indexer.on_document_changed
        indexer.start()
    """

    def __init__(
        self,
        paths: DataPaths,
        provider: EmbeddingProvider,
        sink: VectorSink,
        status_store: IndexStatusStore,
        *,
        max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
        overlap: int = DEFAULT_OVERLAP,
        retry_poll: float = RETRY_POLL_SECONDS,
    ):
        self.paths = paths
        self.provider = provider
        self.sink = sink
        self.status_store = status_store
        self.max_chunk_size = max_chunk_size
        self.overlap = overlap
        self.retry_poll = retry_poll

        self._queue: queue.Queue = queue.Queue()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None
        self._indexed_count = 0
        self._failed_count = 0

    # -------------------------------------------------------------------------
    # Synchronous operations
    # -------------------------------------------------------------------------

    def index_document(self, doc_id: str) -> int:
        """
        Index one document now. Returns the number of chunks stored.

        A missing file is treated as a removal. A document without text is
        removed from the sink and counts as indexed.

        Raises:
            EmbeddingError: embedding failed; the failure is recorded first
            ValueError: the sink rejected the vectors; recorded as
                unrecoverable
        """
        path = self.paths.document(doc_id)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            logger.debug("Document %s no longer exists, removing from index", doc_id)
            self.remove_document(doc_id)
            return 0

        chunks = chunk_text(extract_text(raw), self.max_chunk_size, self.overlap)
        if not chunks:
            self.sink.delete(doc_id)
            self.status_store.mark_indexed(doc_id)
            logger.debug("Document %s has no text", doc_id)
            return 0

        try:
            vectors = self.provider.embed_batch(chunks)
        except EmbeddingServiceError as e:
            self.status_store.mark_failed(doc_id, str(e), recoverable=not e.is_unrecoverable())
            raise
        except EmbeddingError as e:
            self.status_store.mark_failed(doc_id, str(e), recoverable=True)
            raise

        try:
            self.sink.upsert(doc_id, chunks, vectors)
        except ValueError as e:
            self.status_store.mark_failed(doc_id, str(e), recoverable=False)
            raise

        self.status_store.mark_indexed(doc_id)
        logger.info("Indexed %s (%d chunks)", doc_id, len(chunks))
        return len(chunks)

    def remove_document(self, doc_id: str) -> None:
        """Drop a document from the sink and the status store."""
        self.sink.delete(doc_id)
        self.status_store.remove(doc_id)
        logger.info("Removed %s from index", doc_id)

    def document_ids(self) -> list[str]:
        """Ids of all document files currently on disk."""
        docs_dir = self.paths.documents_dir()
        if not docs_dir.is_dir():
            return []
        return sorted(
            p.name[: -len(self.paths.extension)]
            for p in docs_dir.iterdir()
            if p.is_file() and p.name.endswith(self.paths.extension)
        )

    # -------------------------------------------------------------------------
    # Asynchronous side
    # -------------------------------------------------------------------------

    def on_document_changed(self, event: FileChangeEvent) -> None:
        """Queue work for a change event. Never blocks."""
        if event.is_index or not event.doc_id:
            return
        if event.type in (ChangeType.REMOVE, ChangeType.RENAME):
            self._queue.put((_REMOVE, event.doc_id))
        else:
            self._queue.put((_INDEX, event.doc_id))

    def enqueue(self, doc_id: str) -> None:
        self._queue.put((_INDEX, doc_id))

    def enqueue_all(self) -> int:
        """Queue every document on disk for indexing. Returns the count."""
        doc_ids = self.document_ids()
        for doc_id in doc_ids:
            self.enqueue(doc_id)
        return len(doc_ids)

    def start(self) -> None:
        """Start the worker thread. No-op if it is already running."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._run, name="docsync-indexer", daemon=True
        )
        self._thread.start()
        logger.info("Indexer started")

    def stop(self) -> None:
        """
        Stop the worker after the document it is working on.

        Work still queued is discarded; those documents are picked up
        again on their next change or by ``enqueue_all()``.
        """
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stopping.set()
        self._queue.put(_STOP)
        if thread is not threading.current_thread():
            thread.join(timeout=STOP_TIMEOUT)
            if thread.is_alive():
                logger.warning("Indexer thread did not exit within %.1fs", STOP_TIMEOUT)

        dropped = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not _STOP:
                dropped += 1
        if dropped:
            logger.info("Indexer stopped with %d queued item(s) discarded", dropped)
        else:
            logger.info("Indexer stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def pending(self) -> int:
        """Approximate number of queued work items."""
        return self._queue.qsize()

    def stats(self) -> dict:
        return {
            "running": self.is_running,
            "queued": self.pending(),
            "indexed": self._indexed_count,
            "failed": self._failed_count,
        }

    def _run(self) -> None:
        next_retry_check = time.monotonic() + self.retry_poll
        while not self._stopping.is_set():
            timeout = max(0.0, next_retry_check - time.monotonic())
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                item = None

            if item is _STOP:
                return
            if item is not None:
                self._handle(*item)

            if time.monotonic() >= next_retry_check:
                for doc_id in self.status_store.due_for_retry():
                    if self._stopping.is_set():
                        return
                    logger.debug("Retrying %s", doc_id)
                    self._handle(_INDEX, doc_id)
                next_retry_check = time.monotonic() + self.retry_poll

    def _handle(self, action: str, doc_id: str) -> None:
        try:
            if action == _REMOVE:
                self.remove_document(doc_id)
            else:
                self.index_document(doc_id)
                self._indexed_count += 1
        except (EmbeddingError, ValueError) as e:
            # Already recorded in the status store
            self._failed_count += 1
            logger.debug("Indexing %s failed: %s", doc_id, e)
        except Exception:
            self._failed_count += 1
            logger.exception("Indexer failed on %s", doc_id)
