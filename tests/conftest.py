"""
Shared pytest fixtures for docsync tests.

Provides a mock embedding provider (no network), a data directory layout
and an event recorder for watcher tests.
"""

import hashlib
import json
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from docsync.events import DOCUMENT_CHANGED, INDEX_CHANGED, EventBus
from docsync.paths import DataPaths


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash. Set ``error`` to an
    exception instance to make every call raise it.
    """

    dimension = 8

    def __init__(self):
        self.embed_calls = 0
        self.batch_calls = 0
        self.error: Exception | None = None

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        if self.error is not None:
            raise self.error
        self.embed_calls += 1
        h = hashlib.md5(text.encode()).hexdigest()
        return [int(h[i:i+2], 16) / 255.0 for i in range(0, 2 * self.dimension, 2)]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if self.error is not None:
            raise self.error
        self.batch_calls += 1
        return [self.embed(t) for t in texts]


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def data_paths(tmp_path) -> DataPaths:
    """A data directory with an empty documents/ subdirectory."""
    paths = DataPaths(tmp_path / "data")
    paths.ensure()
    return paths


def write_document(paths: DataPaths, doc_id: str, *paragraphs: str) -> Path:
    """Write a document file made of simple paragraph blocks."""
    blocks = [
        {
            "id": f"b{i}",
            "type": "paragraph",
            "content": [{"type": "text", "text": text}],
            "children": [],
        }
        for i, text in enumerate(paragraphs)
    ]
    path = paths.document(doc_id)
    path.write_text(json.dumps(blocks), encoding="utf-8")
    return path


class EventRecorder:
    """Collects (channel, event) pairs delivered on an EventBus."""

    def __init__(self, bus: EventBus):
        self.events: list[tuple[str, object]] = []
        self._cond = threading.Condition()
        for channel in (INDEX_CHANGED, DOCUMENT_CHANGED):
            bus.subscribe(channel, lambda e, ch=channel: self._record(ch, e))

    def _record(self, channel, event):
        with self._cond:
            self.events.append((channel, event))
            self._cond.notify_all()

    def wait_for(self, count: int, timeout: float = 3.0) -> bool:
        """Block until at least ``count`` events arrived or timeout."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while len(self.events) < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def channels(self) -> list[str]:
        return [ch for ch, _ in self.events]

    def payloads(self) -> list:
        return [e for _, e in self.events]


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def fake_observer():
    """A watchdog observer stand-in; tests feed events via ``notify``."""
    observer = MagicMock(name="Observer")
    return observer


@pytest.fixture
def write_doc():
    """The ``write_document`` helper, for tests outside this module."""
    return write_document
