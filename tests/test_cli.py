"""Tests for the docsync command line."""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from docsync.cli import app
from docsync.errors import WatcherStartError
from docsync.indexer import IndexStatusStore
from docsync.paths import DataPaths
from docsync.providers import OllamaEmbedding
from docsync.watcher import WatcherState

runner = CliRunner()


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=""):
        self.status_code = status_code
        self._json = json_data
        self.text = text

    def json(self):
        return self._json


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.delenv("OLLAMA_HOST", raising=False)
    return tmp_path / "data"


def _invoke(data_dir, *args):
    return runner.invoke(app, ["--data", str(data_dir), *args])


class TestConfigCommand:
    def test_creates_and_shows_default_config(self, data_dir):
        result = _invoke(data_dir, "config")
        assert result.exit_code == 0, result.output
        assert "[embedding]" in result.output
        assert 'provider = "ollama"' in result.output
        assert (data_dir / "docsync.toml").exists()

    def test_json_output_masks_key(self, data_dir):
        data_dir.mkdir(parents=True)
        (data_dir / "docsync.toml").write_text(
            '[embedding]\nprovider = "openai"\napi_key = "sk-abcdefghijkl"\n'
        )
        result = runner.invoke(app, ["--json", "--data", str(data_dir), "config"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["embedding"]["provider"] == "openai"
        assert data["embedding"]["api_key"] == "sk-a..."
        assert data["file"].endswith("docsync.toml")

    def test_invalid_config_exits_cleanly(self, data_dir):
        data_dir.mkdir(parents=True)
        (data_dir / "docsync.toml").write_text("[embedding]\nbogus = 1\n")
        result = _invoke(data_dir, "config")
        assert result.exit_code == 1
        assert "bogus" in result.output


class TestConnectionCommand:
    def test_success(self, data_dir):
        with patch("docsync.providers.embeddings.requests.post") as post:
            post.return_value = FakeResponse(json_data={"embedding": [0.1] * 768})
            result = _invoke(data_dir, "test-connection")
        assert result.exit_code == 0, result.output
        assert "768-dimensional" in result.output
        assert post.call_args.args[0] == "http://localhost:11434/api/embeddings"

    def test_failure_exits_non_zero(self, data_dir):
        with patch("docsync.providers.embeddings.requests.post") as post:
            post.return_value = FakeResponse(status_code=404, text="model not found")
            result = runner.invoke(app, ["--json", "--data", str(data_dir), "test-connection"])
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["success"] is False
        assert data["unrecoverable"] is True

    def test_missing_ollama_model_hint(self, data_dir):
        with patch("docsync.providers.embeddings.requests.post") as post, \
                patch("docsync.providers.ollama_utils.requests.get") as get:
            post.return_value = FakeResponse(status_code=404, text="model not found")
            get.return_value.json.return_value = {"models": [{"name": "llama3:latest"}]}
            result = _invoke(data_dir, "test-connection")
        assert result.exit_code == 1
        assert "ollama pull nomic-embed-text" in result.output


class TestWatchCommand:
    @pytest.fixture
    def fake_watcher(self):
        with patch("docsync.watcher.ChangeWatcher") as MockWatcher:
            instance = MockWatcher.return_value
            instance.is_running = False
            instance.state = WatcherState.STOPPED
            yield instance

    def test_closes_provider_on_exit(self, data_dir, fake_watcher):
        with patch("docsync.providers.close_provider") as close_provider:
            result = _invoke(data_dir, "watch")
        assert result.exit_code == 0, result.output
        fake_watcher.start.assert_called_once()
        fake_watcher.stop.assert_called_once()
        close_provider.assert_called_once()
        assert isinstance(close_provider.call_args.args[0], OllamaEmbedding)

    def test_failed_watcher_exits_non_zero(self, data_dir, fake_watcher):
        fake_watcher.state = WatcherState.FAILED
        result = _invoke(data_dir, "watch", "--no-index")
        assert result.exit_code == 1
        assert "stopped unexpectedly" in result.output
        fake_watcher.stop.assert_called_once()

    def test_start_failure_still_closes_provider(self, data_dir, fake_watcher):
        fake_watcher.start.side_effect = WatcherStartError("Cannot watch documents directory")
        with patch("docsync.providers.close_provider") as close_provider:
            result = _invoke(data_dir, "watch")
        assert result.exit_code == 1
        assert "Cannot watch documents directory" in result.output
        close_provider.assert_called_once()


class TestStatusCommands:
    def _seed(self, data_dir):
        paths = DataPaths(data_dir)
        with IndexStatusStore(paths.index_db()) as store:
            store.mark_indexed("ok")
            store.mark_failed("slow", "timeout", recoverable=True)
            store.mark_failed("broken", "unauthorized", recoverable=False)

    def test_status(self, data_dir):
        self._seed(data_dir)
        result = _invoke(data_dir, "status", "--failed")
        assert result.exit_code == 0, result.output
        assert "indexed:              1" in result.output
        assert "broken" in result.output
        assert "unauthorized" in result.output

    def test_status_json(self, data_dir):
        self._seed(data_dir)
        result = runner.invoke(app, ["--json", "--data", str(data_dir), "status"])
        data = json.loads(result.output)
        assert data["failed_unrecoverable"] == 1
        assert "failures" not in data

    def test_retry(self, data_dir):
        self._seed(data_dir)
        result = _invoke(data_dir, "retry")
        assert result.exit_code == 0, result.output
        assert "Reset 1 failed documents" in result.output
        with IndexStatusStore(DataPaths(data_dir).index_db()) as store:
            assert store.stats()["failed_unrecoverable"] == 0


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.output.startswith("docsync ")
