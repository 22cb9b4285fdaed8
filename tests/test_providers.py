"""Tests for the provider registry, connection testing and error classification."""

from unittest.mock import MagicMock, patch

import pytest

from docsync.config import EmbeddingConfig
from docsync.errors import (
    ConfigError,
    EmbeddingRequestError,
    EmbeddingServiceError,
    UnknownProviderError,
    log_exception,
)
from docsync.providers import (
    EmbeddingProvider,
    OllamaEmbedding,
    ProviderRegistry,
    close_provider,
    create_embedding_provider,
    default_registry,
    test_connection as probe_connection,
)


class TestRegistry:
    def test_unknown_provider(self):
        registry = ProviderRegistry()
        with pytest.raises(UnknownProviderError, match="unknown provider: cohere"):
            registry.create(EmbeddingConfig(provider="cohere"))

    def test_unknown_provider_is_value_error(self):
        with pytest.raises(ValueError):
            ProviderRegistry().create(EmbeddingConfig(provider="cohere"))

    def test_registered_factory_is_used(self, mock_embedding_provider):
        registry = ProviderRegistry()
        registry.register("mock", lambda config: mock_embedding_provider)
        assert registry.create(EmbeddingConfig(provider="mock")) is mock_embedding_provider
        assert "mock" in registry
        assert registry.names() == ["mock"]

    def test_factory_rejection_becomes_config_error(self):
        def factory(config):
            raise ValueError("API key required")

        registry = ProviderRegistry()
        registry.register("strict", factory)
        with pytest.raises(ConfigError, match="API key required"):
            registry.create(EmbeddingConfig(provider="strict"))

    def test_registries_are_independent(self):
        a, b = ProviderRegistry(), ProviderRegistry()
        a.register("mock", lambda config: None)
        assert "mock" not in b

    def test_default_registry(self):
        registry = default_registry()
        assert sorted(registry.names()) == ["ollama", "openai"]
        provider = create_embedding_provider(
            EmbeddingConfig(provider="ollama", base_url="http://localhost:11434"), registry
        )
        assert isinstance(provider, OllamaEmbedding)
        assert isinstance(provider, EmbeddingProvider)

    def test_openai_without_key_is_config_error(self, monkeypatch):
        monkeypatch.delenv("DOCSYNC_OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ConfigError):
            create_embedding_provider(EmbeddingConfig(provider="openai", model="text-embedding-3-small"))


class TestConnection:
    def _registry(self, provider):
        registry = ProviderRegistry()
        registry.register("mock", lambda config: provider)
        return registry

    def test_success_reports_dimension(self, mock_embedding_provider):
        result = probe_connection(EmbeddingConfig(provider="mock"), self._registry(mock_embedding_provider))
        assert result.success is True
        assert result.dimension == 8
        assert result.to_dict() == {"success": True, "dimension": 8}

    def test_uses_detect_dimension(self):
        with patch("docsync.providers.embeddings.requests.post") as post:
            post.return_value.status_code = 200
            post.return_value.json.return_value = {"embedding": [0.1] * 3}
            result = probe_connection(
                EmbeddingConfig(provider="ollama", base_url="http://localhost:11434")
            )
        assert result.success is True
        assert result.dimension == 3

    def test_service_error(self, mock_embedding_provider):
        mock_embedding_provider.error = EmbeddingServiceError("mock", 401, "mock returned status 401")
        result = probe_connection(EmbeddingConfig(provider="mock"), self._registry(mock_embedding_provider))
        assert result.success is False
        assert result.unrecoverable is True
        assert "401" in result.error

    def test_request_error(self, mock_embedding_provider):
        mock_embedding_provider.error = EmbeddingRequestError("mock", "connection refused")
        result = probe_connection(EmbeddingConfig(provider="mock"), self._registry(mock_embedding_provider))
        assert result.success is False
        assert result.unrecoverable is False

    def test_provider_closed_after_probe(self, mock_embedding_provider):
        mock_embedding_provider.close = MagicMock()
        probe_connection(EmbeddingConfig(provider="mock"), self._registry(mock_embedding_provider))
        mock_embedding_provider.close.assert_called_once()

    def test_provider_closed_after_failure(self, mock_embedding_provider):
        mock_embedding_provider.close = MagicMock()
        mock_embedding_provider.error = EmbeddingRequestError("mock", "connection refused")
        probe_connection(EmbeddingConfig(provider="mock"), self._registry(mock_embedding_provider))
        mock_embedding_provider.close.assert_called_once()

    def test_close_provider_without_close(self, mock_embedding_provider):
        close_provider(mock_embedding_provider)

    def test_unknown_provider(self):
        result = probe_connection(EmbeddingConfig(provider="nope"), ProviderRegistry())
        assert result.success is False
        assert result.error == "unknown provider: nope"


class TestServiceErrorClassification:
    @pytest.mark.parametrize("status", [500, 502, 503, 401, 403, 404, -1])
    def test_unrecoverable(self, status):
        assert EmbeddingServiceError("ollama", status, "x").is_unrecoverable() is True

    @pytest.mark.parametrize("status", [429, 400, 408, 409])
    def test_recoverable(self, status):
        assert EmbeddingServiceError("ollama", status, "x").is_unrecoverable() is False

    def test_repr(self):
        err = EmbeddingServiceError("openai", 401, "bad key")
        assert repr(err) == "EmbeddingServiceError(provider='openai', status_code=401, message='bad key')"
        assert str(err) == "bad key"


def test_log_exception_writes_traceback(tmp_path, monkeypatch):
    monkeypatch.setenv("DOCSYNC_DATA_PATH", str(tmp_path))
    try:
        raise RuntimeError("kaboom")
    except RuntimeError as e:
        log_path = log_exception(e, context="docsync test")

    assert log_path == tmp_path / "docsync-errors.log"
    text = log_path.read_text()
    assert "docsync test" in text
    assert "RuntimeError: kaboom" in text
    assert (log_path.stat().st_mode & 0o777) == 0o600
