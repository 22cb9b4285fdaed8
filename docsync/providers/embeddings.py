"""
Embedding providers backed by HTTP services.

- ``OllamaEmbedding``: local Ollama server, one request per text
- ``OpenAIEmbedding``: OpenAI-compatible hosted API, native batching

Both classify failures the same way: a non-200 status becomes an
``EmbeddingServiceError`` with that status, a body that does not have the
expected shape (an HTML page served with 200, a missing field) becomes an
``EmbeddingServiceError`` with status -1, and transport failures become
``EmbeddingRequestError``. Nothing is retried here.
"""

import logging
import os
from urllib.parse import urlparse

import httpx
import requests

from ..errors import (
    MALFORMED_RESPONSE,
    EmbeddingRequestError,
    EmbeddingServiceError,
)
from .base import PROBE_TEXT, ProviderRegistry
from .ollama_utils import ollama_base_url

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0  # seconds, per request

DEFAULT_OPENAI_URL = "https://api.openai.com/v1"
DEFAULT_OLLAMA_MODEL = "nomic-embed-text"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"

# Known output sizes. Lookups use the bare model name (Ollama tags such as
# ":latest" or ":v1.5" are ignored).
MODEL_DIMENSIONS: dict[str, int] = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "bge-m3": 1024,
    "snowflake-arctic-embed": 1024,
    "all-minilm": 384,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

# Used for models missing from MODEL_DIMENSIONS
OLLAMA_DEFAULT_DIMENSION = 768
OPENAI_DEFAULT_DIMENSION = 1536

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def lookup_dimension(model: str, default: int) -> int:
    """Dimension for a known model name, else ``default``."""
    bare = model.split(":")[0].strip().lower()
    return MODEL_DIMENSIONS.get(bare, default)


def _error_detail(response) -> str:
    text = response.text[:200] if response.text else ""
    return f": {text}" if text else ""


def _parse_vector(value, provider: str) -> list[float]:
    """Validate one embedding from a response body."""
    if (
        not isinstance(value, list)
        or not value
        or not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in value)
    ):
        raise EmbeddingServiceError(
            provider,
            MALFORMED_RESPONSE,
            f"failed to decode response: expected a non-empty list of numbers, "
            f"got {type(value).__name__}",
        )
    return [float(x) for x in value]


# -----------------------------------------------------------------------------
# Ollama
# -----------------------------------------------------------------------------

class OllamaEmbedding:
    """
    Embedding provider using Ollama's local API.

    POST {base_url}/api/embeddings with {"model", "prompt"} returns
    {"embedding": [...]}. Ollama has no batch endpoint for this call, so
    ``embed_batch`` is a sequential loop that stops at the first failure.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    provider_name = "ollama"

    def __init__(
        self,
        model: str = DEFAULT_OLLAMA_MODEL,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.model = model
        self.base_url = ollama_base_url(base_url)
        self.timeout = timeout
        self._detected_dim: int | None = None

    @classmethod
    def from_config(cls, config) -> "OllamaEmbedding":
        return cls(
            model=config.model or DEFAULT_OLLAMA_MODEL,
            base_url=config.base_url or None,
        )

    @property
    def dimension(self) -> int:
        if self._detected_dim is not None:
            return self._detected_dim
        return lookup_dimension(self.model, OLLAMA_DEFAULT_DIMENSION)

    def embed(self, text: str) -> list[float]:
        """Generate an embedding using Ollama."""
        try:
            response = requests.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise EmbeddingRequestError(
                self.provider_name, f"ollama request failed: {e}"
            ) from e

        if response.status_code != 200:
            raise EmbeddingServiceError(
                self.provider_name,
                response.status_code,
                f"ollama returned status {response.status_code}{_error_detail(response)}",
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EmbeddingServiceError(
                self.provider_name, MALFORMED_RESPONSE, f"failed to decode response: {e}"
            ) from e
        if not isinstance(data, dict):
            raise EmbeddingServiceError(
                self.provider_name, MALFORMED_RESPONSE,
                "failed to decode response: expected a JSON object",
            )
        return _parse_vector(data.get("embedding"), self.provider_name)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed each text in turn; the first failure aborts the batch."""
        logger.debug("Embedding %d texts with ollama model %s", len(texts), self.model)
        results = []
        for text in texts:
            results.append(self.embed(text))
        return results

    def detect_dimension(self) -> int:
        """Measure the dimension with a real request and remember it."""
        self._detected_dim = len(self.embed(PROBE_TEXT))
        return self._detected_dim

    def __repr__(self) -> str:
        return f"OllamaEmbedding(model={self.model!r}, base_url={self.base_url!r})"


# -----------------------------------------------------------------------------
# OpenAI-compatible
# -----------------------------------------------------------------------------

class OpenAIEmbedding:
    """
    Embedding provider for OpenAI-compatible APIs.

    POST {base_url}/embeddings with {"model", "input": [...]} and a bearer
    token returns {"data": [{"embedding": [...]}, ...]} aligned with the
    input list.

    Requires: api_key, DOCSYNC_OPENAI_API_KEY or OPENAI_API_KEY, unless the
    server is on localhost (local OpenAI-compatible servers often need none).
    """

    provider_name = "openai"

    def __init__(
        self,
        model: str = DEFAULT_OPENAI_MODEL,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.model = model
        self.base_url = (base_url or DEFAULT_OPENAI_URL).rstrip("/")
        self._detected_dim: int | None = None

        host = urlparse(self.base_url).hostname or ""
        is_local = host in _LOCAL_HOSTS

        key = api_key or os.environ.get("DOCSYNC_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY") or ""
        if not key and not is_local:
            raise ValueError(
                "OpenAI API key required. Set api_key in docsync.toml, "
                "DOCSYNC_OPENAI_API_KEY or OPENAI_API_KEY"
            )

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not self.base_url.startswith("https://") and not is_local:
            raise ValueError(
                f"Embedding API URL must use HTTPS (got {self.base_url}). "
                "Use HTTPS to protect API credentials, or use localhost for local servers."
            )

        self._client = httpx.Client(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @classmethod
    def from_config(cls, config) -> "OpenAIEmbedding":
        return cls(
            model=config.model or DEFAULT_OPENAI_MODEL,
            api_key=config.resolved_api_key() or None,
            base_url=config.base_url or None,
        )

    @property
    def dimension(self) -> int:
        if self._detected_dim is not None:
            return self._detected_dim
        return lookup_dimension(self.model, OPENAI_DEFAULT_DIMENSION)

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """POST /embeddings for all texts in one request."""
        if not texts:
            return []
        logger.debug("Embedding %d texts with %s at %s", len(texts), self.model, self.base_url)

        try:
            response = self._client.post(
                "/embeddings",
                json={"model": self.model, "input": list(texts)},
            )
        except httpx.HTTPError as e:
            raise EmbeddingRequestError(
                self.provider_name, f"openai request failed: {e}"
            ) from e

        if response.status_code != 200:
            raise EmbeddingServiceError(
                self.provider_name,
                response.status_code,
                f"openai returned status {response.status_code}{_error_detail(response)}",
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EmbeddingServiceError(
                self.provider_name, MALFORMED_RESPONSE, f"failed to decode response: {e}"
            ) from e

        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            raise EmbeddingServiceError(
                self.provider_name, MALFORMED_RESPONSE,
                "failed to decode response: missing 'data' list",
            )
        if len(items) != len(texts):
            raise EmbeddingServiceError(
                self.provider_name, MALFORMED_RESPONSE,
                f"failed to decode response: {len(items)} embeddings for {len(texts)} inputs",
            )

        # Items carry their input position; when given it must cover 0..n-1
        if any("index" in i for i in items):
            indices = [i.get("index") for i in items]
            if not all(type(idx) is int for idx in indices) or sorted(indices) != list(range(len(items))):
                raise EmbeddingServiceError(
                    self.provider_name, MALFORMED_RESPONSE,
                    f"failed to decode response: embedding indices {indices} do not match "
                    f"{len(texts)} inputs",
                )
            items = sorted(items, key=lambda i: i["index"])

        return [_parse_vector(i.get("embedding"), self.provider_name) for i in items]

    def detect_dimension(self) -> int:
        """Measure the dimension with a real request and remember it."""
        self._detected_dim = len(self.embed(PROBE_TEXT))
        return self._detected_dim

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __repr__(self) -> str:
        return f"OpenAIEmbedding(model={self.model!r}, base_url={self.base_url!r})"


def register_builtin_providers(registry: ProviderRegistry) -> None:
    """Register the providers shipped with docsync."""
    registry.register("ollama", OllamaEmbedding.from_config)
    registry.register("openai", OpenAIEmbedding.from_config)
