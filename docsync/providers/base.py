"""
Base provider protocol and registry.

These define the interface that concrete embedding providers implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from ..errors import ConfigError, EmbeddingError, UnknownProviderError

if TYPE_CHECKING:
    from ..config import EmbeddingConfig


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    Embeddings enable semantic similarity search. Every vector stored in one
    index must come from the same provider and model, so ``dimension`` is a
    fixed value for the provider+model pair.

    Errors:
        EmbeddingRequestError: the backend could not be reached
        EmbeddingServiceError: the backend answered with an error status or
            an unusable body; ``is_unrecoverable()`` drives retry policy
    """

    @property
    def dimension(self) -> int:
        """The dimensionality of the embedding vectors."""
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Args:
            text: The text to embed

        Returns:
            A list of floats representing the embedding vector
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts.

        All-or-nothing: on any failure the call raises and no vectors are
        returned. On success the result is aligned with ``texts``.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, one per input text
        """
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

ProviderFactory = Callable[["EmbeddingConfig"], EmbeddingProvider]


class ProviderRegistry:
    """
    Registry mapping provider names to factories.

    Instances are explicit: build one at startup (``default_registry()``)
    and pass it where providers are created. Tests construct their own.

    Example:
        registry = ProviderRegistry()
        registry.register("ollama", OllamaEmbedding.from_config)
        provider = registry.create(EmbeddingConfig(provider="ollama"))
    """

    def __init__(self):
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Register a provider factory under ``name``."""
        self._factories[name] = factory

    def create(self, config: "EmbeddingConfig") -> EmbeddingProvider:
        """
        Create the provider named by ``config.provider``.

        Raises:
            UnknownProviderError: No provider registered under that name
            ConfigError: The provider rejected the configuration
        """
        factory = self._factories.get(config.provider)
        if factory is None:
            raise UnknownProviderError(config.provider)
        try:
            return factory(config)
        except (ValueError, TypeError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(
                f"Failed to create embedding provider '{config.provider}': {e}"
            ) from e

    def names(self) -> list[str]:
        """List registered provider names."""
        return list(self._factories.keys())

    def __contains__(self, name: str) -> bool:
        return name in self._factories


def default_registry() -> ProviderRegistry:
    """A new registry with the built-in providers registered."""
    from .embeddings import register_builtin_providers

    registry = ProviderRegistry()
    register_builtin_providers(registry)
    return registry


def create_embedding_provider(
    config: "EmbeddingConfig",
    registry: ProviderRegistry | None = None,
) -> EmbeddingProvider:
    """Create an embedding provider from configuration."""
    if registry is None:
        registry = default_registry()
    return registry.create(config)


# -----------------------------------------------------------------------------
# Connection testing
# -----------------------------------------------------------------------------

PROBE_TEXT = "test"


@dataclass
class ConnectionResult:
    """Outcome of probing an embedding backend."""
    success: bool
    dimension: int = 0
    error: str = ""
    unrecoverable: bool = False

    def to_dict(self) -> dict:
        d = {"success": self.success, "dimension": self.dimension}
        if self.error:
            d["error"] = self.error
            d["unrecoverable"] = self.unrecoverable
        return d


def close_provider(provider: EmbeddingProvider) -> None:
    """Release a provider's HTTP client, for providers that hold one."""
    close = getattr(provider, "close", None)
    if close is not None:
        close()


def test_connection(
    config: "EmbeddingConfig",
    registry: ProviderRegistry | None = None,
) -> ConnectionResult:
    """
    Probe the configured backend with one real embedding.

    Never raises for backend or configuration problems; they are reported
    in the result so settings screens can show them.
    """
    from ..errors import EmbeddingServiceError

    try:
        provider = create_embedding_provider(config, registry)
    except (UnknownProviderError, ConfigError) as e:
        return ConnectionResult(success=False, error=str(e), unrecoverable=True)

    detect = getattr(provider, "detect_dimension", None)
    try:
        dim = detect() if detect is not None else len(provider.embed(PROBE_TEXT))
    except EmbeddingServiceError as e:
        return ConnectionResult(
            success=False, error=str(e), unrecoverable=e.is_unrecoverable()
        )
    except EmbeddingError as e:
        return ConnectionResult(success=False, error=str(e))
    finally:
        close_provider(provider)
    return ConnectionResult(success=True, dimension=dim)


# Not a pytest test despite the name
test_connection.__test__ = False
