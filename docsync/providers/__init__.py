"""Embedding providers and the registry that creates them."""

from .base import (
    ConnectionResult,
    EmbeddingProvider,
    ProviderRegistry,
    close_provider,
    create_embedding_provider,
    default_registry,
    test_connection,
)
from .embeddings import (
    MODEL_DIMENSIONS,
    OllamaEmbedding,
    OpenAIEmbedding,
    lookup_dimension,
    register_builtin_providers,
)

__all__ = [
    "ConnectionResult",
    "EmbeddingProvider",
    "MODEL_DIMENSIONS",
    "OllamaEmbedding",
    "OpenAIEmbedding",
    "ProviderRegistry",
    "close_provider",
    "create_embedding_provider",
    "default_registry",
    "lookup_dimension",
    "register_builtin_providers",
    "test_connection",
]
