"""
Configuration management for docsync data directories.

The configuration is stored as a TOML file in the data directory.
It specifies which embedding provider to use and how the watcher behaves.
"""

import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import tomli_w

from .errors import ConfigError
from .paths import DOCUMENT_EXTENSION, DOCUMENTS_DIRNAME, INDEX_FILENAME


CONFIG_FILENAME = "docsync.toml"
CONFIG_VERSION = 1

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OPENAI_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "nomic-embed-text"


@dataclass
class EmbeddingConfig:
    """
    Embedding backend configuration.

    Attributes:
        provider: "ollama" or "openai"
        base_url: API root; empty means the provider default
        model: Embedding model name
        api_key: Bearer token for hosted APIs
        max_chunk_size: Chunking threshold in characters
        overlap: Characters repeated at the start of each following chunk
    """
    provider: str = "ollama"
    base_url: str = ""
    model: str = DEFAULT_MODEL
    api_key: str = ""
    max_chunk_size: int = 800
    overlap: int = 100

    def resolved_api_key(self) -> str:
        """API key from config, falling back to the environment."""
        return (
            self.api_key
            or os.environ.get("DOCSYNC_OPENAI_API_KEY", "")
            or os.environ.get("OPENAI_API_KEY", "")
        )

    def redacted(self) -> dict[str, Any]:
        """Dict form with the API key masked, for display."""
        d = asdict(self)
        if d["api_key"]:
            d["api_key"] = d["api_key"][:4] + "..." if len(d["api_key"]) > 8 else "***"
        return d


@dataclass
class WatcherConfig:
    """Change watcher tuning."""
    debounce_ms: int = 300
    ignore_window_ms: int = 2000
    extension: str = DOCUMENT_EXTENSION
    index_filename: str = INDEX_FILENAME
    documents_dir: str = DOCUMENTS_DIRNAME

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    @property
    def ignore_window_seconds(self) -> float:
        return self.ignore_window_ms / 1000.0


@dataclass
class DocsyncConfig:
    """Complete data directory configuration."""
    path: Path
    version: int = CONFIG_VERSION
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def create_default_config(data_path: Path) -> DocsyncConfig:
    """Create a new config with defaults.

    Embeddings stay local by default (Ollama); OLLAMA_HOST overrides the URL.
    """
    data_path = Path(data_path)
    embedding = EmbeddingConfig(
        provider="ollama",
        base_url=os.environ.get("OLLAMA_HOST", "") or DEFAULT_OLLAMA_URL,
        model=DEFAULT_MODEL,
    )
    return DocsyncConfig(path=data_path, embedding=embedding)


def _build_section(cls, section: dict, name: str):
    """Instantiate a config dataclass from a TOML table, rejecting unknown keys."""
    known = set(cls.__dataclass_fields__)
    unknown = set(section) - known
    if unknown:
        raise ConfigError(
            f"Unknown key(s) in [{name}]: {', '.join(sorted(unknown))}"
        )
    try:
        obj = cls(**section)
    except TypeError as e:
        raise ConfigError(f"Invalid [{name}] section: {e}") from e
    for key, f in cls.__dataclass_fields__.items():
        value = getattr(obj, key)
        if f.type is int and (not isinstance(value, int) or isinstance(value, bool)):
            raise ConfigError(f"[{name}] {key} must be an integer, got {value!r}")
        if f.type is str and not isinstance(value, str):
            raise ConfigError(f"[{name}] {key} must be a string, got {value!r}")
    return obj


def load_config(data_path: Path) -> DocsyncConfig:
    """
    Load configuration from a data directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ConfigError: If config is invalid
    """
    data_path = Path(data_path)
    config_path = data_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e

    meta = data.get("docsync", {})
    if not isinstance(meta, dict):
        raise ConfigError(f"[docsync] must be a table, got {meta!r}")
    version = meta.get("version", 1)
    if not isinstance(version, int) or isinstance(version, bool):
        raise ConfigError(f"[docsync] version must be an integer, got {version!r}")
    if version > CONFIG_VERSION:
        raise ConfigError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    embedding = _build_section(EmbeddingConfig, data.get("embedding", {}), "embedding")
    watcher = _build_section(WatcherConfig, data.get("watcher", {}), "watcher")

    if embedding.max_chunk_size <= 0:
        raise ConfigError("[embedding] max_chunk_size must be positive")
    if not 0 <= embedding.overlap < embedding.max_chunk_size:
        raise ConfigError("[embedding] overlap must be >= 0 and smaller than max_chunk_size")
    if watcher.ignore_window_ms <= watcher.debounce_ms:
        raise ConfigError(
            "[watcher] ignore_window_ms must be longer than debounce_ms "
            "so that one save's notifications are all suppressed"
        )

    return DocsyncConfig(
        path=data_path,
        version=version,
        embedding=embedding,
        watcher=watcher,
    )


def config_to_dict(config: DocsyncConfig) -> dict:
    """TOML-ready structure for a config."""
    return {
        "docsync": {"version": config.version},
        "embedding": asdict(config.embedding),
        "watcher": asdict(config.watcher),
    }


def save_config(config: DocsyncConfig) -> None:
    """
    Save configuration to the data directory.

    Creates the directory if it doesn't exist. The file is created with
    0600 permissions since it may hold an API key.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    fd = os.open(config.config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        tomli_w.dump(config_to_dict(config), f)


def load_or_create_config(data_path: Path) -> DocsyncConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    data_path = Path(data_path)
    config_path = data_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(data_path)
    else:
        config = create_default_config(data_path)
        save_config(config)
        return config
