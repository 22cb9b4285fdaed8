"""
Exception types and error logging for docsync.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class DocsyncError(Exception):
    """Base class for docsync errors."""


class ConfigError(DocsyncError, ValueError):
    """Configuration file is missing required values or is malformed."""


class WatcherStartError(DocsyncError, OSError):
    """The mandatory documents directory could not be watched."""


class WatcherStateError(DocsyncError, RuntimeError):
    """Watcher lifecycle method called in the wrong state."""


class WatcherSourceError(DocsyncError, OSError):
    """A native notification source stopped delivering events."""


class EmbeddingError(DocsyncError):
    """Base class for failed embedding calls."""


class EmbeddingRequestError(EmbeddingError):
    """Network-level failure talking to an embedding backend.

    Connection refused, DNS failure, timeout. The underlying library
    exception is available as ``__cause__``.
    """

    def __init__(self, provider: str, message: str):
        super().__init__(message)
        self.provider = provider


# Status code used when the backend answered but the body was not usable
MALFORMED_RESPONSE = -1


class EmbeddingServiceError(EmbeddingError):
    """
    The embedding backend answered with an error or an unusable body.

    Attributes:
        provider: Provider name ("ollama", "openai")
        status_code: HTTP status, or MALFORMED_RESPONSE (-1) when the body
            could not be decoded into the expected shape
        message: Human-readable description
    """

    def __init__(self, provider: str, status_code: int, message: str):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.message = message

    def is_unrecoverable(self) -> bool:
        """True when retrying without a configuration change is pointless.

        Server errors (5xx), auth/endpoint errors (401, 403, 404) and
        malformed responses are unrecoverable. Everything else (429, 400, ...)
        is left to the caller's retry policy.
        """
        return (
            self.status_code >= 500
            or self.status_code in (401, 403, 404)
            or self.status_code == MALFORMED_RESPONSE
        )

    def __repr__(self) -> str:
        return (
            f"EmbeddingServiceError(provider={self.provider!r}, "
            f"status_code={self.status_code}, message={self.message!r})"
        )


class UnknownProviderError(DocsyncError, ValueError):
    """No embedding provider is registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(f"unknown provider: {name}")
        self.name = name


def _error_log_path() -> Path:
    """Resolve error log path, respecting DOCSYNC_DATA_PATH."""
    data = os.environ.get("DOCSYNC_DATA_PATH")
    if data:
        return Path(data) / "docsync-errors.log"
    return Path.home() / ".docsync" / "docsync-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; the caller still reports the error
    return log_path
