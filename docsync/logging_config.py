"""
Logging configuration for docsync.

Suppress verbose library output by default for better UX.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Third-party loggers that are chatty at INFO/DEBUG
_NOISY_LOGGERS = ("watchdog", "urllib3", "httpx", "httpcore")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    This silences:
    - watchdog observer/emitter chatter
    - HTTP client connection logs (urllib3, httpx)
    - Library warnings (deprecation, etc.)

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    else:
        warnings.filterwarnings("default")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.NOTSET)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("docsync").setLevel(logging.DEBUG)
    # watchdog at DEBUG logs every inotify read; INFO is enough
    logging.getLogger("watchdog").setLevel(logging.INFO)


def configure_ops_log(data_path):
    """Configure a persistent operations log for a data directory.

    Writes to {data_path}/docsync-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on shutdown.
    """
    log_path = Path(data_path) / "docsync-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    docsync_logger = logging.getLogger("docsync")
    docsync_logger.addHandler(handler)
    # Ensure the docsync logger lets INFO through even in quiet mode
    if docsync_logger.level == logging.NOTSET or docsync_logger.level > logging.INFO:
        docsync_logger.setLevel(logging.INFO)

    return handler
