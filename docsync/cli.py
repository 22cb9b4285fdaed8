"""
CLI interface for docsync.

Usage:
    docsync watch                 # watch the data directory, index changes
    docsync test-connection       # probe the configured embedding backend
    docsync config                # show effective configuration
    docsync status                # per-document index status counts
    docsync retry                 # retry permanently failed documents
"""

import json
import os
import time
from pathlib import Path
from typing import Optional

import tomli_w
import typer
from typing_extensions import Annotated

from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode

# Set DOCSYNC_VERBOSE=1 to enable debug mode via environment
if os.environ.get("DOCSYNC_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)

DEFAULT_DATA_PATH = Path.home() / ".docsync"


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"docsync {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_data_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _data_callback(value: Optional[Path]):
    global _data_override
    if value is not None:
        _data_override = value


def _get_data_path() -> Path:
    path = _data_override if _data_override is not None else DEFAULT_DATA_PATH
    return Path(path).expanduser().resolve()


app = typer.Typer(
    name="docsync",
    help="Watch a document directory and keep its embeddings in sync.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    data: Annotated[Optional[Path], typer.Option(
        "--data", "-d",
        envvar="DOCSYNC_DATA_PATH",
        help="Path to the data directory",
        callback=_data_callback,
        is_eager=True,
    )] = None,
):
    """Watch a document directory and keep its embeddings in sync."""


def _load_config():
    """Load (or create) the data directory config, exiting cleanly on errors."""
    from .config import load_or_create_config
    from .errors import ConfigError

    data_path = _get_data_path()
    try:
        return load_or_create_config(data_path)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _data_paths(cfg):
    from .paths import DataPaths

    return DataPaths(
        cfg.path,
        index_filename=cfg.watcher.index_filename,
        documents_dirname=cfg.watcher.documents_dir,
        extension=cfg.watcher.extension,
    )


def _format_event(event) -> str:
    if _get_json_output():
        return json.dumps({"channel": event.channel, **event.to_dict()})
    if event.is_index:
        return f"{event.type.value:<7} index"
    return f"{event.type.value:<7} {event.doc_id}"


@app.command()
def watch(
    no_index: Annotated[bool, typer.Option(
        "--no-index",
        help="Only report changes, do not compute embeddings",
    )] = False,
    reindex: Annotated[bool, typer.Option(
        "--reindex",
        help="Queue every existing document for indexing at startup",
    )] = False,
):
    """
    Watch the data directory until interrupted.

    Prints one line per coalesced change. Unless --no-index is given,
    changed documents are embedded with the configured provider.
    """
    from .errors import WatcherStartError
    from .events import DOCUMENT_CHANGED, INDEX_CHANGED, EventBus
    from .watcher import ChangeWatcher, WatcherState
    from .write_tracker import WriteTracker

    cfg = _load_config()
    paths = _data_paths(cfg)
    paths.ensure()
    configure_ops_log(paths.data_path)

    bus = EventBus()
    for channel in (INDEX_CHANGED, DOCUMENT_CHANGED):
        bus.subscribe(channel, lambda event: typer.echo(_format_event(event)))

    watcher = ChangeWatcher(
        paths,
        bus=bus,
        write_tracker=WriteTracker(cfg.watcher.ignore_window_seconds),
        debounce=cfg.watcher.debounce_seconds,
    )

    indexer = None
    store = None
    provider = None
    if not no_index:
        from .indexer import DocumentIndexer, IndexStatusStore, MemoryVectorSink
        from .providers import ProviderRegistry, create_embedding_provider, default_registry

        from .errors import ConfigError

        registry: ProviderRegistry = default_registry()
        try:
            provider = create_embedding_provider(cfg.embedding, registry)
        except ConfigError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        store = IndexStatusStore(paths.index_db())
        indexer = DocumentIndexer(
            paths, provider, MemoryVectorSink(), store,
            max_chunk_size=cfg.embedding.max_chunk_size,
            overlap=cfg.embedding.overlap,
        )
        watcher.on_document_changed = indexer.on_document_changed
        if reindex:
            count = indexer.enqueue_all()
            typer.echo(f"Queued {count} documents for indexing", err=True)
        indexer.start()

    def shutdown():
        watcher.stop()
        if indexer is not None:
            from .providers import close_provider

            indexer.stop()
            store.close()
            close_provider(provider)

    try:
        watcher.start()
    except WatcherStartError as e:
        shutdown()
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Watching {paths.data_path} (Ctrl+C to stop)", err=True)
    try:
        while watcher.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        failed = watcher.state is WatcherState.FAILED
        shutdown()

    if failed:
        typer.echo("Error: file watching stopped unexpectedly, see the log for details", err=True)
        raise typer.Exit(1)


@app.command("test-connection")
def test_connection_cmd():
    """Send one probe text to the configured embedding backend."""
    from .providers import default_registry, test_connection

    cfg = _load_config()
    result = test_connection(cfg.embedding, default_registry())

    if _get_json_output():
        typer.echo(json.dumps(result.to_dict(), indent=2))
    elif result.success:
        typer.echo(
            f"OK: {cfg.embedding.provider} {cfg.embedding.model} "
            f"returned {result.dimension}-dimensional vectors"
        )
    else:
        typer.echo(f"Connection failed: {result.error}", err=True)
        if cfg.embedding.provider == "ollama":
            from .providers.ollama_utils import ollama_base_url, ollama_has_model

            model = cfg.embedding.model
            if ollama_has_model(ollama_base_url(cfg.embedding.base_url or None), model) is False:
                typer.echo(f"Model not installed, run: ollama pull {model}", err=True)
        if result.unrecoverable:
            typer.echo("Check the provider settings in docsync.toml", err=True)

    if not result.success:
        raise typer.Exit(1)


@app.command()
def config():
    """Show the effective configuration (API key masked)."""
    from .config import config_to_dict

    cfg = _load_config()
    data = config_to_dict(cfg)
    data["embedding"] = cfg.embedding.redacted()

    if _get_json_output():
        typer.echo(json.dumps({"file": str(cfg.config_path), **data}, indent=2))
    else:
        typer.echo(f"# {cfg.config_path}")
        typer.echo(tomli_w.dumps(data).rstrip())


@app.command()
def status(
    failed: Annotated[bool, typer.Option(
        "--failed", "-f",
        help="List failed documents with their last error",
    )] = False,
):
    """Show per-document index status."""
    from .indexer import IndexStatusStore

    paths = _data_paths(_load_config())
    with IndexStatusStore(paths.index_db()) as store:
        stats = store.stats()
        failures = store.list_failed() if failed else []

    if _get_json_output():
        out = dict(stats)
        if failed:
            out["failures"] = [f.to_dict() for f in failures]
        typer.echo(json.dumps(out, indent=2))
        return

    typer.echo(f"indexed:              {stats['indexed']}")
    typer.echo(f"failed (will retry):  {stats['failed_recoverable']}")
    typer.echo(f"failed (permanent):   {stats['failed_unrecoverable']}")
    for f in failures:
        retry = f" retry after {f.retry_after}" if f.retry_after else ""
        typer.echo(f"  {f.doc_id}  [{f.status}, {f.attempts} attempts]{retry}: {f.last_error}")


@app.command()
def retry():
    """Reset permanently failed documents so the next watch retries them."""
    from .indexer import IndexStatusStore

    paths = _data_paths(_load_config())
    with IndexStatusStore(paths.index_db()) as store:
        count = store.retry_failed()

    if _get_json_output():
        typer.echo(json.dumps({"reset": count}))
    else:
        typer.echo(f"Reset {count} failed documents")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="docsync CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
