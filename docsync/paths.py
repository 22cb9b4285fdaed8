"""
Filesystem layout of a docsync data directory.

    <data>/
        index.json              document index (reserved name)
        documents/<id>.json     one file per document
        docsync.toml            configuration
        index_status.db         per-document embedding status
"""

from pathlib import Path

INDEX_FILENAME = "index.json"
DOCUMENTS_DIRNAME = "documents"
DOCUMENT_EXTENSION = ".json"
INDEX_STATUS_DB = "index_status.db"


class DataPaths:
    """Builds paths inside a data directory."""

    def __init__(
        self,
        data_path: Path | str,
        *,
        index_filename: str = INDEX_FILENAME,
        documents_dirname: str = DOCUMENTS_DIRNAME,
        extension: str = DOCUMENT_EXTENSION,
    ):
        self.data_path = Path(data_path).expanduser().absolute()
        self.index_filename = index_filename
        self.documents_dirname = documents_dirname
        self.extension = extension

    def index(self) -> Path:
        return self.data_path / self.index_filename

    def documents_dir(self) -> Path:
        return self.data_path / self.documents_dirname

    def document(self, doc_id: str) -> Path:
        return self.documents_dir() / f"{doc_id}{self.extension}"

    def config(self) -> Path:
        from .config import CONFIG_FILENAME
        return self.data_path / CONFIG_FILENAME

    def index_db(self) -> Path:
        return self.data_path / INDEX_STATUS_DB

    def ensure(self) -> None:
        """Create the data and documents directories if missing."""
        self.documents_dir().mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"DataPaths({str(self.data_path)!r})"
