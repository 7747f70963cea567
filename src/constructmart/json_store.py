"""Locked JSON document storage shared by the constructmart stores."""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .errors import InvalidSchemaVersionError

SCHEMA_VERSION = 1

# Default data directory, overridable via CONSTRUCTMART_DATA_DIR
_default_data_dir = Path(__file__).parent.parent.parent / "data"


def get_data_dir() -> Path:
    """Resolve the server data directory (read at call time so tests can override it)."""
    return Path(os.environ.get("CONSTRUCTMART_DATA_DIR", _default_data_dir))


class JsonDocumentStore:
    """
    One JSON document on disk, written atomically and guarded by a lock file.

    Subclasses name the document and its empty shape. Every read-modify-write
    must run inside ``_lock()`` so concurrent requests serialize.
    """

    filename = "data.json"

    def __init__(self, data_dir: Path | None = None):
        """
        Initialize the store.

        Args:
            data_dir: Override data directory (for testing).
        """
        self.data_dir = Path(data_dir) if data_dir else get_data_dir()
        self.path = self.data_dir / self.filename
        self._lock_path = self.data_dir / f".{Path(self.filename).stem}.lock"

    def _empty(self) -> dict[str, Any]:
        return {"schema_version": SCHEMA_VERSION}

    def _ensure_dir(self) -> None:
        """Ensure data directory exists."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _lock(self) -> Iterator[None]:
        """Acquire exclusive lock on the document for read-modify-write operations."""
        self._ensure_dir()
        with open(self._lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def transaction(self) -> Iterator[dict[str, Any]]:
        """
        Load the document under the lock and save it when the block exits cleanly.

        If the block raises, nothing is written.
        """
        with self._lock():
            data = self._load_data()
            yield data
            self._save_data(data)

    def exists(self) -> bool:
        return self.path.exists()

    def _load_data(self) -> dict[str, Any]:
        """
        Load the document from disk.

        Raises:
            InvalidSchemaVersionError: If schema version is unsupported.
        """
        if not self.path.exists():
            return self._empty()

        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        version = data.get("schema_version", 0)
        if version != SCHEMA_VERSION:
            raise InvalidSchemaVersionError(str(self.path), version, SCHEMA_VERSION)
        return data

    def _save_data(self, data: dict[str, Any]) -> None:
        """
        Save the document to disk atomically.

        Uses write-to-temp-then-rename for atomicity.
        """
        self._ensure_dir()

        prefix = f".{Path(self.filename).stem}_"
        fd, temp_path = tempfile.mkstemp(dir=self.data_dir, prefix=prefix, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")  # trailing newline
            os.replace(temp_path, self.path)
        except Exception:
            # Clean up temp file on failure (ignore errors if already removed)
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
