"""Filesystem blob store keyed by (client_id, filename)."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Final

from src.domain.errors import StorageError
from src.security.sanitize import sanitize_client, sanitize_filename

logger = logging.getLogger(__name__)

TEMP_PREFIX: Final = ".upload-"


class BlobStore:
    """
    Stores raw bytes under ``<root>/<client_id>/<filename>``.

    Callers pass already sanitized identifiers; the store re-checks them and
    ensures every resolved path stays inside the client's directory.
    """

    def __init__(self, root: str | os.PathLike[str]):
        self.root = Path(root).expanduser().resolve()

    def client_dir(self, client_id: str) -> Path:
        if not client_id or sanitize_client(client_id) != client_id:
            raise StorageError(f"Invalid client id {client_id!r}", code="invalid_key")
        return self.root / client_id

    def path_for(self, client_id: str, filename: str) -> Path:
        """Absolute path of a blob; refuses anything escaping the client dir."""
        directory = self.client_dir(client_id)
        if not filename or sanitize_filename(filename) != filename:
            raise StorageError(f"Invalid filename {filename!r}", code="invalid_key")
        path = directory / filename
        if path.parent != directory:
            raise StorageError("Invalid storage path detected", code="path_traversal")
        return path

    def locate(self, path: str | os.PathLike[str]) -> tuple[str, str]:
        """Split an absolute blob path back into (client_id, filename)."""
        candidate = Path(path)
        if candidate.parent.parent != self.root:
            raise StorageError("Path is outside the storage root", code="path_traversal")
        client_id, filename = candidate.parent.name, candidate.name
        # Round-trip through path_for to apply the same validation.
        self.path_for(client_id, filename)
        return client_id, filename

    def save(self, client_id: str, filename: str, data: bytes) -> Path:
        """Write ``data``, replacing any existing blob with the same name."""
        path = self.path_for(client_id, filename)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.parent.is_symlink():
                raise StorageError("Client directory must not be a symlink", code="symlink_parent")
            fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=path.parent)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.error("Write failed for %s: %s", path, exc)
            raise StorageError(f"Cannot write file: {exc.strerror or exc}") from exc
        return path

    def read(self, client_id: str, filename: str) -> bytes:
        path = self.path_for(client_id, filename)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Cannot open file: {exc.strerror or exc}") from exc

    def delete(self, client_id: str, filename: str) -> None:
        path = self.path_for(client_id, filename)
        try:
            path.unlink()
        except OSError as exc:
            raise StorageError(f"Delete failed: {exc.strerror or exc}") from exc

    def list(self, client_id: str) -> list[str]:
        """Names of the regular files stored for a client, sorted."""
        directory = self.client_dir(client_id)
        if not directory.exists():
            return []
        try:
            return sorted(
                entry.name
                for entry in directory.iterdir()
                if entry.is_file() and not entry.name.startswith(TEMP_PREFIX)
            )
        except OSError as exc:
            raise StorageError(f"Cannot read dir: {exc.strerror or exc}") from exc
