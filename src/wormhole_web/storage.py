"""Process-lifetime storage tree: one subdirectory per transfer id."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import BinaryIO

from wormhole_web.errors import (
    StorageAccessError,
    StorageError,
    TransferNotFoundError,
    TransferValidationError,
)
from wormhole_web.validation import is_valid_transfer_id, sanitize_filename

logger = logging.getLogger(__name__)


class TransferStorage:
    """Owns the on-disk layout ``<root>/<transfer id>/<file>``."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def ensure_root(self) -> None:
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to create storage root: {exc}") from exc

    def path_for(self, transfer_id: str) -> Path:
        """Directory for *transfer_id*; the id is validated before use."""
        if not is_valid_transfer_id(transfer_id):
            raise TransferValidationError(f"Invalid transfer ID: {transfer_id!r}")
        return self._root / transfer_id

    def create(self, transfer_id: str) -> Path:
        """Create (or reuse) the directory for *transfer_id* and return it."""
        path = self.path_for(transfer_id)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to create transfer directory: {exc}") from exc
        return path

    def store(self, transfer_id: str, filename: str, stream: BinaryIO) -> Path:
        """Copy *stream* into the transfer's directory under *filename*."""
        target = self.create(transfer_id) / sanitize_filename(filename)
        try:
            with open(target, "wb") as dst:
                shutil.copyfileobj(stream, dst)
        except OSError as exc:
            target.unlink(missing_ok=True)
            raise StorageError(f"Failed to save file: {exc}") from exc
        return target

    def remove(self, transfer_id: str) -> bool:
        """Delete the directory for *transfer_id*.

        Best effort: failures are logged and reported as ``False``.
        """
        path = self.path_for(transfer_id)
        if not path.exists():
            return True
        try:
            shutil.rmtree(path)
        except OSError as exc:
            logger.warning("Failed to remove storage for %s: %s", transfer_id, exc)
            return False
        return True

    def resolve_download(self, transfer_id: str, filename: str) -> Path:
        """Resolve a stored file for download, refusing anything outside the root."""
        directory = self.path_for(transfer_id)
        candidate = (directory / sanitize_filename(filename)).resolve()
        if not candidate.is_relative_to(self._root) or candidate == self._root:
            raise StorageAccessError("Access denied")
        if not candidate.is_file():
            raise TransferNotFoundError("File not found")
        return candidate

    def purge(self) -> None:
        """Remove the whole storage tree."""
        if not self._root.exists():
            return
        try:
            shutil.rmtree(self._root)
        except OSError as exc:
            logger.warning("Failed to remove storage root %s: %s", self._root, exc)
