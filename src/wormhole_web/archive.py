"""Packaging of multi-part uploads into a single zip archive."""

from __future__ import annotations

import asyncio
import logging
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, BinaryIO

from wormhole_web.errors import StorageError
from wormhole_web.validation import sanitize_filename, sanitize_relative_path

if TYPE_CHECKING:
    from pathlib import Path

    from wormhole_web.storage import TransferStorage

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_NAME = "files.zip"


@dataclass
class ArchivePart:
    """One uploaded file and the client-supplied path it should live under."""

    filename: str
    stream: BinaryIO
    relative_path: str | None = field(default=None)


@dataclass
class PackagedArchive:
    """Result of packaging a batch of parts."""

    path: Path
    name: str
    entries: list[str]
    bytes_written: int
    size: int


def entry_path_for(part: ArchivePart) -> str:
    """Archive entry path for *part*, every segment sanitized."""
    if part.relative_path:
        return sanitize_relative_path(part.relative_path)
    return sanitize_filename(part.filename)


def archive_name_for(relative_paths: Sequence[str | None]) -> str:
    """Pick the archive name for a batch.

    A folder upload (first relative path has a leading directory) is named
    after that directory; anything else gets :data:`DEFAULT_ARCHIVE_NAME`.
    """
    first = relative_paths[0] if relative_paths else None
    if not first or "/" not in first:
        return DEFAULT_ARCHIVE_NAME
    folder = first.split("/", 1)[0]
    if not folder:
        return DEFAULT_ARCHIVE_NAME
    return sanitize_filename(sanitize_filename(folder) + ".zip")


class ArchivePackager:
    """Build one zip archive in a transfer's storage directory."""

    def __init__(self, storage: TransferStorage, chunk_size: int = 1_048_576) -> None:
        self._storage = storage
        self._chunk_size = chunk_size

    def package(self, transfer_id: str, parts: Sequence[ArchivePart]) -> PackagedArchive:
        if not parts:
            raise StorageError("Nothing to archive")

        directory = self._storage.create(transfer_id)
        name = archive_name_for([p.relative_path for p in parts])
        archive_path = directory / name

        entries: list[str] = []
        total = 0
        try:
            with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf:
                for part in parts:
                    entry = entry_path_for(part)
                    with zf.open(entry, "w") as dst:
                        while True:
                            chunk = part.stream.read(self._chunk_size)
                            if not chunk:
                                break
                            dst.write(chunk)
                            total += len(chunk)
                    entries.append(entry)
            size = archive_path.stat().st_size
        except (OSError, zipfile.BadZipFile, ValueError) as exc:
            # Never leave a half-written archive behind.
            archive_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to create archive: {exc}") from exc

        logger.debug(
            "Packaged %d entries (%d bytes) into %s for %s",
            len(entries), total, name, transfer_id,
        )
        return PackagedArchive(
            path=archive_path,
            name=name,
            entries=entries,
            bytes_written=total,
            size=size,
        )

    async def package_async(
        self, transfer_id: str, parts: Sequence[ArchivePart],
    ) -> PackagedArchive:
        """Run :meth:`package` in a worker thread so the event loop stays free."""
        return await asyncio.to_thread(self.package, transfer_id, parts)
