"""Byte-counting stream wrapper used for live transfer progress."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable


class AsyncByteStream(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


class ProgressReader:
    """Wrap an async byte stream, reporting the cumulative byte count after each read.

    ``on_progress`` is called synchronously with the running total after
    every read (including the empty read that signals end of stream), before
    the bytes are handed back. It should only update in-memory state.
    Errors raised by the underlying stream propagate unchanged.
    """

    def __init__(
        self,
        stream: AsyncByteStream,
        on_progress: Callable[[int], None] | None = None,
    ) -> None:
        self._stream = stream
        self._on_progress = on_progress
        self.total = 0

    async def read(self, size: int = -1) -> bytes:
        chunk = await self._stream.read(size)
        self.total += len(chunk)
        if self._on_progress is not None:
            self._on_progress(self.total)
        return chunk
