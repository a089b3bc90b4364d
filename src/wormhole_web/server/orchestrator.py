"""Background tasks that drive one transfer each against the backend."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING
from urllib.parse import quote

import aiofiles

from wormhole_web.backends.base import PayloadKind, TransferResult
from wormhole_web.errors import BackendError, StorageError
from wormhole_web.progress import ProgressReader
from wormhole_web.server.models import TransferState
from wormhole_web.validation import sanitize_filename

if TYPE_CHECKING:
    from collections.abc import Awaitable, Coroutine
    from pathlib import Path
    from typing import Any

    from wormhole_web.backends.base import IncomingMessage, Offer, TransferBackend
    from wormhole_web.server.models import TransferRecord
    from wormhole_web.server.state import TransferRegistry
    from wormhole_web.storage import TransferStorage

logger = logging.getLogger(__name__)

SHUTDOWN_MESSAGE = "Server is shutting down"


class TaskSupervisor:
    """Keeps handles on transfer tasks so shutdown can drain them."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self.shutdown_event = asyncio.Event()

    def spawn(self, coro: Coroutine[Any, Any, None], name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def active(self) -> int:
        return len(self._tasks)

    def cancel(self, name: str) -> int:
        """Cancel the running tasks spawned under *name*; returns how many."""
        cancelled = 0
        for task in list(self._tasks):
            if task.get_name() == name and not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    async def drain(self, timeout: float) -> int:
        """Signal shutdown and wait up to *timeout* seconds for running tasks.

        Returns how many tasks were still running afterwards.
        """
        self.shutdown_event.set()
        pending = set(self._tasks)
        if pending:
            _, pending = await asyncio.wait(pending, timeout=timeout)
        for task in pending:
            logger.warning("Transfer task %s still running at shutdown", task.get_name())
        return len(pending)


class TransferOrchestrator:
    """Drive one transfer record through its state machine.

    The orchestrator owns the working copy of its record and republishes it
    through the registry after every change. Every failure ends the transfer
    in the ``error`` state; nothing is retried.
    """

    def __init__(
        self,
        record: TransferRecord,
        registry: TransferRegistry,
        storage: TransferStorage,
        backend: TransferBackend,
        shutdown_event: asyncio.Event | None = None,
        chunk_size: int = 65_536,
    ) -> None:
        self.record = record
        self._registry = registry
        self._storage = storage
        self._backend = backend
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._chunk_size = chunk_size

    @property
    def transfer_id(self) -> str:
        return self.record.id

    def _publish(self) -> None:
        self._registry.set(self.record)

    def _fail(self, message: str) -> None:
        if self.record.state.is_terminal:
            return
        self.record.fail(message)
        self._publish()
        logger.warning("Transfer %s failed: %s", self.transfer_id, message)

    async def _guard(self, work: Awaitable[None]) -> None:
        """Convert any failure of *work* into a terminal error record."""
        try:
            await work
        except (BackendError, StorageError, OSError) as exc:
            self._fail(str(exc))
        except asyncio.CancelledError:
            self._fail("Transfer was cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected failure in transfer %s", self.transfer_id)
            self._fail(str(exc) or exc.__class__.__name__)

    # -- sending ---------------------------------------------------------

    async def send_text(self, text: str) -> None:
        await self._guard(self._send_text(text))

    async def _send_text(self, text: str) -> None:
        offer = await self._backend.send_text(text)
        await self._follow_offer(offer)

    async def send_file(self, path: Path) -> None:
        """Send the materialized payload at *path*; always drops its storage."""
        try:
            await self._guard(self._send_file(path))
        finally:
            await asyncio.to_thread(self._storage.remove, self.transfer_id)

    async def _send_file(self, path: Path) -> None:
        try:
            stream = await asyncio.to_thread(open, path, "rb")
        except OSError as exc:
            raise StorageError(f"Failed to open payload: {exc}") from exc
        try:
            offer = await self._backend.send_file(self.record.filename or path.name, stream)
            await self._follow_offer(offer)
        finally:
            await asyncio.to_thread(stream.close)

    async def _follow_offer(self, offer: Offer) -> None:
        self.record.code = offer.code
        self.record.advance(TransferState.WAITING)
        self._publish()
        logger.info("Transfer %s waiting for peer (code issued)", self.transfer_id)

        result = await self._wait_or_shutdown(offer.completion)
        if result.ok:
            self.record.advance(TransferState.COMPLETE)
            if self.record.bytes_total:
                self.record.record_progress(self.record.bytes_total)
            self._publish()
            logger.info("Transfer %s complete", self.transfer_id)
        else:
            self._fail(result.error or "Transfer did not complete")

    async def _wait_or_shutdown(self, completion: Awaitable[TransferResult]) -> TransferResult:
        done_future = asyncio.ensure_future(completion)
        shutdown = asyncio.ensure_future(self._shutdown_event.wait())
        try:
            await asyncio.wait(
                {done_future, shutdown}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            shutdown.cancel()
        if not done_future.done():
            # The backend keeps its own resources; only this task gives up.
            return TransferResult(ok=False, error=SHUTDOWN_MESSAGE)
        return done_future.result()

    # -- receiving -------------------------------------------------------

    async def receive(self, code: str) -> None:
        await self._guard(self._receive(code))

    async def _receive(self, code: str) -> None:
        message = await self._backend.receive(code)
        try:
            self.record.filename = sanitize_filename(message.name) if message.name else None
            self.record.bytes_total = max(message.total_bytes, 0)
            self._publish()

            if message.kind == PayloadKind.TEXT:
                await self._receive_text(message)
            else:
                await self._receive_file(message)
        finally:
            await message.close()

    async def _receive_text(self, message: IncomingMessage) -> None:
        chunks: list[bytes] = []
        while True:
            chunk = await message.read(self._chunk_size)
            if not chunk:
                break
            chunks.append(chunk)
        data = b"".join(chunks)

        self.record.advance(TransferState.COMPLETE)
        self.record.text_content = data.decode(errors="replace")
        self.record.bytes_transferred = len(data)
        self.record.progress = 100.0
        self._publish()
        logger.info("Transfer %s received text (%d bytes)", self.transfer_id, len(data))

    async def _receive_file(self, message: IncomingMessage) -> None:
        filename = self.record.filename or sanitize_filename("")
        self.record.filename = filename
        directory = await asyncio.to_thread(self._storage.create, self.transfer_id)
        destination = directory / filename

        def on_progress(total: int) -> None:
            self.record.record_progress(total)
            self._publish()

        reader = ProgressReader(message, on_progress)
        try:
            async with aiofiles.open(destination, "wb") as f:
                while True:
                    chunk = await reader.read(self._chunk_size)
                    if not chunk:
                        break
                    await f.write(chunk)
        except OSError as exc:
            await asyncio.to_thread(self._storage.remove, self.transfer_id)
            raise StorageError(f"Failed to write received file: {exc}") from exc
        except BaseException:
            await asyncio.to_thread(self._storage.remove, self.transfer_id)
            raise

        self.record.advance(TransferState.COMPLETE)
        self.record.bytes_transferred = reader.total
        self.record.progress = 100.0
        self.record.download_path = (
            f"/api/download/{self.transfer_id}/{quote(filename, safe='')}"
        )
        self._publish()
        logger.info(
            "Transfer %s received %s (%d bytes)", self.transfer_id, filename, reader.total,
        )
