from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import TYPE_CHECKING, NoReturn

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
    WebSocket,
    status,
)
from fastapi.responses import FileResponse

from wormhole_web import __version__
from wormhole_web.archive import ArchivePart, archive_name_for
from wormhole_web.errors import (
    StorageAccessError,
    StorageError,
    TransferNotFoundError,
    TransferValidationError,
)
from wormhole_web.server.broadcast import QueueSink
from wormhole_web.server.models import (
    HealthResponse,
    ReceiveRequest,
    SendTextRequest,
    TransferAccepted,
    TransferDirection,
    TransferRecord,
    TransferState,
)
from wormhole_web.server.orchestrator import TransferOrchestrator
from wormhole_web.validation import (
    is_valid_exchange_code,
    is_valid_transfer_id,
    sanitize_filename,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from wormhole_web.server.state import AppState


def get_state(request: Request) -> AppState:
    return request.app.state


StateDep = Depends(get_state)

logger = logging.getLogger(__name__)


def _raise_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, TransferValidationError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, TransferNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, StorageAccessError):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    raise HTTPException(status_code=500, detail="Unexpected server error") from exc


def _parse_paths(raw: str | None, count: int) -> list[str | None]:
    """Decode the JSON ``paths`` field into one optional path per part."""
    if not raw:
        return [None] * count
    try:
        decoded = json.loads(raw)
    except ValueError as exc:
        raise TransferValidationError("paths must be a JSON array") from exc
    if not isinstance(decoded, list) or not all(
        p is None or isinstance(p, str) for p in decoded
    ):
        raise TransferValidationError("paths must be a JSON array of strings")
    paths = [p or None for p in decoded[:count]]
    return paths + [None] * (count - len(paths))


def _new_record(state: AppState, direction: TransferDirection, **fields) -> TransferRecord:
    initial = (
        TransferState.SENDING if direction == TransferDirection.SEND
        else TransferState.RECEIVING
    )
    return TransferRecord(
        id=state.transfers.new_id(direction),
        direction=direction,
        state=initial,
        **fields,
    )


def _orchestrator(state: AppState, record: TransferRecord) -> TransferOrchestrator:
    return TransferOrchestrator(
        record,
        registry=state.transfers,
        storage=state.storage,
        backend=state.backend,
        shutdown_event=state.supervisor.shutdown_event,
        chunk_size=state.settings.chunk_size,
    )


async def _pump(
    websocket: WebSocket,
    sink: QueueSink,
    write_timeout: float,
    is_gone: Callable[[], bool],
) -> None:
    """Forward queued snapshots to *websocket*, giving up on a slow or dead peer.

    When the stream ends because the transfer was removed, the socket is
    closed with 1008, the same code an unknown id gets.
    """
    while True:
        payload = await sink.get()
        if payload is None:
            break
        try:
            await asyncio.wait_for(websocket.send_text(payload), timeout=write_timeout)
        except Exception:  # noqa: BLE001
            logger.debug("WebSocket delivery failed; dropping subscriber", exc_info=True)
            sink.close()
            break
    code = status.WS_1008_POLICY_VIOLATION if is_gone() else status.WS_1000_NORMAL_CLOSURE
    with suppress(Exception):
        await websocket.close(code=code)


def make_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Simple health check endpoint that returns the server status and version."""
        return HealthResponse(status="ok", version=__version__)

    @router.post("/send/text", response_model=TransferAccepted)
    async def send_text(
        body: SendTextRequest, state: AppState = StateDep,
    ) -> TransferAccepted:
        """Start sending a text message; the exchange code shows up in the status."""
        if not body.text:
            raise HTTPException(status_code=400, detail="Text is required")

        record = _new_record(state, TransferDirection.SEND)
        state.transfers.set(record)
        logger.info("Accepted text send %s", record.id)

        state.supervisor.spawn(
            _orchestrator(state, record).send_text(body.text), name=record.id,
        )
        return TransferAccepted(id=record.id)

    @router.post("/send/file", response_model=TransferAccepted)
    async def send_file(
        file: UploadFile | None = File(default=None),
        files: list[UploadFile] | None = File(default=None),
        paths: str | None = Form(default=None),
        state: AppState = StateDep,
    ) -> TransferAccepted:
        """Start sending one file, or several files packed into a zip archive.

        Uploads are copied to transfer storage before responding, since the
        request body is gone once the response is sent. A storage failure
        still returns the id; the record carries the error.
        """
        parts = list(files or [])
        if not parts and file is not None:
            parts = [file]
        if not parts:
            raise HTTPException(status_code=400, detail="At least one file is required")

        try:
            relative_paths = _parse_paths(paths, len(parts))
        except TransferValidationError as exc:
            _raise_http_exception(exc)

        total_size = sum(part.size or 0 for part in parts)
        if total_size > state.settings.max_upload_bytes:
            raise HTTPException(status_code=413, detail="Upload too large")

        needs_archive = len(parts) > 1 or any(p and "/" in p for p in relative_paths)
        if needs_archive:
            filename = archive_name_for(relative_paths)
        else:
            filename = sanitize_filename(parts[0].filename or "")

        record = _new_record(state, TransferDirection.SEND, filename=filename)
        state.transfers.set(record)
        logger.info("Accepted file send %s (%d part(s))", record.id, len(parts))

        payload: Path
        try:
            if needs_archive:
                archive = await state.packager.package_async(
                    record.id,
                    [
                        ArchivePart(
                            filename=part.filename or "",
                            stream=part.file,
                            relative_path=rel,
                        )
                        for part, rel in zip(parts, relative_paths)
                    ],
                )
                payload = archive.path
                record.bytes_total = archive.size
            else:
                payload = await asyncio.to_thread(
                    state.storage.store, record.id, filename, parts[0].file,
                )
                record.bytes_total = (await asyncio.to_thread(payload.stat)).st_size
        except (StorageError, OSError) as exc:
            record.fail(str(exc))
            state.transfers.set(record)
            await asyncio.to_thread(state.storage.remove, record.id)
            logger.warning("Transfer %s failed before sending: %s", record.id, exc)
            return TransferAccepted(id=record.id)

        state.transfers.set(record)
        state.supervisor.spawn(
            _orchestrator(state, record).send_file(payload), name=record.id,
        )
        return TransferAccepted(id=record.id)

    @router.post("/receive", response_model=TransferAccepted)
    async def receive(
        body: ReceiveRequest, state: AppState = StateDep,
    ) -> TransferAccepted:
        """Start receiving with an exchange code obtained from the sender."""
        if not body.code:
            raise HTTPException(status_code=400, detail="Code is required")
        if not is_valid_exchange_code(body.code):
            raise HTTPException(status_code=400, detail="Invalid wormhole code format")

        record = _new_record(state, TransferDirection.RECEIVE, code=body.code)
        state.transfers.set(record)
        logger.info("Accepted receive %s", record.id)

        state.supervisor.spawn(
            _orchestrator(state, record).receive(body.code), name=record.id,
        )
        return TransferAccepted(id=record.id)

    @router.get(
        "/status",
        response_model=TransferRecord,
        response_model_by_alias=True,
        response_model_exclude_none=True,
    )
    async def transfer_status(
        transfer_id: str | None = Query(default=None, alias="id"),
        state: AppState = StateDep,
    ) -> TransferRecord:
        """Latest snapshot of a transfer, for clients that poll."""
        if not transfer_id:
            raise HTTPException(status_code=400, detail="ID is required")
        if not is_valid_transfer_id(transfer_id):
            raise HTTPException(status_code=400, detail="Invalid transfer ID")

        record = state.transfers.get(transfer_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Transfer not found")
        return record

    @router.websocket("/ws")
    async def transfer_updates(
        websocket: WebSocket,
        transfer_id: str | None = Query(default=None, alias="id"),
    ) -> None:
        """Stream one snapshot per mutation, starting with the current one."""
        state: AppState = websocket.app.state
        if (
            not transfer_id
            or not is_valid_transfer_id(transfer_id)
            or state.transfers.get(transfer_id) is None
        ):
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        sink = QueueSink(maxsize=state.settings.ws_queue_size)
        if not state.transfers.subscribe(transfer_id, sink):
            # Swept between the check and the subscription.
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        pump = asyncio.create_task(
            _pump(
                websocket,
                sink,
                state.settings.ws_write_timeout_seconds,
                lambda: state.transfers.get(transfer_id) is None,
            )
        )
        try:
            # Client messages carry no meaning; read until the peer goes away.
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except RuntimeError:
            # The pump already closed the connection.
            pass
        finally:
            state.transfers.unsubscribe(transfer_id, sink)
            sink.close()
            pump.cancel()
            with suppress(asyncio.CancelledError):
                await pump

    @router.get("/download/{transfer_id}/{filename:path}")
    async def download(
        transfer_id: str, filename: str, state: AppState = StateDep,
    ) -> FileResponse:
        """Serve the file of a finished receive; nothing else is downloadable."""
        if not is_valid_transfer_id(transfer_id):
            raise HTTPException(status_code=400, detail="Invalid transfer ID")
        record = state.transfers.get(transfer_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Transfer not found")
        served = record.download_name
        if served is None or sanitize_filename(filename) != served:
            raise HTTPException(status_code=404, detail="File not found")

        try:
            path = state.storage.resolve_download(transfer_id, served)
        except (StorageAccessError, TransferNotFoundError) as exc:
            _raise_http_exception(exc)
        return FileResponse(path, filename=path.name)

    return router
