from __future__ import annotations

import json
import logging
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from wormhole_web.server.models import TransferRecord, TransferState

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

TERMINAL_STATES = {TransferState.COMPLETE, TransferState.ERROR}


@dataclass
class UploadItem:
    """A local file to upload and the relative path it should keep, if any."""

    path: Path
    relative_path: str | None = field(default=None)


def resolve_inputs(paths: list[str]) -> list[UploadItem]:
    """Resolve files and directories into upload items.

    Files are sent under their own name. Directories are walked recursively
    and every file keeps its path relative to the directory's parent, so the
    server names the archive after the directory.
    """
    result: list[UploadItem] = []
    for p in paths:
        path = Path(p)
        if path.is_file():
            result.append(UploadItem(path=path))
        elif path.is_dir():
            for child in sorted(path.rglob("*")):
                if child.is_file():
                    rel = child.relative_to(path.parent).as_posix()
                    result.append(UploadItem(path=child, relative_path=rel))
        else:
            logger.warning("Path does not exist: %s", path)
    if not result:
        raise FileNotFoundError("No files found in the given paths")
    return result


def _client(base_url: str, timeout: float, transport: httpx.BaseTransport | None) -> httpx.Client:
    return httpx.Client(
        base_url=base_url,
        timeout=httpx.Timeout(timeout, connect=10.0),
        transport=transport,
    )


def send_text(
    base_url: str,
    text: str,
    timeout: float = 30.0,
    transport: httpx.BaseTransport | None = None,
) -> str:
    """Start a text send; returns the transfer id."""
    with _client(base_url, timeout, transport) as client:
        resp = client.post("/api/send/text", json={"text": text})
        resp.raise_for_status()
        return resp.json()["id"]


def send_paths(
    base_url: str,
    items: list[UploadItem],
    timeout: float = 3600.0,
    transport: httpx.BaseTransport | None = None,
) -> str:
    """Upload *items* and start sending them; returns the transfer id.

    A single plain file goes up as ``file``; anything else as ``files`` with
    the aligned ``paths`` array.
    """
    with ExitStack() as stack, _client(base_url, timeout, transport) as client:
        if len(items) == 1 and items[0].relative_path is None:
            fh = stack.enter_context(open(items[0].path, "rb"))
            resp = client.post(
                "/api/send/file", files={"file": (items[0].path.name, fh)},
            )
        else:
            parts = [
                ("files", (item.path.name, stack.enter_context(open(item.path, "rb"))))
                for item in items
            ]
            paths = [item.relative_path or item.path.name for item in items]
            resp = client.post(
                "/api/send/file", files=parts, data={"paths": json.dumps(paths)},
            )
        resp.raise_for_status()
        return resp.json()["id"]


def receive(
    base_url: str,
    code: str,
    timeout: float = 30.0,
    transport: httpx.BaseTransport | None = None,
) -> str:
    """Start receiving with *code*; returns the transfer id."""
    with _client(base_url, timeout, transport) as client:
        resp = client.post("/api/receive", json={"code": code})
        resp.raise_for_status()
        return resp.json()["id"]


def get_status(client: httpx.Client, transfer_id: str) -> TransferRecord:
    resp = client.get("/api/status", params={"id": transfer_id})
    resp.raise_for_status()
    return TransferRecord.model_validate(resp.json())


def wait_for_status(
    base_url: str,
    transfer_id: str,
    until: Callable[[TransferRecord], bool] | None = None,
    on_update: Callable[[TransferRecord], None] | None = None,
    timeout: float = 300.0,
    interval: float = 0.5,
    transport: httpx.BaseTransport | None = None,
) -> TransferRecord:
    """Poll a transfer until *until* holds or it reaches a terminal state."""

    # Configure a deadline for the polling operation.
    deadline = time.monotonic() + timeout

    # Keep track of the last seen state and bytes to detect progress.
    last_state: TransferState | None = None
    last_bytes = 0

    with _client(base_url, 10.0, transport) as client:
        while time.monotonic() < deadline:
            record = get_status(client, transfer_id)
            if on_update:
                on_update(record)
            if record.state in TERMINAL_STATES or (until and until(record)):
                return record

            # Reset deadline if the transfer is still making progress.
            if record.state != last_state or record.bytes_transferred > last_bytes:
                last_state = record.state
                last_bytes = record.bytes_transferred
                deadline = time.monotonic() + timeout
            time.sleep(interval)
    raise TimeoutError(
        f"Transfer {transfer_id} did not progress within {timeout}s"
    )


def download(
    base_url: str,
    record: TransferRecord,
    dest_dir: Path,
    progress_callback: Callable[[int], None] | None = None,
    timeout: float = 3600.0,
    transport: httpx.BaseTransport | None = None,
) -> Path:
    """Stream a completed receive into *dest_dir*; returns the written path."""
    if not record.download_path or not record.filename:
        raise ValueError(f"Transfer {record.id} has nothing to download")

    dest_dir.mkdir(parents=True, exist_ok=True)
    target = dest_dir / Path(record.filename).name
    with _client(base_url, timeout, transport) as client:
        with client.stream("GET", record.download_path) as resp:
            resp.raise_for_status()
            with open(target, "wb") as f:
                for chunk in resp.iter_bytes():
                    f.write(chunk)
                    if progress_callback:
                        progress_callback(len(chunk))
    return target
