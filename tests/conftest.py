from __future__ import annotations

import asyncio
import io
import json

import httpx
import pytest

from wormhole_web.backends.base import Offer, PayloadKind, TransferResult
from wormhole_web.config import Settings
from wormhole_web.errors import BackendError
from wormhole_web.server.app import create_app
from wormhole_web.server.state import TransferRegistry
from wormhole_web.storage import TransferStorage

CODE = "7-guitarist-revenge"


class FakeIncoming:
    """In-memory received payload."""

    def __init__(
        self,
        data: bytes,
        name: str = "",
        kind: PayloadKind = PayloadKind.FILE,
        total_bytes: int | None = None,
        error: str | None = None,
    ) -> None:
        self.name = name
        self.kind = kind
        self.total_bytes = len(data) if total_bytes is None else total_bytes
        self.error = error
        self.closed = False
        self._buffer = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        chunk = self._buffer.read(size)
        if not chunk and self.error:
            raise BackendError(self.error)
        return chunk

    async def close(self) -> None:
        self.closed = True


class FakeBackend:
    """Scriptable stand-in for the wormhole program.

    With ``hold=True`` a send stays in ``waiting`` until ``release`` is set.
    """

    def __init__(
        self,
        code: str = CODE,
        result: TransferResult | None = None,
        hold: bool = False,
        incoming: FakeIncoming | None = None,
        error: str | None = None,
    ) -> None:
        self.code = code
        self.result = result or TransferResult(ok=True)
        self.hold = hold
        self.release = asyncio.Event()
        self.incoming = incoming
        self.error = error
        self.sent_texts: list[str] = []
        self.sent_files: list[tuple[str, bytes]] = []
        self.received_codes: list[str] = []

    async def _completion(self) -> TransferResult:
        if self.hold:
            await self.release.wait()
        return self.result

    async def send_text(self, text: str) -> Offer:
        if self.error:
            raise BackendError(self.error)
        self.sent_texts.append(text)
        return Offer(code=self.code, completion=self._completion())

    async def send_file(self, name, stream) -> Offer:
        if self.error:
            raise BackendError(self.error)
        self.sent_files.append((name, stream.read()))
        return Offer(code=self.code, completion=self._completion())

    async def receive(self, code: str):
        self.received_codes.append(code)
        if self.error:
            raise BackendError(self.error)
        if self.incoming is None:
            return FakeIncoming(b"hello", kind=PayloadKind.TEXT)
        return self.incoming


class ListSink:
    """Subscriber that records every snapshot it is offered."""

    def __init__(self) -> None:
        self.messages: list[dict] = []

    def offer(self, payload: str) -> bool:
        self.messages.append(json.loads(payload))
        return True

    @property
    def statuses(self) -> list[str]:
        return [m["status"] for m in self.messages]


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def storage_dir(tmp_path):
    """Transfer storage root for the server."""
    return tmp_path / "storage"


@pytest.fixture()
def settings(storage_dir) -> Settings:
    return Settings(storage_dir=storage_dir, chunk_size=4)


@pytest.fixture()
def storage(storage_dir) -> TransferStorage:
    s = TransferStorage(storage_dir)
    s.ensure_root()
    return s


@pytest.fixture()
def registry(storage) -> TransferRegistry:
    return TransferRegistry(storage=storage)


@pytest.fixture()
def app(settings, backend):
    """FastAPI app wired to the fake backend."""
    return create_app(settings=settings, backend=backend)


@pytest.fixture()
def client(app):
    """httpx AsyncClient wired to the app via ASGI transport."""
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


@pytest.fixture()
def wait_for(app):
    """Poll the registry until a transfer reaches one of *states*."""

    async def _wait(transfer_id: str, *states: str, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            record = app.state.transfers.get(transfer_id)
            if record is not None and record.state.value in states:
                return record
            await asyncio.sleep(0.01)
        raise AssertionError(f"{transfer_id} never reached {states}")

    return _wait


@pytest.fixture()
def sample_files(tmp_path):
    """A couple of loose files and a nested folder."""
    (tmp_path / "a.txt").write_bytes(b"alpha")
    (tmp_path / "b.bin").write_bytes(b"\x00\x01\x02")

    photos = tmp_path / "photos"
    (photos / "2024").mkdir(parents=True)
    (photos / "cat.jpg").write_bytes(b"meow")
    (photos / "2024" / "dog.jpg").write_bytes(b"woof")

    return tmp_path
